from __future__ import annotations
from datetime import date, datetime, tzinfo
import logging
import os
from typing import Any, Dict, Iterator, List, Optional, Sequence

import httplib2
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build

from .errors import NotConnectedError
from .models import CalendarMeta, CalendarSource, DEFAULT_COLOR, Event, UNTITLED_EVENT, ensure_end, parse_iso

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar.readonly"]
PAGE_SIZE = 2500


def _save_creds(creds: Credentials, token_path: str) -> None:
    os.makedirs(os.path.dirname(token_path) or ".", exist_ok=True)
    with open(token_path, "w", encoding="utf-8") as f:
        f.write(creds.to_json())


def authorize(credentials_path: str, token_path: str) -> Credentials:
    """Run the interactive OAuth consent flow and store the resulting token."""
    flow = InstalledAppFlow.from_client_secrets_file(credentials_path, SCOPES)
    creds = flow.run_local_server(port=0)
    _save_creds(creds, token_path)
    return creds


def load_credentials(token_path: str) -> Optional[Credentials]:
    """Return stored credentials, refreshing them if expired, or None when not connected."""
    if not token_path or not os.path.exists(token_path):
        return None
    creds = Credentials.from_authorized_user_file(token_path, SCOPES)
    if creds.valid:
        return creds
    if creds.expired and creds.refresh_token:
        try:
            creds.refresh(Request())
        except RefreshError as exc:
            logger.warning("Google token refresh failed: %s", exc)
            return None
        _save_creds(creds, token_path)
        return creds
    return None


def build_service(creds: Credentials, timeout: float = 15.0) -> Any:
    http = AuthorizedHttp(creds, http=httplib2.Http(timeout=timeout))
    return build("calendar", "v3", http=http, cache_discovery=False)


def connect(token_path: str, timeout: float = 15.0) -> Any:
    creds = load_credentials(token_path)
    if creds is None:
        raise NotConnectedError("Google account not connected")
    return build_service(creds, timeout=timeout)


def list_calendars(service: Any) -> List[Dict[str, Any]]:
    items: List[Dict[str, Any]] = []
    page_token = None
    while True:
        resp = service.calendarList().list(minAccessRole="reader", pageToken=page_token).execute()
        items.extend(resp.get("items", []))
        page_token = resp.get("nextPageToken")
        if not page_token:
            return items


def build_calendar_targets(
    calendars: Sequence[CalendarSource],
    calendar_list: Sequence[Dict[str, Any]],
) -> List[CalendarMeta]:
    """Configured calendars win (enabled only); otherwise every visible calendar is used."""
    list_by_id = {item.get("id"): item for item in calendar_list or []}

    if calendars:
        targets = []
        for cal in calendars:
            if not cal.enabled:
                continue
            item = list_by_id.get(cal.id, {})
            targets.append(CalendarMeta(
                id=cal.id,
                label=cal.label or item.get("summary") or cal.id,
                color=cal.color or item.get("backgroundColor") or DEFAULT_COLOR,
            ))
        return targets

    return [
        CalendarMeta(
            id=item["id"],
            label=item.get("summary") or item["id"],
            color=item.get("backgroundColor") or DEFAULT_COLOR,
        )
        for item in calendar_list or []
        if item.get("id")
    ]


def _parse_time(obj: Dict[str, Any], tz: tzinfo) -> Optional[datetime]:
    # All-day events have "date" not "dateTime"
    if obj.get("dateTime"):
        value = parse_iso(obj["dateTime"])
        if value is None:
            return None
        return value.astimezone(tz) if value.tzinfo else value.replace(tzinfo=tz)
    if obj.get("date"):
        try:
            # Interpret as local midnight
            return datetime.combine(date.fromisoformat(obj["date"]), datetime.min.time(), tzinfo=tz)
        except ValueError:
            return None
    return None


def normalize_event(item: Dict[str, Any], meta: CalendarMeta, tz: tzinfo) -> Optional[Event]:
    if not item or item.get("status") == "cancelled":
        return None

    start_obj = item.get("start") or {}
    end_obj = item.get("end") or {}
    all_day = bool(start_obj.get("date")) and not start_obj.get("dateTime")

    start = _parse_time(start_obj, tz)
    if start is None:
        return None
    end = ensure_end(start, _parse_time(end_obj, tz), all_day)

    return Event(
        id=f"google:{meta.id}:{item.get('id') or start.isoformat()}",
        calendar_id=meta.id,
        calendar_label=meta.label,
        calendar_color=meta.color,
        summary=item.get("summary") or UNTITLED_EVENT,
        description=item.get("description") or "",
        location=item.get("location") or "",
        status=item.get("status") or "confirmed",
        start=start,
        end=end,
        all_day=all_day,
    )


def iter_calendar_items(
    service: Any,
    calendar_id: str,
    time_min: datetime,
    time_max: datetime,
) -> Iterator[Dict[str, Any]]:
    """Yield every event item in the window, following nextPageToken until exhausted."""
    page_token = None
    while True:
        resp = service.events().list(
            calendarId=calendar_id,
            timeMin=time_min.isoformat(),
            timeMax=time_max.isoformat(),
            singleEvents=True,
            orderBy="startTime",
            maxResults=PAGE_SIZE,
            pageToken=page_token,
        ).execute()
        yield from resp.get("items", [])
        page_token = resp.get("nextPageToken")
        if not page_token:
            return


def fetch_google_events(
    service: Any,
    targets: Sequence[CalendarMeta],
    time_min: datetime,
    time_max: datetime,
    tz: tzinfo,
) -> List[Event]:
    events: List[Event] = []
    for calendar in targets:
        for item in iter_calendar_items(service, calendar.id, time_min, time_max):
            normalized = normalize_event(item, calendar, tz)
            if normalized is not None:
                events.append(normalized)
    return events
