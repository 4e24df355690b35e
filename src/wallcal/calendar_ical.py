from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, tzinfo
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import unquote, urlparse

import requests
from icalendar import Calendar

from .models import CalendarMeta, DEFAULT_COLOR, Event, FeedConfig, SourceError, UNTITLED_EVENT, ensure_end
from .recurrence import RawEvent, RecurrenceRule, coerce_instant, expand_event, instant_key

logger = logging.getLogger(__name__)

USER_AGENT = "wallcal/1.0"


@dataclass
class FeedSyncResult:
    events: List[Event] = field(default_factory=list)
    calendars: int = 0
    errors: List[SourceError] = field(default_factory=list)


class FeedFetchError(RuntimeError):
    """Raised when a feed answers with a non-success HTTP status."""


def normalize_feeds(feeds: Iterable[Any]) -> List[FeedConfig]:
    normalized: List[FeedConfig] = []
    for feed in feeds or []:
        url = (getattr(feed, "url", "") or "").strip()
        label = (getattr(feed, "label", "") or "").strip()
        enabled = getattr(feed, "enabled", True)
        if enabled is None:
            enabled = True
        if enabled and url:
            normalized.append(FeedConfig(url=url, label=label, enabled=True))
    return normalized


def derive_label_from_url(url: str) -> str:
    try:
        parsed = urlparse(url)
    except ValueError:
        return url
    if not parsed.netloc:
        return url
    segments = [s for s in parsed.path.split("/") if s]
    if segments:
        label = re.sub(r"\.ics$", "", unquote(segments[-1]), flags=re.IGNORECASE)
        return label or parsed.hostname or url
    return parsed.hostname or url


def calendar_name(calendar: Calendar, url: str) -> str:
    for prop in ("X-WR-CALNAME", "NAME"):
        value = calendar.get(prop)
        if value:
            return str(value)
    return derive_label_from_url(url)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text else None


def _exception_keys(component: Any, tz: tzinfo) -> Set[str]:
    keys: Set[str] = set()
    exdates = component.get("EXDATE")
    if exdates is None:
        return keys
    if not isinstance(exdates, list):
        exdates = [exdates]
    for group in exdates:
        for item in getattr(group, "dts", []):
            value = item.dt
            if isinstance(value, datetime):
                keys.add(instant_key(coerce_instant(value, tz)))
            elif isinstance(value, date):
                keys.add(value.isoformat())
    return keys


def _override_key(value: Any, tz: tzinfo) -> str:
    if isinstance(value, datetime):
        return instant_key(coerce_instant(value, tz))
    return value.isoformat()


def _raw_event(component: Any, tz: tzinfo) -> Optional[RawEvent]:
    dtstart = component.get("DTSTART")
    if dtstart is None:
        return None
    start = dtstart.dt
    all_day = isinstance(start, date) and not isinstance(start, datetime)

    end = None
    try:
        if component.get("DTEND") is not None:
            end = component.get("DTEND").dt
        elif component.get("DURATION") is not None:
            end = start + component.get("DURATION").dt
    except (AttributeError, TypeError, ValueError) as exc:
        logger.debug("Ignoring unparseable end of VEVENT %r: %s", component.get("UID"), exc)
        end = None
    if end is None and all_day:
        # RFC 5545: a date-valued DTSTART without DTEND lasts one day.
        end = start + timedelta(days=1)

    recurrence = None
    rrule = component.get("RRULE")
    if rrule is not None:
        if isinstance(rrule, list):
            rrule = rrule[0]
        recurrence = RecurrenceRule(
            rule=rrule.to_ical().decode("utf-8"),
            exceptions=_exception_keys(component, tz),
        )

    recurrence_id = None
    rid = component.get("RECURRENCE-ID")
    if rid is not None:
        recurrence_id = coerce_instant(rid.dt, tz)

    return RawEvent(
        uid=str(component.get("UID") or ""),
        start=start,
        end=end,
        all_day=all_day,
        summary=_text(component.get("SUMMARY")),
        description=_text(component.get("DESCRIPTION")),
        location=_text(component.get("LOCATION")),
        status=(_text(component.get("STATUS")) or "confirmed").lower(),
        recurrence=recurrence,
        recurrence_id=recurrence_id,
    )


def parse_feed(text: str, tz: tzinfo) -> Tuple[Calendar, List[RawEvent]]:
    """Parse ICS text into raw events, folding RECURRENCE-ID instances into their master."""
    calendar = Calendar.from_ical(text)
    ordered: List[RawEvent] = []
    recurring: Dict[str, RawEvent] = {}
    instances: List[Tuple[str, RawEvent]] = []

    for component in calendar.walk("VEVENT"):
        try:
            raw = _raw_event(component, tz)
            rid = component.get("RECURRENCE-ID")
            override_key = _override_key(rid.dt, tz) if rid is not None else None
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.debug("Skipping unparseable VEVENT %r: %s", component.get("UID"), exc)
            continue
        if raw is None:
            continue
        if override_key is not None:
            instances.append((override_key, raw))
            continue
        if raw.recurrence is not None and raw.uid:
            recurring[raw.uid] = raw
        ordered.append(raw)

    for key, raw in instances:
        master = recurring.get(raw.uid)
        if master is not None and master.recurrence is not None:
            master.recurrence.overrides[key] = raw
        else:
            ordered.append(raw)

    return calendar, ordered


def normalize_ical_event(raw: RawEvent, meta: CalendarMeta, tz: tzinfo) -> Optional[Event]:
    if (raw.status or "").lower() == "cancelled":
        return None
    start = coerce_instant(raw.start, tz)
    if start is None:
        return None
    end = ensure_end(start, coerce_instant(raw.end, tz), raw.all_day)
    if not raw.all_day:
        start, end = start.astimezone(tz), end.astimezone(tz)
    uid = raw.uid or instant_key(start)
    recurrence_key = f":{instant_key(raw.recurrence_id)}" if raw.recurrence_id else ""

    return Event(
        id=f"ical:{meta.id}:{uid}{recurrence_key}",
        calendar_id=meta.id,
        calendar_label=meta.label,
        calendar_color=meta.color,
        summary=raw.summary or UNTITLED_EVENT,
        description=raw.description or "",
        location=raw.location or "",
        status=raw.status or "confirmed",
        start=start,
        end=end,
        all_day=raw.all_day,
    )


def extract_events(
    raw_events: Iterable[RawEvent],
    meta: CalendarMeta,
    range_start: datetime,
    range_end: datetime,
    tz: tzinfo,
) -> List[Event]:
    events: List[Event] = []
    for raw in raw_events:
        for occurrence in expand_event(raw, range_start, range_end, tz):
            normalized = normalize_ical_event(occurrence, meta, tz)
            if normalized is not None:
                events.append(normalized)
    return events


def fetch_feed(session: requests.Session, url: str, timeout: float) -> str:
    if url.lower().startswith("webcal://"):
        url = "https://" + url[len("webcal://"):]
    resp = session.get(url, timeout=timeout)
    if not resp.ok:
        raise FeedFetchError(f"HTTP {resp.status_code}")
    return resp.text


def sync_ical_events(
    feeds: Iterable[Any],
    time_min: datetime,
    time_max: datetime,
    tz: tzinfo,
    timeout: float = 15.0,
    session: Optional[requests.Session] = None,
) -> FeedSyncResult:
    feed_configs = normalize_feeds(feeds)
    result = FeedSyncResult(calendars=len(feed_configs))
    if not feed_configs:
        return result

    if session is None:
        session = requests.Session()
        session.headers.update({"User-Agent": USER_AGENT})

    for feed in feed_configs:
        try:
            text = fetch_feed(session, feed.url, timeout)
            calendar, raw_events = parse_feed(text, tz)
            meta = CalendarMeta(
                id=feed.url,
                label=feed.label or calendar_name(calendar, feed.url),
                color=DEFAULT_COLOR,
            )
            events = extract_events(raw_events, meta, time_min, time_max, tz)
        except Exception as exc:  # noqa: BLE001
            logger.warning("iCal feed %s failed; continuing without it. Error: %s", feed.url, exc)
            result.errors.append(SourceError(source="ical", feed_url=feed.url, message=str(exc) or type(exc).__name__))
            continue
        logger.info("iCal feed %s contributed %d events", feed.url, len(events))
        result.events.extend(events)

    return result
