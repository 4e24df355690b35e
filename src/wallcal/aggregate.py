from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
import logging
import os
from pathlib import Path
from typing import Any, Callable, List, Optional
from zoneinfo import ZoneInfo

import requests

from .calendar_google import build_calendar_targets, connect, fetch_google_events, list_calendars
from .calendar_ical import normalize_feeds, sync_ical_events
from .config import AppConfig
from .errors import CalendarSyncError, NoSourcesError, SourceUnavailableError
from .models import Event, SourceError

logger = logging.getLogger(__name__)

GoogleConnector = Callable[[AppConfig], Any]


@dataclass
class SyncOutcome:
    events: List[Event] = field(default_factory=list)
    calendar_count: int = 0
    errors: List[SourceError] = field(default_factory=list)


def google_token_path(cfg: AppConfig) -> str:
    return os.environ.get("GOOGLE_TOKEN_JSON") or str(Path(cfg.data_dir) / "google_token.json")


def connect_google(cfg: AppConfig) -> Any:
    return connect(google_token_path(cfg), timeout=cfg.sources.fetch_timeout_seconds)


def fetch_events_for_range(
    cfg: AppConfig,
    time_min: datetime,
    time_max: datetime,
    google_connect: Optional[GoogleConnector] = None,
    session: Optional[requests.Session] = None,
) -> SyncOutcome:
    """Collect normalized events from every enabled source for one window.

    A failing source is recorded in ``errors`` and the others still contribute.
    When no source succeeds the failure is raised so the cache stays as it was.
    """
    tz = ZoneInfo(cfg.timezone)
    feeds = normalize_feeds(cfg.feeds)
    if not cfg.google.enabled and not feeds:
        raise NoSourcesError("No calendar sources configured")

    outcome = SyncOutcome()
    sources_ok = 0

    if cfg.google.enabled:
        try:
            service = (google_connect or connect_google)(cfg)
            targets = build_calendar_targets(cfg.calendars, list_calendars(service))
            events = fetch_google_events(service, targets, time_min, time_max, tz)
        except CalendarSyncError as exc:
            if not feeds:
                raise
            logger.warning("Google Calendar unavailable (%s); continuing with feeds only.", exc.code)
            outcome.errors.append(SourceError(source="google", message=exc.message))
        except Exception as exc:  # noqa: BLE001
            if not feeds:
                raise SourceUnavailableError(f"Google Calendar fetch failed: {exc}") from exc
            logger.warning("Google Calendar fetch failed; continuing without Google events. Error: %s", exc)
            outcome.errors.append(SourceError(source="google", message=str(exc) or type(exc).__name__))
        else:
            outcome.events.extend(events)
            outcome.calendar_count += len(targets)
            sources_ok += 1

    if feeds:
        result = sync_ical_events(
            feeds,
            time_min,
            time_max,
            tz,
            timeout=cfg.sources.fetch_timeout_seconds,
            session=session,
        )
        outcome.events.extend(result.events)
        outcome.calendar_count += result.calendars
        outcome.errors.extend(result.errors)
        sources_ok += len(feeds) - len(result.errors)

    if sources_ok == 0:
        # Keep whatever is cached rather than replacing it with nothing.
        details = "; ".join(f"{e.feed_url or e.source}: {e.message}" for e in outcome.errors)
        raise SourceUnavailableError(f"Every calendar source failed ({details})")

    outcome.events.sort(key=lambda e: (e.start, e.id))
    logger.info(
        "Fetched %d events from %d calendars between %s and %s (%d source errors)",
        len(outcome.events),
        outcome.calendar_count,
        time_min.isoformat(),
        time_max.isoformat(),
        len(outcome.errors),
    )
    return outcome
