"""Sliding-window event cache.

``EventCacheManager`` owns the persisted ``EventCache`` and its covered window.
It decides whether a requested window extension needs a fetch, fetches only
when coverage actually has to grow, and replaces the cache atomically on
success. A failed fetch never touches the stored cache.

Writers are serialized: one sync or extension runs at a time. A ``sync()``
that arrives while another ``sync()`` is running joins it and returns the
same summary; an ``extend()`` waits its turn and is re-evaluated against the
cache the previous writer left behind.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Protocol, Tuple
from zoneinfo import ZoneInfo

from .aggregate import SyncOutcome, fetch_events_for_range
from .config import AppConfig, MAX_SYNC_DAYS
from .errors import InvalidRangeError, SourceUnavailableError
from .merge import merge_calendar_events, sort_events
from .models import CacheRange, EventCache, ExtendResult, MergedEvent, SyncSummary
from .recurrence import coerce_instant

logger = logging.getLogger(__name__)

MAX_LOOKAHEAD_DAYS = MAX_SYNC_DAYS
DAY = timedelta(days=1)

Fetcher = Callable[[AppConfig, datetime, datetime], SyncOutcome]


class EventStore(Protocol):
    def load(self) -> EventCache: ...

    def save(self, cache: EventCache) -> None: ...


@dataclass(frozen=True)
class BackfillAttempt:
    key: Tuple[str, str]        # (requested timeMin, cached timeMin at request time)
    at: datetime


class _InFlightSync:
    def __init__(self) -> None:
        self._done = threading.Event()
        self._summary: Optional[SyncSummary] = None
        self._error: Optional[BaseException] = None

    def finish(self, summary: Optional[SyncSummary], error: Optional[BaseException]) -> None:
        self._summary = summary
        self._error = error
        self._done.set()

    def wait(self) -> SyncSummary:
        self._done.wait()
        if self._error is not None:
            raise self._error
        if self._summary is None:
            raise SourceUnavailableError("Calendar sync ended without a result")
        return self._summary


def _default_fetcher(cfg: AppConfig, time_min: datetime, time_max: datetime) -> SyncOutcome:
    return fetch_events_for_range(cfg, time_min, time_max)


class EventCacheManager:
    def __init__(
        self,
        config_provider: Callable[[], AppConfig],
        store: EventStore,
        fetcher: Optional[Fetcher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config_provider = config_provider
        self._store = store
        self._fetcher = fetcher or _default_fetcher
        self._clock = clock
        self._write_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._inflight: Optional[_InFlightSync] = None
        self._extended_lookahead_days = 0
        self._last_backfill: Optional[BackfillAttempt] = None

    def _now(self, cfg: AppConfig) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(tz=ZoneInfo(cfg.timezone))

    def effective_lookahead_days(self, cfg: Optional[AppConfig] = None) -> int:
        cfg = cfg or self._config_provider()
        return min(MAX_LOOKAHEAD_DAYS, max(cfg.google.sync_days, self._extended_lookahead_days))

    def query(self) -> EventCache:
        return self._store.load()

    def merged_events(self) -> List[MergedEvent]:
        cfg = self._config_provider()
        cache = self._store.load()
        return sort_events(merge_calendar_events(cache.events, enabled=cfg.display.merge_calendars))

    def _sync_window(self, cfg: AppConfig, window: CacheRange, now: datetime) -> SyncSummary:
        outcome = self._fetcher(cfg, window.time_min, window.time_max)
        cache = EventCache(updated_at=now, range=window, events=tuple(outcome.events))
        self._store.save(cache)
        logger.info(
            "Event cache now covers %s .. %s with %d events",
            window.time_min.isoformat(),
            window.time_max.isoformat(),
            len(outcome.events),
        )
        return SyncSummary(
            updated_at=now,
            event_count=len(outcome.events),
            calendar_count=outcome.calendar_count,
            errors=tuple(outcome.errors),
        )

    def sync(self) -> SyncSummary:
        """Re-sync ``[now, now + lookahead]``, joining a sync that is already running."""
        with self._state_lock:
            inflight = self._inflight
            owner = inflight is None
            if owner:
                inflight = self._inflight = _InFlightSync()
        if not owner:
            logger.info("Calendar sync already in progress; waiting for its result")
            return inflight.wait()

        summary: Optional[SyncSummary] = None
        error: Optional[BaseException] = None
        try:
            with self._write_lock:
                cfg = self._config_provider()
                now = self._now(cfg)
                window = CacheRange(now, now + timedelta(days=self.effective_lookahead_days(cfg)))
                summary = self._sync_window(cfg, window, now)
        except BaseException as exc:
            error = exc
            raise
        finally:
            with self._state_lock:
                self._inflight = None
            # Joined callers must always wake, whatever ended the run.
            inflight.finish(summary, error)
        return summary

    def _parse_bound(self, value: Any, name: str, cfg: AppConfig) -> Optional[datetime]:
        if value is None or value == "":
            return None
        parsed = coerce_instant(value, ZoneInfo(cfg.timezone))
        if parsed is None:
            raise InvalidRangeError(f"Invalid {name}: {value!r}")
        return parsed

    def extend(
        self,
        time_min: Any = None,
        time_max: Any = None,
        view: Optional[str] = None,
    ) -> ExtendResult:
        """Grow the covered window to include ``time_min``/``time_max``.

        Backward growth is debounced per (requested timeMin, cached timeMin)
        pair and can be switched off per view. Returns ``updated=False``
        without any fetch when coverage does not need to grow.
        """
        cfg = self._config_provider()
        target_min = self._parse_bound(time_min, "timeMin", cfg)
        target_max = self._parse_bound(time_max, "timeMax", cfg)
        if target_min is not None and target_max is not None and target_min >= target_max:
            raise InvalidRangeError("timeMin must be before timeMax")

        with self._write_lock:
            cfg = self._config_provider()
            now = self._now(cfg)
            lookahead = self.effective_lookahead_days(cfg)
            current = self._store.load().range
            if current is None:
                current = CacheRange(now, now + timedelta(days=lookahead))
                needs_initial = True
            else:
                needs_initial = False

            new_min, new_max = current.time_min, current.time_max
            new_lookahead = lookahead
            reasons: List[str] = []

            if target_max is not None and target_max > now and target_max > current.time_max:
                days_needed = math.ceil((target_max - now) / DAY)
                new_lookahead = min(MAX_LOOKAHEAD_DAYS, max(lookahead, days_needed))
                new_max = max(current.time_max, now + timedelta(days=new_lookahead))
                if new_max == current.time_max:
                    reasons.append("lookahead at maximum")

            if target_min is not None and target_min < current.time_min:
                if view is not None and not cfg.display.backfill_past.enabled_for(view):
                    reasons.append(f"backfill disabled for {view}")
                else:
                    key = (target_min.isoformat(), current.time_min.isoformat())
                    debounce = timedelta(seconds=cfg.display.backfill_past_debounce_seconds)
                    last = self._last_backfill
                    if last is not None and last.key == key and now - last.at < debounce:
                        logger.debug("Backfill to %s debounced", key[0])
                        reasons.append("backfill debounced")
                    else:
                        self._last_backfill = BackfillAttempt(key=key, at=now)
                        new_min = target_min

            if not needs_initial and new_min == current.time_min and new_max == current.time_max:
                return ExtendResult(
                    updated=False,
                    effective_lookahead_days=lookahead,
                    reason="; ".join(reasons) or "already covered",
                )

            window = CacheRange(new_min, new_max)
            if not needs_initial and not window.contains(current):
                logger.warning(
                    "Extension window %s .. %s would drop cached coverage %s .. %s",
                    new_min.isoformat(),
                    new_max.isoformat(),
                    current.time_min.isoformat(),
                    current.time_max.isoformat(),
                )
            logger.info("Extending event cache to %s .. %s", new_min.isoformat(), new_max.isoformat())
            summary = self._sync_window(cfg, window, now)
            self._extended_lookahead_days = max(self._extended_lookahead_days, new_lookahead)
            return ExtendResult(
                updated=True,
                effective_lookahead_days=self.effective_lookahead_days(cfg),
                summary=summary,
            )
