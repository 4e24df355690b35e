import threading
import time
from datetime import datetime, timedelta
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest
import requests

from wallcal.aggregate import SyncOutcome, fetch_events_for_range
from wallcal.cache import MAX_LOOKAHEAD_DAYS, EventCacheManager
from wallcal.config import config_from_dict
from wallcal.errors import InvalidRangeError, SourceUnavailableError
from wallcal.models import CacheRange, Event, EventCache
from wallcal.store import MemoryEventStore

TZ = ZoneInfo("America/New_York")
NOW = datetime(2026, 1, 10, 12, 0, tzinfo=TZ)


class _Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class _Fetcher:
    def __init__(self, events=None, error=None):
        self.events = events or []
        self.error = error
        self.windows = []

    def __call__(self, cfg, time_min, time_max):
        self.windows.append((time_min, time_max))
        if self.error is not None:
            raise self.error
        return SyncOutcome(events=list(self.events), calendar_count=2)


def _event(event_id: str, day: int = 12, calendar_id: str = "mom") -> Event:
    start = datetime(2026, 1, day, 9, 0, tzinfo=TZ)
    return Event(
        id=event_id,
        calendar_id=calendar_id,
        calendar_label=calendar_id.title(),
        calendar_color="#111111",
        summary="Swim",
        start=start,
        end=start + timedelta(hours=1),
    )


def _manager(cache=None, fetcher=None, clock=None, **config):
    data = {"timezone": "America/New_York", "google": {"sync_days": 30}}
    data.update(config)
    cfg = config_from_dict(data)
    store = MemoryEventStore(cache)
    fetcher = fetcher or _Fetcher()
    manager = EventCacheManager(lambda: cfg, store, fetcher=fetcher, clock=clock or _Clock())
    return manager, store, fetcher


def _january_cache(events=()):
    return EventCache(
        updated_at=NOW,
        range=CacheRange(datetime(2026, 1, 1, tzinfo=TZ), datetime(2026, 1, 31, tzinfo=TZ)),
        events=tuple(events),
    )


def test_sync_replaces_cache_for_configured_window():
    fetcher = _Fetcher(events=[_event("a"), _event("b", day=14)])
    manager, store, _ = _manager(cache=_january_cache([_event("old")]), fetcher=fetcher)

    summary = manager.sync()

    cache = store.load()
    assert fetcher.windows == [(NOW, NOW + timedelta(days=30))]
    assert cache.range == CacheRange(NOW, NOW + timedelta(days=30))
    assert [e.id for e in cache.events] == ["a", "b"]
    assert (summary.event_count, summary.calendar_count, summary.errors) == (2, 2, ())


def test_extend_inside_range_is_a_no_op():
    manager, store, fetcher = _manager(cache=_january_cache())

    result = manager.extend(time_max=datetime(2026, 1, 20, tzinfo=TZ).isoformat())

    assert result.updated is False
    assert result.summary is None
    assert fetcher.windows == []
    assert store.saves == 0


def test_forward_extension_raises_lookahead_and_keeps_lower_bound():
    manager, store, fetcher = _manager(cache=_january_cache())

    result = manager.extend(time_max=(NOW + timedelta(days=59, hours=3)).isoformat())

    assert result.updated is True
    assert result.effective_lookahead_days == 60
    assert fetcher.windows == [(datetime(2026, 1, 1, tzinfo=TZ), NOW + timedelta(days=60))]

    manager.sync()
    assert fetcher.windows[-1] == (NOW, NOW + timedelta(days=60))


def test_forward_extension_is_capped():
    manager, store, fetcher = _manager(cache=_january_cache())

    result = manager.extend(time_max=(NOW + timedelta(days=900)).isoformat())

    assert result.effective_lookahead_days == MAX_LOOKAHEAD_DAYS
    assert store.load().range.time_max == NOW + timedelta(days=MAX_LOOKAHEAD_DAYS)


def test_backward_extension_fetches_from_requested_min_to_existing_max():
    manager, store, fetcher = _manager(cache=_january_cache())

    result = manager.extend(time_min="2025-12-15")

    assert result.updated is True
    assert fetcher.windows == [(datetime(2025, 12, 15, tzinfo=TZ), datetime(2026, 1, 31, tzinfo=TZ))]


def test_repeated_backfill_within_debounce_fetches_once():
    clock = _Clock()
    manager, store, fetcher = _manager(cache=_january_cache(), clock=clock)

    manager.extend(time_min="2025-12-15")
    clock.advance(seconds=10)
    second = manager.extend(time_min="2025-12-15")

    assert len(fetcher.windows) == 1
    assert second.updated is False


def test_failed_backfill_is_debounced_then_retried():
    clock = _Clock()
    fetcher = _Fetcher(error=SourceUnavailableError("down"))
    manager, store, _ = _manager(cache=_january_cache(), fetcher=fetcher, clock=clock)

    with pytest.raises(SourceUnavailableError):
        manager.extend(time_min="2025-12-15")

    clock.advance(seconds=10)
    debounced = manager.extend(time_min="2025-12-15")
    assert debounced.updated is False
    assert debounced.reason == "backfill debounced"
    assert len(fetcher.windows) == 1

    clock.advance(seconds=61)
    fetcher.error = None
    assert manager.extend(time_min="2025-12-15").updated is True
    assert len(fetcher.windows) == 2


def test_backfill_disabled_for_view_is_ignored():
    manager, store, fetcher = _manager(
        cache=_january_cache(),
        display={"backfill_past": {"month": False}},
    )

    result = manager.extend(time_min="2025-12-15", view="month")

    assert result.updated is False
    assert fetcher.windows == []
    assert manager.extend(time_min="2025-12-15", view="week").updated is True


def test_failed_fetch_leaves_cache_untouched():
    original = _january_cache([_event("keep")])
    fetcher = _Fetcher(error=SourceUnavailableError("Google Calendar fetch failed"))
    manager, store, _ = _manager(cache=original, fetcher=fetcher)

    with pytest.raises(SourceUnavailableError):
        manager.extend(time_max=(NOW + timedelta(days=90)).isoformat())

    assert store.load() is original
    assert store.saves == 0
    assert manager.effective_lookahead_days() == 30


def test_coverage_only_grows(caplog):
    clock = _Clock()
    manager, store, fetcher = _manager(cache=_january_cache(), clock=clock)
    asks = [
        {"time_max": (NOW + timedelta(days=45)).isoformat()},
        {"time_min": "2025-11-01"},
        {"time_min": "2025-12-01", "time_max": (NOW + timedelta(days=10)).isoformat()},
        {"time_min": "2025-10-01", "time_max": (NOW + timedelta(days=120)).isoformat()},
    ]

    previous = store.load().range
    for kwargs in asks:
        clock.advance(minutes=5)
        manager.extend(**kwargs)
        current = store.load().range
        assert current.contains(previous)
        previous = current

    assert "would drop cached coverage" not in caplog.text


def test_empty_window_is_remembered_as_covered():
    manager, store, fetcher = _manager(fetcher=_Fetcher(events=[]))

    manager.extend(time_min="2025-12-01", time_max="2026-01-20")
    again = manager.extend(time_max="2026-01-20")

    assert store.load().events == ()
    assert store.load().range is not None
    assert again.updated is False
    assert len(fetcher.windows) == 1


def test_first_extend_without_cache_starts_from_now():
    manager, store, fetcher = _manager()

    result = manager.extend(time_max=(NOW + timedelta(days=10)).isoformat())

    assert result.updated is True
    assert fetcher.windows == [(NOW, NOW + timedelta(days=30))]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"time_min": "yesterday"},
        {"time_max": "2026-13-45"},
        {"time_min": "2026-02-01", "time_max": "2026-01-01"},
    ],
)
def test_invalid_bounds_are_rejected_before_any_fetch(kwargs):
    manager, store, fetcher = _manager(cache=_january_cache())

    with pytest.raises(InvalidRangeError) as excinfo:
        manager.extend(**kwargs)

    assert excinfo.value.code == "INVALID_RANGE"
    assert fetcher.windows == []


def test_merged_events_follow_merge_flag():
    cache = _january_cache([_event("a", calendar_id="mom"), _event("b", calendar_id="dad")])

    merged_on, _, _ = _manager(cache=cache)
    merged_off, _, _ = _manager(cache=cache, display={"merge_calendars": False})

    assert [m.calendar_ids for m in merged_on.merged_events()] == [["mom", "dad"]]
    assert len(merged_off.merged_events()) == 2


def test_overlapping_sync_joins_the_in_flight_run():
    entered = threading.Event()
    release = threading.Event()
    calls = []

    def slow_fetcher(cfg, time_min, time_max):
        calls.append((time_min, time_max))
        entered.set()
        release.wait(5)
        return SyncOutcome(events=[_event("a")], calendar_count=1)

    manager, store, _ = _manager(fetcher=slow_fetcher)
    results = []

    first = threading.Thread(target=lambda: results.append(manager.sync()))
    first.start()
    assert entered.wait(5)
    second = threading.Thread(target=lambda: results.append(manager.sync()))
    second.start()
    time.sleep(0.2)
    release.set()
    first.join(5)
    second.join(5)

    assert len(calls) == 1
    assert len(results) == 2
    assert results[0] is results[1]


def test_sync_with_every_source_failing_keeps_previous_cache():
    def timed_out(url, timeout=None):
        raise requests.Timeout("read timed out")

    def fetcher(cfg, time_min, time_max):
        return fetch_events_for_range(cfg, time_min, time_max, session=SimpleNamespace(get=timed_out))

    original = _january_cache([_event("keep")])
    manager, store, _ = _manager(
        cache=original,
        fetcher=fetcher,
        google={"enabled": False, "sync_days": 30},
        ical={"feeds": ["https://example.com/school.ics"]},
    )

    with pytest.raises(SourceUnavailableError):
        manager.sync()

    assert store.load() is original
    assert [e.id for e in store.load().events] == ["keep"]
    assert store.saves == 0


class _Interrupted(BaseException):
    pass


def test_joined_sync_wakes_when_the_running_sync_is_interrupted():
    entered = threading.Event()
    release = threading.Event()

    def interrupted_fetcher(cfg, time_min, time_max):
        entered.set()
        release.wait(5)
        raise _Interrupted()

    manager, store, _ = _manager(fetcher=interrupted_fetcher)
    raised = []

    def run():
        try:
            manager.sync()
        except BaseException as exc:  # noqa: BLE001
            raised.append(exc)

    first = threading.Thread(target=run)
    first.start()
    assert entered.wait(5)
    second = threading.Thread(target=run)
    second.start()
    time.sleep(0.2)
    release.set()
    first.join(5)
    second.join(5)

    assert not second.is_alive()
    assert [type(exc) for exc in raised] == [_Interrupted, _Interrupted]
    assert store.saves == 0
