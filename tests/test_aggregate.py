import logging
from datetime import datetime, timedelta
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest
import requests

from wallcal.aggregate import fetch_events_for_range, google_token_path
from wallcal.config import config_from_dict
from wallcal.errors import NoSourcesError, NotConnectedError, SourceUnavailableError
from wallcal.models import CalendarMeta, Event

TZ = ZoneInfo("America/Phoenix")
START = datetime(2026, 2, 5, 0, 0, tzinfo=TZ)
END = datetime(2026, 2, 6, 0, 0, tzinfo=TZ)
FEED_URL = "https://example.com/school.ics"

SCHOOL_ICS = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Test//School//EN
X-WR-CALNAME:School
BEGIN:VEVENT
UID:assembly@example.com
SUMMARY:Assembly
DTSTART;TZID=America/Phoenix:20260205T090000
DTEND;TZID=America/Phoenix:20260205T100000
END:VEVENT
END:VCALENDAR
"""


def _cfg(google=True, feeds=True):
    return config_from_dict({
        "timezone": "America/Phoenix",
        "data_dir": "/tmp/wallcal-test",
        "google": {"enabled": google},
        "ical": {"feeds": [{"url": FEED_URL}] if feeds else []},
    })


def _session():
    return SimpleNamespace(get=lambda url, timeout=None: SimpleNamespace(ok=True, status_code=200, text=SCHOOL_ICS))


def _fail(exc):
    def connect(_cfg):
        raise exc

    return connect


def test_google_failure_degrades_to_source_error_when_feeds_exist(caplog):
    caplog.set_level(logging.WARNING)

    outcome = fetch_events_for_range(
        _cfg(),
        START,
        END,
        google_connect=_fail(RuntimeError("invalid_grant")),
        session=_session(),
    )

    assert [e.summary for e in outcome.events] == ["Assembly"]
    assert [(e.source, e.message) for e in outcome.errors] == [("google", "invalid_grant")]
    assert outcome.calendar_count == 1
    assert "Google Calendar fetch failed; continuing without Google events." in caplog.text


def test_not_connected_google_degrades_when_feeds_exist():
    outcome = fetch_events_for_range(
        _cfg(),
        START,
        END,
        google_connect=_fail(NotConnectedError("Google account not connected")),
        session=_session(),
    )

    assert outcome.errors[0].message == "Google account not connected"
    assert len(outcome.events) == 1


def test_google_failure_is_fatal_when_it_is_the_only_source():
    with pytest.raises(SourceUnavailableError):
        fetch_events_for_range(_cfg(feeds=False), START, END, google_connect=_fail(RuntimeError("boom")))

    with pytest.raises(NotConnectedError):
        fetch_events_for_range(_cfg(feeds=False), START, END, google_connect=_fail(NotConnectedError()))


def test_no_sources_is_rejected():
    with pytest.raises(NoSourcesError) as excinfo:
        fetch_events_for_range(_cfg(google=False, feeds=False), START, END)

    assert excinfo.value.code == "NO_SOURCES"


def test_google_and_feed_events_are_combined_in_start_order(monkeypatch):
    meta = CalendarMeta(id="primary", label="Me")
    google_event = Event(
        id="google:primary:1",
        calendar_id="primary",
        calendar_label="Me",
        calendar_color="#000000",
        summary="Breakfast",
        start=START + timedelta(hours=7),
        end=START + timedelta(hours=8),
    )
    monkeypatch.setattr("wallcal.aggregate.list_calendars", lambda service: [{"id": "primary"}])
    monkeypatch.setattr("wallcal.aggregate.build_calendar_targets", lambda calendars, items: [meta])
    monkeypatch.setattr("wallcal.aggregate.fetch_google_events", lambda *args: [google_event])

    outcome = fetch_events_for_range(_cfg(), START, END, google_connect=lambda cfg: object(), session=_session())

    assert [e.summary for e in outcome.events] == ["Breakfast", "Assembly"]
    assert outcome.calendar_count == 2
    assert outcome.errors == []


def test_token_path_prefers_environment(monkeypatch):
    monkeypatch.delenv("GOOGLE_TOKEN_JSON", raising=False)
    assert google_token_path(_cfg()) == "/tmp/wallcal-test/google_token.json"

    monkeypatch.setenv("GOOGLE_TOKEN_JSON", "/etc/wallcal/token.json")
    assert google_token_path(_cfg()) == "/etc/wallcal/token.json"


def test_every_source_failing_is_a_sync_failure():
    def timed_out(url, timeout=None):
        raise requests.Timeout("read timed out")

    with pytest.raises(SourceUnavailableError) as excinfo:
        fetch_events_for_range(_cfg(google=False), START, END, session=SimpleNamespace(get=timed_out))

    assert FEED_URL in excinfo.value.message
    assert "read timed out" in excinfo.value.message

    with pytest.raises(SourceUnavailableError) as excinfo:
        fetch_events_for_range(
            _cfg(),
            START,
            END,
            google_connect=_fail(NotConnectedError("Google account not connected")),
            session=SimpleNamespace(get=timed_out),
        )

    assert "google: Google account not connected" in excinfo.value.message
