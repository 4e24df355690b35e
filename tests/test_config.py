from wallcal.config import load_config
from wallcal.models import CalendarSource, FeedConfig


def test_defaults_when_file_is_missing(tmp_path, monkeypatch):
    monkeypatch.delenv("WALLCAL_DATA_DIR", raising=False)

    cfg = load_config(str(tmp_path / "missing.yaml"))

    assert cfg.timezone == "America/New_York"
    assert cfg.data_dir == "/var/lib/wallcal"
    assert cfg.google.enabled is True
    assert cfg.google.sync_days == 30
    assert cfg.display.merge_calendars is True
    assert cfg.display.backfill_past_debounce_seconds == 60
    assert cfg.refresh.calendar_sync_minutes == 10
    assert cfg.sources.fetch_timeout_seconds == 15.0
    assert cfg.feeds == []


def test_sources_and_display_settings(tmp_path):
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text(
        """
        timezone: 'America/Phoenix'
        data_dir: /srv/wallcal
        display:
          merge_calendars: false
          narrow_portrait: true
          backfill_past:
            month: false
        google:
          enabled: false
        calendars:
          - id: primary
            color: '#ff0000'
          - label: missing id
        ical:
          feeds:
            - https://example.com/school.ics
            - url: https://example.com/sports.ics
              label: Sports
              enabled: false
        """,
        encoding="utf-8",
    )

    cfg = load_config(str(cfg_path))

    assert cfg.timezone == "America/Phoenix"
    assert str(cfg.event_cache_path) == "/srv/wallcal/event_cache.json"
    assert cfg.display.merge_calendars is False
    assert cfg.display.narrow_portrait is True
    assert cfg.display.backfill_past.enabled_for("month") is False
    assert cfg.display.backfill_past.enabled_for("fourWeek") is True
    assert cfg.google.enabled is False
    assert cfg.calendars == [CalendarSource(id="primary", color="#ff0000")]
    assert cfg.feeds == [
        FeedConfig(url="https://example.com/school.ics"),
        FeedConfig(url="https://example.com/sports.ics", label="Sports", enabled=False),
    ]


def test_out_of_range_values_are_clamped(tmp_path):
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text(
        """
        display:
          backfill_past_debounce_seconds: 1
        google:
          sync_days: 1000
        refresh:
          calendar_sync_minutes: 0
        """,
        encoding="utf-8",
    )

    cfg = load_config(str(cfg_path))

    assert cfg.display.backfill_past_debounce_seconds == 5
    assert cfg.google.sync_days == 365
    assert cfg.refresh.calendar_sync_minutes == 1


def test_data_dir_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("WALLCAL_DATA_DIR", str(tmp_path))

    cfg = load_config(str(tmp_path / "missing.yaml"))

    assert cfg.data_dir == str(tmp_path)
