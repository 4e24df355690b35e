from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List
import os

import yaml

from .models import CalendarSource, FeedConfig

DATA_DIR_DEFAULT = "/var/lib/wallcal"
MAX_SYNC_DAYS = 365
MIN_DEBOUNCE_SECONDS = 5
MAX_DEBOUNCE_SECONDS = 3600

VIEWS = ("month", "fourWeek", "week")


@dataclass
class BackfillConfig:
    month: bool = True
    four_week: bool = True
    week: bool = True

    def enabled_for(self, view: str) -> bool:
        if view == "month":
            return self.month
        if view == "week":
            return self.week
        return self.four_week


@dataclass
class DisplayConfig:
    merge_calendars: bool = True
    backfill_past: BackfillConfig = field(default_factory=BackfillConfig)
    backfill_past_debounce_seconds: int = 60
    narrow_portrait: bool = False
    width: int = 1600
    height: int = 1200


@dataclass
class RefreshConfig:
    calendar_sync_minutes: int = 10


@dataclass
class GoogleConfig:
    enabled: bool
    sync_days: int


@dataclass
class SourcesConfig:
    fetch_timeout_seconds: float = 15.0


@dataclass
class AppConfig:
    timezone: str
    data_dir: str
    display: DisplayConfig
    refresh: RefreshConfig
    google: GoogleConfig
    sources: SourcesConfig
    calendars: List[CalendarSource] = field(default_factory=list)
    feeds: List[FeedConfig] = field(default_factory=list)

    @property
    def event_cache_path(self) -> Path:
        return Path(self.data_dir) / "event_cache.json"


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _parse_calendars(items: Any) -> List[CalendarSource]:
    calendars: List[CalendarSource] = []
    for item in items or []:
        if not isinstance(item, dict) or not item.get("id"):
            continue
        calendars.append(CalendarSource(
            id=str(item["id"]),
            label=str(item.get("label") or ""),
            color=str(item.get("color") or ""),
            enabled=bool(item.get("enabled", True)),
        ))
    return calendars


def _parse_feeds(items: Any) -> List[FeedConfig]:
    feeds: List[FeedConfig] = []
    for item in items or []:
        if isinstance(item, str):
            item = {"url": item}
        if not isinstance(item, dict):
            continue
        feeds.append(FeedConfig(
            url=str(item.get("url") or ""),
            label=str(item.get("label") or ""),
            enabled=bool(item.get("enabled", True)),
        ))
    return feeds


def config_from_dict(data: Dict[str, Any]) -> AppConfig:
    display = data.get("display", {}) or {}
    backfill = display.get("backfill_past", {}) or {}
    refresh = data.get("refresh", {}) or {}
    google = data.get("google", {}) or {}
    sources = data.get("sources", {}) or {}
    ical = data.get("ical", {}) or {}

    return AppConfig(
        timezone=data.get("timezone", "America/New_York"),
        data_dir=str(data.get("data_dir") or os.environ.get("WALLCAL_DATA_DIR") or DATA_DIR_DEFAULT),
        display=DisplayConfig(
            merge_calendars=bool(display.get("merge_calendars", True)),
            backfill_past=BackfillConfig(
                month=bool(backfill.get("month", True)),
                four_week=bool(backfill.get("four_week", True)),
                week=bool(backfill.get("week", True)),
            ),
            backfill_past_debounce_seconds=_clamp(
                int(display.get("backfill_past_debounce_seconds", 60)),
                MIN_DEBOUNCE_SECONDS,
                MAX_DEBOUNCE_SECONDS,
            ),
            narrow_portrait=bool(display.get("narrow_portrait", False)),
            width=int(display.get("width", 1600)),
            height=int(display.get("height", 1200)),
        ),
        refresh=RefreshConfig(
            calendar_sync_minutes=max(1, int(refresh.get("calendar_sync_minutes", 10))),
        ),
        google=GoogleConfig(
            enabled=bool(google.get("enabled", True)),
            sync_days=_clamp(int(google.get("sync_days", 30)), 1, MAX_SYNC_DAYS),
        ),
        sources=SourcesConfig(
            fetch_timeout_seconds=float(sources.get("fetch_timeout_seconds", 15.0)),
        ),
        calendars=_parse_calendars(data.get("calendars")),
        feeds=_parse_feeds(ical.get("feeds")),
    )


def load_config(path: str) -> AppConfig:
    p = Path(path)
    data: Dict[str, Any] = {}
    if p.exists():
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    return config_from_dict(data)
