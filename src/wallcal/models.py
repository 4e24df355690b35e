from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

DEFAULT_COLOR = "#2b6f6b"
UNTITLED_EVENT = "Untitled event"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def parse_iso(value: Any) -> Optional[datetime]:
    if not value:
        return None
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


@dataclass(frozen=True)
class CalendarSource:
    id: str
    label: str = ""
    color: str = ""
    enabled: bool = True


@dataclass(frozen=True)
class FeedConfig:
    url: str
    label: str = ""
    enabled: bool = True


@dataclass(frozen=True)
class CalendarMeta:
    """Provenance stamped onto every event normalized from one calendar."""
    id: str
    label: str
    color: str = DEFAULT_COLOR


@dataclass(frozen=True)
class Event:
    id: str
    calendar_id: str
    calendar_label: str
    calendar_color: str
    start: datetime             # timezone-aware
    end: datetime               # timezone-aware, always > start
    all_day: bool = False
    summary: str = UNTITLED_EVENT
    description: str = ""
    location: str = ""
    status: str = "confirmed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "calendarId": self.calendar_id,
            "calendarLabel": self.calendar_label,
            "calendarColor": self.calendar_color,
            "summary": self.summary,
            "description": self.description,
            "location": self.location,
            "status": self.status,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "allDay": self.all_day,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["Event"]:
        start = parse_iso(data.get("start"))
        end = parse_iso(data.get("end"))
        if start is None or end is None:
            return None
        return cls(
            id=str(data.get("id", "")),
            calendar_id=str(data.get("calendarId", "")),
            calendar_label=str(data.get("calendarLabel", "")),
            calendar_color=str(data.get("calendarColor", "")),
            summary=str(data.get("summary") or UNTITLED_EVENT),
            description=str(data.get("description") or ""),
            location=str(data.get("location") or ""),
            status=str(data.get("status") or "confirmed"),
            start=start,
            end=end,
            all_day=bool(data.get("allDay", False)),
        )


@dataclass
class MergedEvent:
    event: Event
    calendar_colors: List[str] = field(default_factory=list)
    calendar_labels: List[str] = field(default_factory=list)
    calendar_ids: List[str] = field(default_factory=list)

    # The packer and renderer read these straight off the merged event.
    @property
    def id(self) -> str:
        return self.event.id

    @property
    def summary(self) -> str:
        return self.event.summary

    @property
    def start(self) -> datetime:
        return self.event.start

    @property
    def end(self) -> datetime:
        return self.event.end

    @property
    def all_day(self) -> bool:
        return self.event.all_day

    @property
    def location(self) -> str:
        return self.event.location

    def to_dict(self) -> Dict[str, Any]:
        payload = self.event.to_dict()
        payload["calendarColors"] = list(self.calendar_colors)
        payload["calendarLabels"] = list(self.calendar_labels)
        payload["calendarIds"] = list(self.calendar_ids)
        return payload


@dataclass(frozen=True)
class CacheRange:
    time_min: datetime
    time_max: datetime

    def contains(self, other: "CacheRange") -> bool:
        return self.time_min <= other.time_min and other.time_max <= self.time_max

    def to_dict(self) -> Dict[str, str]:
        return {"timeMin": self.time_min.isoformat(), "timeMax": self.time_max.isoformat()}


@dataclass(frozen=True)
class EventCache:
    updated_at: Optional[datetime] = None
    range: Optional[CacheRange] = None
    events: Tuple[Event, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "updatedAt": _iso(self.updated_at),
            "range": self.range.to_dict() if self.range else None,
            "events": [e.to_dict() for e in self.events],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventCache":
        raw_range = data.get("range") or {}
        time_min = parse_iso(raw_range.get("timeMin"))
        time_max = parse_iso(raw_range.get("timeMax"))
        cache_range = CacheRange(time_min, time_max) if time_min and time_max else None
        events = []
        for item in data.get("events") or []:
            event = Event.from_dict(item) if isinstance(item, dict) else None
            if event is not None:
                events.append(event)
        return cls(
            updated_at=parse_iso(data.get("updatedAt")),
            range=cache_range,
            events=tuple(events),
        )


@dataclass(frozen=True)
class SourceError:
    source: str                 # "google" / "ical"
    message: str
    feed_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"source": self.source, "feedUrl": self.feed_url, "message": self.message}


@dataclass(frozen=True)
class SyncSummary:
    updated_at: datetime
    event_count: int
    calendar_count: int
    errors: Tuple[SourceError, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "updatedAt": self.updated_at.isoformat(),
            "eventCount": self.event_count,
            "calendarCount": self.calendar_count,
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass(frozen=True)
class ExtendResult:
    updated: bool
    effective_lookahead_days: int
    summary: Optional[SyncSummary] = None
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "updated": self.updated,
            "effectiveLookaheadDays": self.effective_lookahead_days,
        }
        if self.summary is not None:
            payload["summary"] = self.summary.to_dict()
        if self.reason:
            payload["reason"] = self.reason
        return payload


def ensure_end(start: datetime, end: Optional[datetime], all_day: bool) -> datetime:
    # Missing, malformed or non-positive ends become one hour (timed) or one day (all-day).
    if end is not None and end > start:
        return end
    return start + (timedelta(days=1) if all_day else timedelta(hours=1))
