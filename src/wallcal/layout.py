"""Week-grid packing for the month / four-week / week views.

Multi-day events become horizontal bars that are packed into as few rows as
possible per week; the remaining single-day events fill each day cell up to a
capacity that shrinks as bars take up vertical space.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Any, Dict, List, Optional, Sequence

from .merge import event_sort_key

GRID_VIEWS = ("month", "fourWeek", "week")
PORTRAIT_MAX_EVENTS = 2
_EPSILON = timedelta(microseconds=1)


def to_date_key(value: date) -> str:
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()


def _local_date(value: datetime, tz: tzinfo) -> date:
    return value.astimezone(tz).date() if value.tzinfo else value.date()


def _event_dates(event: Any, tz: tzinfo) -> tuple[date, date]:
    """First and last local date the event touches (end is exclusive)."""
    first = _local_date(event.start, tz)
    end = getattr(event, "end", None)
    if end is None or end <= event.start:
        return first, first
    if event.all_day:
        last = _local_date(end, tz) - timedelta(days=1)
    else:
        last = _local_date(end - _EPSILON, tz)
    return first, max(first, last)


def event_occurs_on_date_key(event: Any, key: str, tz: tzinfo) -> bool:
    first, last = _event_dates(event, tz)
    return first.isoformat() <= key <= last.isoformat()


def is_multi_day_event(event: Any, tz: tzinfo) -> bool:
    first, last = _event_dates(event, tz)
    return last > first


@dataclass
class Segment:
    event: Any
    start_index: int
    end_index: int
    starts_before: bool = False
    ends_after: bool = False

    @property
    def span(self) -> int:
        return self.end_index - self.start_index

    def overlaps(self, other: "Segment") -> bool:
        return self.start_index <= other.end_index and other.start_index <= self.end_index


def _day_start(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz)


def build_multi_day_rows(
    week_dates: Sequence[Optional[date]],
    events: Sequence[Any],
    tz: tzinfo,
) -> List[List[Segment]]:
    """Pack the week's multi-day events into rows with no day overlap inside a row."""
    visible = [i for i, d in enumerate(week_dates) if d is not None]
    if not visible:
        return []
    visible_start = _day_start(week_dates[visible[0]], tz)
    visible_end = _day_start(week_dates[visible[-1]] + timedelta(days=1), tz)

    segments: List[Segment] = []
    for event in events:
        if not is_multi_day_event(event, tz):
            continue
        first, last = _event_dates(event, tz)
        hit = [i for i in visible if first <= week_dates[i] <= last]
        if not hit:
            continue
        segments.append(Segment(
            event=event,
            start_index=hit[0],
            end_index=hit[-1],
            starts_before=event.start < visible_start,
            ends_after=event.end > visible_end,
        ))

    # widest, earliest bars claim the top rows so they stay put between renders
    segments.sort(key=lambda s: (s.start_index, -s.span, s.event.start))

    rows: List[List[Segment]] = []
    for segment in segments:
        for row in rows:
            if not any(existing.overlaps(segment) for existing in row):
                row.append(segment)
                break
        else:
            rows.append([segment])
    return rows


def day_event_limit(
    row_count: int,
    multi_day_rows: int,
    narrow_portrait: bool = False,
    measured_capacity: Optional[int] = None,
) -> int:
    """How many single-day events a cell shows before "+N more"."""
    base = 4 if row_count <= 4 else 3
    raw = max(0, base - multi_day_rows)
    if measured_capacity is not None and measured_capacity >= 0:
        # A measurement can only lower the formula's limit.
        return min(raw, measured_capacity)
    if narrow_portrait and raw > PORTRAIT_MAX_EVENTS:
        return PORTRAIT_MAX_EVENTS
    return raw


@dataclass
class DayLayout:
    date: Optional[date]
    key: Optional[str]
    events: List[Any] = field(default_factory=list)
    visible: List[Any] = field(default_factory=list)
    hidden_count: int = 0
    capacity: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.key,
            "capacity": self.capacity,
            "hiddenCount": self.hidden_count,
            "events": [e.to_dict() for e in self.visible],
        }


@dataclass
class WeekLayout:
    dates: List[Optional[date]]
    rows: List[List[Segment]]
    days: List[DayLayout]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dates": [to_date_key(d) if d else None for d in self.dates],
            "multiDayRows": [
                [
                    {
                        "event": s.event.to_dict(),
                        "startIndex": s.start_index,
                        "endIndex": s.end_index,
                        "startsBefore": s.starts_before,
                        "endsAfter": s.ends_after,
                    }
                    for s in row
                ]
                for row in self.rows
            ],
            "days": [d.to_dict() for d in self.days],
        }


def layout_week(
    week_dates: Sequence[Optional[date]],
    events: Sequence[Any],
    tz: tzinfo,
    row_count: int,
    narrow_portrait: bool = False,
    capacities: Optional[Dict[str, int]] = None,
) -> WeekLayout:
    rows = build_multi_day_rows(week_dates, events, tz)
    single_day = sorted((e for e in events if not is_multi_day_event(e, tz)), key=event_sort_key)

    days: List[DayLayout] = []
    for day in week_dates:
        if day is None:
            days.append(DayLayout(date=None, key=None))
            continue
        key = to_date_key(day)
        todays = [e for e in single_day if event_occurs_on_date_key(e, key, tz)]
        limit = day_event_limit(
            row_count,
            len(rows),
            narrow_portrait=narrow_portrait,
            measured_capacity=(capacities or {}).get(key),
        )
        days.append(DayLayout(
            date=day,
            key=key,
            events=todays,
            visible=todays[:limit],
            hidden_count=max(0, len(todays) - limit),
            capacity=limit,
        ))
    return WeekLayout(dates=list(week_dates), rows=rows, days=days)


def layout_grid(
    weeks: Sequence[Sequence[Optional[date]]],
    events: Sequence[Any],
    tz: tzinfo,
    narrow_portrait: bool = False,
    capacities: Optional[Dict[str, int]] = None,
) -> List[WeekLayout]:
    return [
        layout_week(week, events, tz, len(weeks), narrow_portrait=narrow_portrait, capacities=capacities)
        for week in weeks
    ]


def week_start(day: date) -> date:
    # Sunday-first weeks
    return day - timedelta(days=(day.weekday() + 1) % 7)


def month_weeks(year: int, month: int) -> List[List[Optional[date]]]:
    cal = calendar.Calendar(firstweekday=calendar.SUNDAY)
    return [
        [d if d.month == month else None for d in week]
        for week in cal.monthdatescalendar(year, month)
    ]


def rolling_weeks(start: date, count: int) -> List[List[Optional[date]]]:
    first = week_start(start)
    return [[first + timedelta(days=w * 7 + i) for i in range(7)] for w in range(count)]


def weeks_for_view(view: str, anchor: date) -> List[List[Optional[date]]]:
    if view == "month":
        return month_weeks(anchor.year, anchor.month)
    if view == "fourWeek":
        return rolling_weeks(anchor, 4)
    if view == "week":
        return rolling_weeks(anchor, 1)
    raise ValueError(f"Unknown view: {view}")
