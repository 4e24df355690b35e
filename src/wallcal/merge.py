from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Tuple

from .models import Event, MergedEvent


def _merge_value(value: Any) -> str:
    if not value:
        return ""
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    return str(value)


def merge_key(e: Event) -> Tuple[str, str, str, str, str]:
    # Location is compared verbatim; "HQ East" and "hq east" stay separate.
    return (
        _merge_value(e.summary),
        _merge_value(e.start),
        _merge_value(e.end),
        "1" if e.all_day else "0",
        _merge_value(e.location),
    )


def _single(e: Event) -> MergedEvent:
    return MergedEvent(
        event=e,
        calendar_colors=[e.calendar_color] if e.calendar_color else [],
        calendar_labels=[e.calendar_label] if e.calendar_label else [],
        calendar_ids=[e.calendar_id] if e.calendar_id else [],
    )


def _append_unique(values: List[str], value: str) -> None:
    if value and value not in values:
        values.append(value)


def merge_calendar_events(events: Iterable[Event], enabled: bool = True) -> List[MergedEvent]:
    """Collapse the same occurrence seen on several calendars into one MergedEvent.

    Two events merge when their merge keys match and they come from different
    calendars. A second event with the same key from a calendar already in the
    group is an accidental collision and is kept as its own MergedEvent.
    With ``enabled=False`` every event passes through with single-entry
    provenance lists.
    """
    if not enabled:
        return [_single(e) for e in events if e is not None]

    merged: Dict[Tuple[str, ...], MergedEvent] = {}
    collisions = 0
    for e in events:
        if e is None:
            continue
        key = merge_key(e)
        existing = merged.get(key)
        if existing is None:
            merged[key] = _single(e)
            continue

        if e.calendar_id and e.calendar_id in existing.calendar_ids:
            collisions += 1
            merged[key + (str(collisions),)] = _single(e)
            continue

        _append_unique(existing.calendar_colors, e.calendar_color)
        _append_unique(existing.calendar_labels, e.calendar_label)
        _append_unique(existing.calendar_ids, e.calendar_id)

    return list(merged.values())


def event_sort_key(e: Any):
    # all-day first, then start time, then title
    return (0 if e.all_day else 1, e.start, e.summary.lower())


def sort_events(events: Iterable[Any]) -> List[Any]:
    return sorted(events, key=lambda e: (e.start, e.summary.lower()))
