"""Recurring event expansion.

Turns a parsed provider event into the concrete occurrences that overlap a
query window. Rules are evaluated in the event's own wall-clock time so a
09:00 weekly meeting stays at 09:00 across DST changes. Exception dates and
per-occurrence overrides are matched by either the occurrence's UTC instant
key or its local date key. Nothing here performs I/O.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Dict, List, Optional, Set, Tuple

from dateutil.rrule import rrulestr

from .models import ensure_end, parse_iso

logger = logging.getLogger(__name__)

MAX_OCCURRENCES = 1000

_UNTIL_RE = re.compile(r"UNTIL=(\d{8})(?:T(\d{6})(Z?))?", re.IGNORECASE)


@dataclass
class RecurrenceRule:
    rule: str
    exceptions: Set[str] = field(default_factory=set)
    overrides: Dict[str, "RawEvent"] = field(default_factory=dict)


@dataclass
class RawEvent:
    uid: str
    start: Any                  # datetime / date / ISO string, as the provider gave it
    end: Any = None
    all_day: bool = False
    summary: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    status: Optional[str] = None
    recurrence: Optional[RecurrenceRule] = None
    recurrence_id: Optional[datetime] = None


def coerce_instant(value: Any, tz: tzinfo) -> Optional[datetime]:
    """Return a timezone-aware datetime for ``value`` or None when it is unusable.

    Dates become local midnight in ``tz``; floating (naive) times are read as ``tz``.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=tz)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=tz)
    if isinstance(value, str):
        text = value.strip()
        if len(text) == 10:
            try:
                return datetime.combine(date.fromisoformat(text), time.min, tzinfo=tz)
            except ValueError:
                return None
        parsed = parse_iso(text)
        if parsed is None:
            return None
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=tz)
    return None


def instant_key(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def date_key(value: datetime) -> str:
    return value.date().isoformat()


def occurrence_keys(value: datetime) -> Tuple[str, str]:
    return instant_key(value), date_key(value)


def overlaps(start: datetime, end: datetime, range_start: datetime, range_end: datetime) -> bool:
    return start < range_end and end > range_start


def _wall_clock_rule(rule: str, zone: tzinfo) -> str:
    # dateutil refuses to mix a naive DTSTART with a UTC UNTIL, so UNTIL is
    # rewritten into the same naive wall-clock frame as the start.
    def _sub(match: re.Match) -> str:
        day, clock, utc = match.group(1), match.group(2), match.group(3)
        if not clock:
            return f"UNTIL={day}T235959"
        if not utc:
            return match.group(0)
        until = datetime.strptime(f"{day}T{clock}", "%Y%m%dT%H%M%S").replace(tzinfo=timezone.utc)
        return "UNTIL=" + until.astimezone(zone).strftime("%Y%m%dT%H%M%S")

    return _UNTIL_RE.sub(_sub, rule.strip())


def _rule_instants(
    rule: RecurrenceRule,
    start: datetime,
    window_start: datetime,
    window_end: datetime,
) -> List[datetime]:
    zone = start.tzinfo
    wall_start = start.replace(tzinfo=None)
    parsed = rrulestr(_wall_clock_rule(rule.rule, zone), dtstart=wall_start)
    lo = window_start.astimezone(zone).replace(tzinfo=None)
    hi = window_end.astimezone(zone).replace(tzinfo=None)

    instants: List[datetime] = []
    for wall in parsed.xafter(lo, count=MAX_OCCURRENCES, inc=True):
        if wall > hi:
            break
        instants.append(wall.replace(tzinfo=zone))
    return instants


def _find_override(rule: RecurrenceRule, keys: Tuple[str, str]) -> Optional[RawEvent]:
    for key in keys:
        if key in rule.overrides:
            return rule.overrides[key]
    return None


def _resolve_override(
    master: RawEvent,
    override: RawEvent,
    recurrence_id: datetime,
    tz: tzinfo,
) -> Optional[RawEvent]:
    start = coerce_instant(override.start, tz)
    if start is None:
        return None
    end = coerce_instant(override.end, tz)
    return replace(
        override,
        uid=override.uid or master.uid,
        start=start,
        end=end,
        recurrence=None,
        recurrence_id=recurrence_id,
    )


def expand_event(
    raw: RawEvent,
    range_start: datetime,
    range_end: datetime,
    tz: tzinfo,
) -> List[RawEvent]:
    """Expand ``raw`` into occurrences overlapping ``[range_start, range_end)``.

    Non-recurring events come back unchanged (with coerced start/end) when they
    overlap the window. Malformed occurrences are dropped individually; a rule
    dateutil cannot parse drops only this event. An unusable end is
    treated as missing so the caller can synthesize one.
    """
    start = coerce_instant(raw.start, tz)
    if start is None:
        logger.debug("Dropping event %s with unusable start %r", raw.uid, raw.start)
        return []
    end = coerce_instant(raw.end, tz)
    if raw.end is not None and end is None:
        logger.debug("Event %s has unusable end %r; treating it as missing", raw.uid, raw.end)

    if raw.recurrence is None:
        if not overlaps(start, ensure_end(start, end, raw.all_day), range_start, range_end):
            return []
        return [replace(raw, start=start, end=end)]

    duration = end - start if end is not None and end > start else timedelta(0)
    try:
        instants = _rule_instants(raw.recurrence, start, range_start - duration, range_end)
    except (ValueError, TypeError) as exc:
        logger.warning("Skipping recurring event %s; cannot expand rule %r: %s", raw.uid, raw.recurrence.rule, exc)
        return []

    occurrences: List[RawEvent] = []
    for instant in instants:
        keys = occurrence_keys(instant)
        if any(key in raw.recurrence.exceptions for key in keys):
            continue

        override = _find_override(raw.recurrence, keys)
        if override is not None:
            occurrence = _resolve_override(raw, override, instant, tz)
            if occurrence is None:
                logger.debug("Dropping malformed override of %s at %s", raw.uid, keys[0])
                continue
        else:
            occurrence = replace(
                raw,
                start=instant,
                end=instant + duration if duration else None,
                recurrence=None,
                recurrence_id=instant,
            )

        occ_end = ensure_end(occurrence.start, occurrence.end, occurrence.all_day)
        if overlaps(occurrence.start, occ_end, range_start, range_end):
            occurrences.append(occurrence)

    return occurrences
