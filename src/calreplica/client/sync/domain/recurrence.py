"""Recurrence expansion.

Turns a recurring master plus its stored exceptions into the concrete
occurrences inside a time window. Expansion is pure and deterministic:
synthesized occurrences are never stored, and their ids are derived from
the master id and the occurrence date so they are stable across runs.

Timed masters expand in their own time zone, so a 10:00 weekly meeting stays
at 10:00 local time across DST changes. All-day masters expand over dates.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import replace
from datetime import date, datetime, time, timedelta, timezone

from dateutil.rrule import rrulestr

from calreplica.client.models import Event, EventTime, InstanceKey
from calreplica.core.config import SyncWindow

logger = logging.getLogger(__name__)

MAX_INSTANCES = 1000

RULE_PREFIXES = ("RRULE", "RDATE", "EXRULE", "EXDATE")

_UNTIL = re.compile(r"(UNTIL=)([0-9TZ]+)", re.IGNORECASE)


def _overlaps(event: Event, window: SyncWindow) -> bool:
    return event.start.to_datetime() <= window.end and event.end.to_datetime() >= window.start


def _visible(event: Event) -> bool:
    return not event.deleted and event.status != "cancelled"


def _normalize_until(line: str, first: datetime) -> str:
    """Rewrite UNTIL in the form dateutil accepts for ``first``.

    Providers send date-only or UTC values regardless of the start. An aware
    start needs a UTC UNTIL (a bare date covers that whole day in the
    master's zone); a naive all-day start needs a naive one.
    """
    match = _UNTIL.search(line)
    if match is None:
        return line
    value = match.group(2).upper()
    if first.tzinfo is None:
        if not value.endswith("Z"):
            return line
        normalized = value[:8]
    else:
        if value.endswith("Z"):
            return line
        if "T" in value:
            until = datetime.strptime(value, "%Y%m%dT%H%M%S")
        else:
            until = datetime.combine(datetime.strptime(value, "%Y%m%d").date(), time(23, 59, 59))
        until = until.replace(tzinfo=first.tzinfo).astimezone(timezone.utc)
        normalized = until.strftime("%Y%m%dT%H%M%SZ")
    return line[: match.start(2)] + normalized + line[match.end(2) :]


def _occurrence(master: Event, start: datetime, duration: timedelta) -> Event:
    """Synthesize one occurrence of ``master`` starting at ``start``."""
    end = start + duration
    if master.start.is_all_day:
        start_time = EventTime.from_date(start.date(), master.start.time_zone)
        end_time = EventTime.from_date(end.date(), master.end.time_zone)
    else:
        start_time = EventTime.from_datetime(start, master.start.time_zone)
        end_time = EventTime.from_datetime(end, master.end.time_zone or master.start.time_zone)
    instance_date = start.date()
    return replace(
        master,
        id=InstanceKey(master.id, instance_date).event_id,
        start=start_time,
        end=end_time,
        recurrence=(),
        recurring_event_id=master.id,
        instance_date=instance_date,
        locally_modified=False,
        has_conflict=False,
        conflict_remote=None,
        sync_error=None,
    )


def expand(
    master: Event,
    window: SyncWindow,
    exceptions: Mapping[date, Event] | None = None,
) -> list[Event]:
    """Expand a recurring master over a window.

    Args:
        master: Event carrying RRULE/RDATE/EXRULE/EXDATE lines.
        window: Time range to expand over.
        exceptions: Stored modified occurrences keyed by original date. They
            replace the rule occurrence on that date and are emitted
            unchanged, wherever they were moved to (cancelled ones suppress
            it).

    Returns:
        Occurrences whose rule slot overlaps the window, in rule order, at
        most MAX_INSTANCES. An empty list if the rule text cannot be parsed.
    """
    exceptions = exceptions or {}
    if not master.recurrence:
        return [master] if _overlaps(master, window) else []

    lines = [line for line in master.recurrence if line.upper().startswith(RULE_PREFIXES)]
    all_day = master.start.is_all_day
    if all_day:
        first = datetime.combine(master.start.as_date(), time.min)
        duration = datetime.combine(master.end.as_date(), time.min) - first
        lower = datetime.combine(window.start.date(), time.min)
        upper = datetime.combine(window.end.date(), time.min)
    else:
        first = master.start.to_datetime()
        if master.start.time_zone:
            first = first.astimezone(master.start.zone)
        duration = master.end.to_datetime() - master.start.to_datetime()
        lower = window.start
        upper = window.end

    try:
        lines = [_normalize_until(line, first) for line in lines]
        rule = rrulestr("\n".join(lines), forceset=True, dtstart=first)
        starts = []
        for start in rule.xafter(lower - duration, count=MAX_INSTANCES, inc=True):
            if start > upper:
                break
            starts.append(start)
    except (ValueError, TypeError) as e:
        logger.warning(f"Malformed recurrence on {master.id}: {e}")
        return []

    occurrences: list[Event] = []
    for start in starts:
        occurrence = _occurrence(master, start, duration)
        if not _overlaps(occurrence, window):
            continue
        exception = exceptions.get(start.date())
        if exception is None:
            occurrences.append(occurrence)
        elif _visible(exception):
            occurrences.append(exception)
    return occurrences


def expand_events(events: Iterable[Event], window: SyncWindow) -> list[Event]:
    """Build the display list for a window.

    Non-recurring events overlapping the window are returned as-is; recurring
    masters are expanded with their stored exceptions. Deleted and cancelled
    records are hidden.

    Returns:
        Events ordered by start.
    """
    events = list(events)
    masters = {
        (event.account_id, event.calendar_id, event.id): event
        for event in events
        if event.is_recurring and not event.deleted
    }
    deleted_masters = {
        (event.account_id, event.calendar_id, event.id)
        for event in events
        if event.is_recurring and event.deleted
    }
    exceptions: dict[tuple[str, str, str], dict[date, Event]] = {}
    result: list[Event] = []

    for event in events:
        if event.is_recurring:
            continue
        master_key = (event.account_id, event.calendar_id, event.recurring_event_id or "")
        if event.instance_date is not None and event.recurring_event_id and master_key in masters:
            exceptions.setdefault(master_key, {})[event.instance_date] = event
        elif master_key in deleted_masters:
            continue
        elif _visible(event) and _overlaps(event, window):
            result.append(event)

    for key, master in masters.items():
        result.extend(expand(master, window, exceptions.get(key, {})))

    result.sort(key=lambda event: (event.start.to_datetime(), event.id))
    return result
