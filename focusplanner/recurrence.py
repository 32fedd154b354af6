from __future__ import annotations

import calendar
import logging
import re
from datetime import datetime, timedelta

from focusplanner.models import RecurrenceRule

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 1000
SUPPORTED_FREQUENCIES = ("DAILY", "WEEKLY", "MONTHLY", "YEARLY")
WEEKDAY_CODES = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")


def weekday_numbers(by_day: tuple[str, ...] | list[str]) -> set[int]:
    numbers: set[int] = set()
    for code in by_day:
        # "1MO" / "-1FR" ordinals are not supported; keep the weekday part.
        plain = re.sub(r"^[+-]?\d+", "", str(code).strip().upper())
        if plain in WEEKDAY_CODES:
            numbers.add(WEEKDAY_CODES.index(plain))
    return numbers


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _nth(start: datetime, freq: str, interval: int, day_stepping: bool, index: int) -> datetime:
    if day_stepping:
        return start + timedelta(days=index)
    if freq == "DAILY":
        return start + timedelta(days=index * interval)
    if freq == "WEEKLY":
        return start + timedelta(weeks=index * interval)
    if freq == "MONTHLY":
        return _add_months(start, index * interval)
    return _add_months(start, 12 * index * interval)


def _skip_ahead(
    start: datetime,
    duration: timedelta,
    freq: str,
    interval: int,
    day_stepping: bool,
    window_start: datetime,
) -> int:
    target = (window_start - duration).astimezone(start.tzinfo)
    if target <= start:
        return 0
    gap_days = (target.date() - start.date()).days
    if day_stepping:
        period = 7 * interval
        return max(0, gap_days // period - 1) * period
    if freq == "DAILY":
        return max(0, gap_days // interval - 1)
    if freq == "WEEKLY":
        return max(0, gap_days // (7 * interval) - 1)
    months = (target.year - start.year) * 12 + target.month - start.month
    if freq == "MONTHLY":
        return max(0, months // interval - 1)
    return max(0, months // (12 * interval) - 1)


def expand_recurrence(
    start: datetime,
    duration: timedelta,
    rule: RecurrenceRule,
    window_start: datetime,
    window_end: datetime,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
) -> list[datetime]:
    """Return the occurrence starts of ``rule`` that touch the window.

    An occurrence is kept when ``[occurrence, occurrence + duration]``
    intersects ``[window_start, window_end]`` and, when BYDAY is set, its
    weekday matches. WEEKLY rules with BYDAY advance one day at a time so
    several weekdays of the same week can match. COUNT counts occurrences of
    the whole series, not only those inside the window.

    Unknown frequencies produce an empty list. Reaching ``max_iterations``
    logs a warning and returns what was collected so far.
    """
    freq = str(rule.freq or "").upper()
    if freq not in SUPPORTED_FREQUENCIES:
        logger.debug("Unsupported recurrence frequency %r; no occurrences expanded", rule.freq)
        return []

    interval = max(1, int(rule.interval or 1))
    weekdays = weekday_numbers(rule.by_day)
    day_stepping = bool(weekdays) and freq == "WEEKLY"
    effective_end = window_end if rule.until is None else min(rule.until, window_end)

    index = 0
    if rule.count is None:
        index = _skip_ahead(start, duration, freq, interval, day_stepping, window_start)

    occurrences: list[datetime] = []
    emitted = 0
    iterations = 0
    while True:
        if iterations >= max_iterations:
            logger.warning(
                "Recurrence expansion hit the iteration cap (%s) for rule %s; returning %s occurrences",
                max_iterations,
                freq,
                len(occurrences),
            )
            break
        iterations += 1

        current = _nth(start, freq, interval, day_stepping, index)
        index += 1
        if current > effective_end:
            break
        if weekdays and current.weekday() not in weekdays:
            continue
        if day_stepping and interval > 1:
            week_number = ((current.date() - start.date()).days + start.weekday()) // 7
            if week_number % interval:
                continue

        emitted += 1
        if current <= window_end and current + duration >= window_start:
            occurrences.append(current)
        if rule.count is not None and emitted >= rule.count:
            break

    return occurrences
