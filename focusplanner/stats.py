from __future__ import annotations

from datetime import date, timedelta
from typing import Any

from focusplanner.daily_note import DailyNoteStore
from focusplanner.models import (
    CATEGORY_COLORS,
    CATEGORY_LABELS,
    CalendarEvent,
    DailyStats,
    EventCategory,
    PomodoroRecord,
    WeeklyStats,
)


def iso_week_label(day: date) -> str:
    year, week, _ = day.isocalendar()
    return f"{year}-W{week:02d}"


def overlaps(record: PomodoroRecord, event: CalendarEvent) -> bool:
    return record.start < event.end and record.end > event.start


class StatsAggregator:
    def __init__(self, store: DailyNoteStore) -> None:
        self.store = store

    def daily_stats(self, day: date) -> DailyStats:
        events = self.store.parse_events(day)
        records = self.store.parse_pomodoros(day)
        stats = DailyStats(day=day, units_completed=len(records))
        for event in events:
            minutes = round(event.duration.total_seconds() / 60)
            stats.by_category[event.category] += minutes
            stats.total_minutes += minutes
            if event.planned_units:
                stats.units_planned += event.planned_units
        return stats

    def weekly_stats(self, week_start: date) -> WeeklyStats:
        week_end = week_start + timedelta(days=6)
        weekly = WeeklyStats(week_label=iso_week_label(week_start), start_date=week_start, end_date=week_end)
        for offset in range(7):
            day_stats = self.daily_stats(week_start + timedelta(days=offset))
            weekly.daily.append(day_stats)
            weekly.total_minutes += day_stats.total_minutes
            weekly.units_completed += day_stats.units_completed
            weekly.units_planned += day_stats.units_planned
            for category, minutes in day_stats.by_category.items():
                weekly.by_category[category] += minutes
        return weekly

    @staticmethod
    def associate_pomodoros(
        records: list[PomodoroRecord], events: list[CalendarEvent]
    ) -> dict[str, list[PomodoroRecord]]:
        """Attribute each record to the first event, in document order, it overlaps."""
        associated: dict[str, list[PomodoroRecord]] = {}
        for record in records:
            for event in events:
                if overlaps(record, event):
                    associated.setdefault(event.event_id, []).append(record)
                    break
        return associated

    def with_progress(self, events: list[CalendarEvent], records: list[PomodoroRecord]) -> list[CalendarEvent]:
        associated = self.associate_pomodoros(records, events)
        return [
            event.with_updates(completed_units=len(associated.get(event.event_id, [])))
            for event in events
        ]

    def events_with_progress(self, start: date, end: date) -> list[CalendarEvent]:
        events: list[CalendarEvent] = []
        records: list[PomodoroRecord] = []
        current = start
        while current <= end:
            events.extend(self.store.parse_events(current))
            records.extend(self.store.parse_pomodoros(current))
            current += timedelta(days=1)
        return self.with_progress(events, records)

    @staticmethod
    def time_distribution(weekly: WeeklyStats) -> list[dict[str, Any]]:
        distribution = []
        for category in EventCategory:
            minutes = weekly.by_category.get(category, 0)
            if minutes <= 0:
                continue
            distribution.append(
                {
                    "category": category.value,
                    "label": CATEGORY_LABELS[category],
                    "hours": round(minutes / 60, 1),
                    "color": CATEGORY_COLORS[category],
                }
            )
        distribution.sort(key=lambda item: item["hours"], reverse=True)
        return distribution
