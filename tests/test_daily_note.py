import tempfile
import unittest
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from focusplanner.daily_note import (
    DailyNoteStore,
    NoteVault,
    merge_events,
    parse_event_line,
    render_event_line,
)
from focusplanner.errors import EventNotFoundError, NoteWriteError, SectionNotFoundError
from focusplanner.models import DEFAULT_SECTION_HEADINGS, CalendarEvent, EventCategory, NotesConfig

UTC = timezone.utc
HEADINGS = {category: DEFAULT_SECTION_HEADINGS[category.value] for category in EventCategory}
DAY = date(2025, 6, 16)


def _event(title: str, start: tuple[int, int], end: tuple[int, int], category: EventCategory, **kwargs) -> CalendarEvent:
    return CalendarEvent(
        event_id=f"e-{title}",
        title=title,
        start=datetime(2025, 6, 16, *start, tzinfo=UTC),
        end=datetime(2025, 6, 16, *end, tzinfo=UTC),
        category=category,
        **kwargs,
    )


NOTE = "\n".join(
    [
        "# Day planner",
        "### 🎯 专注时间",
        "- Old focus [startTime:: 08:00] [endTime:: 09:00]",
        "keep this focus comment",
        "",
        "### 📅 会议",
        "- Manual meeting [startTime:: 10:00] [endTime:: 10:30]",
        "",
        "### 🏠 家庭/个人",
        "- Dinner [startTime:: 19:00] [endTime:: 20:00]",
        "",
        "## 💭 每日反思",
        "- not an event",
        "",
    ]
)


class EventLineTests(unittest.TestCase):
    def test_render_and_parse_round_trip(self) -> None:
        event = _event(
            "Deep work",
            (9, 0),
            (10, 30),
            EventCategory.FOCUS,
            planned_units=3,
            task_path="1. Projects/thesis.md",
            task_line=12,
        )
        line = render_event_line(event, UTC)
        self.assertEqual(
            line,
            "- Deep work 3🍅 [startTime:: 09:00] [endTime:: 10:30] "
            "[taskPath:: 1. Projects/thesis.md] [taskLine:: 12]",
        )
        parsed = parse_event_line(line)
        self.assertEqual(parsed.title, "Deep work")
        self.assertEqual((parsed.start, parsed.end), ("09:00", "10:30"))
        self.assertEqual(parsed.planned_units, 3)
        self.assertEqual(parsed.task_path, "1. Projects/thesis.md")
        self.assertEqual(parsed.task_line, 12)

    def test_parse_rejects_non_event_lines(self) -> None:
        self.assertIsNone(parse_event_line("plain text [startTime:: 09:00] [endTime:: 10:00]"))
        self.assertIsNone(parse_event_line("- missing times"))
        self.assertEqual(parse_event_line("- Early [startTime:: 7:05] [endTime:: 8:00]").start, "07:05")


class MergeEventsTests(unittest.TestCase):
    def test_replaces_only_sections_with_incoming_events(self) -> None:
        events = [
            _event("Standup", (9, 30), (9, 45), EventCategory.MEETING),
            _event("Review", (8, 0), (9, 0), EventCategory.MEETING),
        ]
        merged = merge_events(NOTE, events, HEADINGS, UTC)
        lines = merged.split("\n")
        meeting = lines.index("### 📅 会议")
        self.assertEqual(lines[meeting + 1], "- Review [startTime:: 08:00] [endTime:: 09:00]")
        self.assertEqual(lines[meeting + 2], "- Standup [startTime:: 09:30] [endTime:: 09:45]")
        self.assertNotIn("Manual meeting", merged)
        self.assertIn("- Old focus [startTime:: 08:00] [endTime:: 09:00]", merged)
        self.assertIn("- Dinner [startTime:: 19:00] [endTime:: 20:00]", merged)
        self.assertIn("keep this focus comment", merged)
        self.assertIn("- not an event", merged)

    def test_merge_is_idempotent(self) -> None:
        events = [
            _event("Paper", (13, 0), (15, 0), EventCategory.FOCUS, planned_units=4),
            _event("Sync", (16, 0), (16, 30), EventCategory.MEETING),
        ]
        once = merge_events(NOTE, events, HEADINGS, UTC)
        twice = merge_events(once, events, HEADINGS, UTC)
        self.assertEqual(once, twice)
        self.assertIn("keep this focus comment", twice)

    def test_no_events_leaves_content_untouched(self) -> None:
        self.assertEqual(merge_events(NOTE, [], HEADINGS, UTC), NOTE)

    def test_missing_section_is_appended(self) -> None:
        events = [_event("Nap", (13, 0), (13, 30), EventCategory.REST)]
        merged = merge_events(NOTE, events, HEADINGS, UTC)
        lines = merged.split("\n")
        rest = lines.index("### 😴 休息")
        self.assertEqual(lines[rest + 1], "- Nap [startTime:: 13:00] [endTime:: 13:30]")
        self.assertLess(lines.index("### 🏠 家庭/个人"), rest)
        self.assertLess(rest, lines.index("## 💭 每日反思"))
        self.assertEqual(merge_events(merged, events, HEADINGS, UTC), merged)

    def test_crlf_line_endings_are_preserved(self) -> None:
        content = NOTE.replace("\n", "\r\n")
        merged = merge_events(content, [_event("Sync", (9, 0), (9, 30), EventCategory.MEETING)], HEADINGS, UTC)
        self.assertNotIn("\n", merged.replace("\r\n", ""))
        self.assertIn("- Sync [startTime:: 09:00] [endTime:: 09:30]\r\n", merged)

    def test_duplicate_heading_only_first_is_replaced(self) -> None:
        content = NOTE + "\n".join(["### 📅 会议", "- Second list [startTime:: 11:00] [endTime:: 12:00]", ""])
        merged = merge_events(content, [_event("Sync", (9, 0), (9, 30), EventCategory.MEETING)], HEADINGS, UTC)
        self.assertIn("- Second list [startTime:: 11:00] [endTime:: 12:00]", merged)
        self.assertEqual(merged.count("- Sync [startTime:: 09:00]"), 1)


class DailyNoteStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.notes = NotesConfig(vault_path=self.temp_dir.name, daily_note_path="Daily/YYYY/MM/YYYY-MM-DD.md")
        self.store = DailyNoteStore(NoteVault(self.temp_dir.name), self.notes, UTC)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _read(self, day: date) -> str:
        return (Path(self.temp_dir.name) / self.store.note_path(day)).read_text(encoding="utf-8")

    def test_note_path_template(self) -> None:
        self.assertEqual(self.store.note_path(date(2025, 1, 5)), "Daily/2025/01/2025-01-05.md")

    def test_write_events_creates_note_from_template(self) -> None:
        changed = self.store.write_events(DAY, [_event("Sync", (9, 0), (9, 30), EventCategory.MEETING)])
        self.assertTrue(changed)
        content = self._read(DAY)
        for heading in HEADINGS.values():
            self.assertIn(heading, content)
        self.assertIn("### 📅 会议\n- Sync [startTime:: 09:00] [endTime:: 09:30]\n", content)
        self.assertFalse(self.store.write_events(DAY, [_event("Sync", (9, 0), (9, 30), EventCategory.MEETING)]))

    def test_parse_events_round_trip(self) -> None:
        events = [
            _event("Paper", (13, 0), (15, 0), EventCategory.FOCUS, planned_units=4),
            _event("Sync", (9, 0), (9, 30), EventCategory.MEETING),
        ]
        self.store.write_events(DAY, events)
        parsed = self.store.parse_events(DAY)
        by_title = {event.title: event for event in parsed}
        self.assertEqual(set(by_title), {"Paper", "Sync"})
        self.assertEqual(by_title["Paper"].category, EventCategory.FOCUS)
        self.assertEqual(by_title["Paper"].planned_units, 4)
        self.assertEqual(by_title["Paper"].start, events[0].start)
        self.assertEqual(by_title["Paper"].origin, "local")
        self.assertEqual(by_title["Sync"].category, EventCategory.MEETING)
        self.assertIsNone(by_title["Sync"].planned_units)

    def test_parse_content_planning_table_and_overnight(self) -> None:
        content = "\n".join(
            [
                "| Task | Plan |",
                "| --- | --- |",
                "| 📖 Thesis | 3🍅 |",
                "### 🎯 专注时间",
                "- Thesis draft [startTime:: 23:00] [endTime:: 01:00]",
                "- Zero [startTime:: 10:00] [endTime:: 10:00]",
                "### Other heading",
                "- Orphan [startTime:: 11:00] [endTime:: 12:00]",
            ]
        )
        events = self.store.parse_content(content, DAY, "note.md")
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].planned_units, 3)
        self.assertEqual(events[0].end, datetime(2025, 6, 17, 1, 0, tzinfo=UTC))
        self.assertEqual(events[0].source_line, 5)

    def test_parse_pomodoros(self) -> None:
        path = Path(self.temp_dir.name) / self.store.note_path(DAY)
        path.parent.mkdir(parents=True)
        path.write_text(
            "🍅 (pomodoro::WORK) (duration:: 25m) (begin:: 2025-06-16 09:05) - (end:: 2025-06-16 09:30)\n"
            "(pomodoro::BREAK) (duration:: 5m) (begin:: 2025-06-16 09:30) - (end:: 2025-06-16 09:35)\n",
            encoding="utf-8",
        )
        records = self.store.parse_pomodoros(DAY)
        self.assertEqual([record.kind for record in records], ["WORK", "BREAK"])
        self.assertEqual(records[0].start, datetime(2025, 6, 16, 9, 5, tzinfo=UTC))
        self.assertEqual(records[0].duration_minutes, 25)

    def test_add_update_remove_event(self) -> None:
        event = _event("Reading", (14, 0), (15, 0), EventCategory.FOCUS)
        path = self.store.add_event(event)
        self.assertIn("- Reading [startTime:: 14:00] [endTime:: 15:00]", self._read(DAY))

        updated = self.store.update_event(
            event, event.start + timedelta(hours=1), event.end + timedelta(hours=1), "Reading notes"
        )
        self.assertEqual(updated.title, "Reading notes")
        self.assertEqual(updated.source_path, path)
        content = self._read(DAY)
        self.assertIn("- Reading notes [startTime:: 15:00] [endTime:: 16:00]", content)
        self.assertNotIn("[startTime:: 14:00]", content)

        self.store.remove_event(updated)
        self.assertNotIn("Reading notes", self._read(DAY))

    def test_update_rejects_inverted_times(self) -> None:
        event = _event("Reading", (14, 0), (15, 0), EventCategory.FOCUS)
        self.store.add_event(event)
        with self.assertRaises(ValueError):
            self.store.update_event(event, event.end, event.start)

    def test_remove_unknown_event_raises(self) -> None:
        self.store.add_event(_event("Reading", (14, 0), (15, 0), EventCategory.FOCUS))
        with self.assertRaises(EventNotFoundError):
            self.store.remove_event(_event("Reading", (16, 0), (17, 0), EventCategory.FOCUS))

    def test_add_event_without_section_raises(self) -> None:
        path = Path(self.temp_dir.name) / self.store.note_path(DAY)
        path.parent.mkdir(parents=True)
        path.write_text("# Only a title\n", encoding="utf-8")
        with self.assertRaises(SectionNotFoundError):
            self.store.add_event(_event("Nap", (13, 0), (13, 30), EventCategory.REST))

    def test_move_event_across_days(self) -> None:
        event = _event("Reading", (14, 0), (15, 0), EventCategory.FOCUS)
        self.store.add_event(event)
        moved = self.store.update_event(event, event.start + timedelta(days=1), event.end + timedelta(days=1))
        next_day = DAY + timedelta(days=1)
        self.assertEqual(moved.source_path, self.store.note_path(next_day))
        self.assertNotIn("Reading", self._read(DAY))
        self.assertIn("- Reading [startTime:: 14:00] [endTime:: 15:00]", self._read(next_day))

    def test_move_event_rolls_back_target_when_source_write_fails(self) -> None:
        event = _event("Reading", (14, 0), (15, 0), EventCategory.FOCUS)
        self.store.add_event(event)
        source_path = self.store.note_path(DAY)
        original_write = self.store.vault.write

        def failing_write(relative_path: str, content: str) -> None:
            if relative_path == source_path:
                raise NoteWriteError("disk full")
            original_write(relative_path, content)

        with mock.patch.object(self.store.vault, "write", side_effect=failing_write):
            with self.assertRaises(NoteWriteError):
                self.store.move_event(event, event.start + timedelta(days=1), event.end + timedelta(days=1))

        self.assertFalse(self.store.vault.exists(self.store.note_path(DAY + timedelta(days=1))))
        self.assertIn("- Reading [startTime:: 14:00]", self._read(DAY))

    def test_vault_rejects_paths_outside_root(self) -> None:
        with self.assertRaises(NoteWriteError):
            self.store.vault.resolve("../outside.md")


if __name__ == "__main__":
    unittest.main()
