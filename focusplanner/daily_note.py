from __future__ import annotations

import errno
import logging
import os
import re
import threading
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from enum import Enum
from pathlib import Path

from focusplanner.errors import EventNotFoundError, NoteWriteError, SectionNotFoundError
from focusplanner.models import CalendarEvent, EventCategory, NotesConfig, PomodoroRecord, format_hhmm

logger = logging.getLogger(__name__)

HEADING_PATTERN = re.compile(r"^\s*#{1,6}\s")
EVENT_TIME_PATTERN = re.compile(r"\[startTime::\s*(\d{1,2}:\d{2})\s*\]\s*\[endTime::\s*(\d{1,2}:\d{2})\s*\]")
EVENT_TITLE_PATTERN = re.compile(r"^\s*-\s*(.+?)\s*\[startTime")
TASK_PATH_PATTERN = re.compile(r"\[taskPath::\s*([^\]]+?)\s*\]")
TASK_LINE_PATTERN = re.compile(r"\[taskLine::\s*(\d+)\s*\]")
PLANNED_UNITS_PATTERN = re.compile(r"(\d+)🍅")
PLANNING_ROW_PATTERN = re.compile(r"\|\s*([^|]+?)\s*\|\s*(\d+)🍅\s*\|")
LEADING_SYMBOLS_PATTERN = re.compile(r"^[^\w\s]+\s*")
POMODORO_PATTERN = re.compile(
    r"🍅?\s*\(pomodoro::(\w+)\)\s*\(duration::\s*(\d+)m\)\s*"
    r"\(begin::\s*([\d-]+\s+[\d:]+)\)\s*-\s*\(end::\s*([\d-]+\s+[\d:]+)\)"
)

DAILY_NOTE_TEMPLATE = """# **今日主题：** `待填写`

# 今日TODO
%%Your Record%%

```tasks
((folder includes 1. Projects) OR (folder includes 2. Areas) OR (folder includes 3. Resources) OR (filename includes Inbox)) AND ((due on today) OR (status.type is IN_PROGRESS) OR (due before today))
not done
sort by due
```

# Day planner
### 今天从哪开始？

待填写

{sections}## 💭 每日反思


---

## Completed today
%%List of tasks completed today, extracted from all notes%%
```PeriodicPARA
TaskDoneListByTime
```
"""


class LineKind(str, Enum):
    CATEGORY_HEADING = "category_heading"
    HEADING = "heading"
    EVENT = "event"
    TEXT = "text"


@dataclass(frozen=True)
class NoteLine:
    kind: LineKind
    text: str
    category: EventCategory | None = None


@dataclass(frozen=True)
class EventLine:
    title: str
    start: str
    end: str
    planned_units: int | None = None
    task_path: str = ""
    task_line: int | None = None


def classify_line(line: str, headings: dict[str, EventCategory]) -> NoteLine:
    stripped = line.strip()
    for heading, category in headings.items():
        if stripped.startswith(heading):
            return NoteLine(LineKind.CATEGORY_HEADING, line, category)
    if HEADING_PATTERN.match(line):
        return NoteLine(LineKind.HEADING, line)
    if stripped.startswith("-") and "[startTime::" in stripped:
        return NoteLine(LineKind.EVENT, line)
    return NoteLine(LineKind.TEXT, line)


def _normalize_hhmm(value: str) -> str:
    hour, _, minute = value.partition(":")
    return f"{int(hour):02d}:{int(minute):02d}"


def strip_planned_units(title: str) -> tuple[str, int | None]:
    match = PLANNED_UNITS_PATTERN.search(title)
    if not match:
        return title.strip(), None
    cleaned = (title[: match.start()].rstrip() + " " + title[match.end() :].lstrip()).strip()
    return cleaned, int(match.group(1))


def parse_event_line(line: str) -> EventLine | None:
    if not line.strip().startswith("-"):
        return None
    times = EVENT_TIME_PATTERN.search(line)
    if not times:
        return None
    title_match = EVENT_TITLE_PATTERN.match(line)
    raw_title = title_match.group(1).strip() if title_match else "Untitled"
    title, planned_units = strip_planned_units(raw_title)
    task_path = TASK_PATH_PATTERN.search(line)
    task_line = TASK_LINE_PATTERN.search(line)
    return EventLine(
        title=title or "Untitled",
        start=_normalize_hhmm(times.group(1)),
        end=_normalize_hhmm(times.group(2)),
        planned_units=planned_units,
        task_path=task_path.group(1) if task_path else "",
        task_line=int(task_line.group(1)) if task_line else None,
    )


def render_event_line(event: CalendarEvent, tz: tzinfo) -> str:
    title = event.title
    if event.planned_units:
        title = f"{title} {event.planned_units}🍅"
    line = (
        f"- {title} [startTime:: {format_hhmm(event.start.astimezone(tz))}]"
        f" [endTime:: {format_hhmm(event.end.astimezone(tz))}]"
    )
    if event.task_path:
        line += f" [taskPath:: {event.task_path}]"
        if event.task_line is not None:
            line += f" [taskLine:: {event.task_line}]"
    return line


def find_sections(lines: list[str], headings: dict[str, EventCategory]) -> dict[EventCategory, tuple[int, int]]:
    """Map each category to ``(heading_index, end_index)`` of its first section.

    A section runs from its heading up to, not including, the next heading of
    any kind. Repeated headings for an already seen category are left alone.
    """
    sections: dict[EventCategory, tuple[int, int]] = {}
    current: EventCategory | None = None
    for index, line in enumerate(lines):
        token = classify_line(line, headings)
        if token.kind not in (LineKind.CATEGORY_HEADING, LineKind.HEADING):
            continue
        if current is not None:
            sections[current] = (sections[current][0], index)
            current = None
        if token.kind == LineKind.CATEGORY_HEADING and token.category not in sections:
            current = token.category
            sections[current] = (index, len(lines))
    return sections


def _split_lines(content: str) -> tuple[list[str], str]:
    newline = "\r\n" if "\r\n" in content else "\n"
    return content.split(newline), newline


def merge_events(
    content: str,
    events: list[CalendarEvent],
    headings: dict[EventCategory, str],
    tz: tzinfo,
) -> str:
    """Rewrite the event lines of every category that has incoming events.

    Sections of categories without incoming events are left byte-identical,
    as is every line outside the rewritten event lines. Applying the same
    events twice yields the same document.
    """
    grouped: dict[EventCategory, list[CalendarEvent]] = {}
    for event in events:
        grouped.setdefault(event.category, []).append(event)
    if not grouped:
        return content
    rendered = {
        category: [render_event_line(event, tz) for event in sorted(items, key=lambda e: (e.start, e.end, e.title))]
        for category, items in grouped.items()
    }

    heading_map = {text: category for category, text in headings.items()}
    lines, newline = _split_lines(content)
    sections = find_sections(lines, heading_map)

    anchors: dict[int, EventCategory] = {}
    removed: set[int] = set()
    for category in rendered:
        if category not in sections:
            continue
        heading_index, end_index = sections[category]
        event_indexes = [
            index
            for index in range(heading_index + 1, end_index)
            if classify_line(lines[index], heading_map).kind == LineKind.EVENT
        ]
        removed.update(event_indexes)
        anchors[event_indexes[0] if event_indexes else heading_index + 1] = category

    output: list[str] = []
    for index, line in enumerate(lines):
        if index in anchors:
            output.extend(rendered[anchors[index]])
        if index not in removed:
            output.append(line)
    if len(lines) in anchors:
        output.extend(rendered[anchors[len(lines)]])

    missing = [category for category in EventCategory if category in rendered and category not in sections]
    if missing:
        logger.info("Appending missing sections for %s", ", ".join(category.value for category in missing))
        output = _append_sections(output, missing, rendered, headings, sections, len(lines))
    return newline.join(output)


def _append_sections(
    output: list[str],
    missing: list[EventCategory],
    rendered: dict[EventCategory, list[str]],
    headings: dict[EventCategory, str],
    sections: dict[EventCategory, tuple[int, int]],
    original_length: int,
) -> list[str]:
    block: list[str] = []
    for category in missing:
        block.extend([headings[category], *rendered[category], ""])

    if sections:
        # Index shift from the rewritten event lines before the insertion point.
        last_end = max(end for _, end in sections.values())
        shift = len(output) - original_length
        position = last_end + shift
        return output[:position] + block + output[position:]

    position = len(output) - 1 if output and output[-1] == "" else len(output)
    if position > 0 and output[position - 1].strip():
        block.insert(0, "")
    return output[:position] + block + output[position:]


class NoteVault:
    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(root)

    def resolve(self, relative_path: str) -> Path:
        path = (self.root / relative_path).resolve()
        root = self.root.resolve()
        if path != root and root not in path.parents:
            raise NoteWriteError(f"Note path escapes the vault: {relative_path}")
        return path

    def exists(self, relative_path: str) -> bool:
        return self.resolve(relative_path).is_file()

    def read(self, relative_path: str) -> str:
        with self.resolve(relative_path).open("r", encoding="utf-8", newline="") as handle:
            return handle.read()

    def write(self, relative_path: str, content: str) -> None:
        path = self.resolve(relative_path)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8", newline="") as handle:
                handle.write(content)
            try:
                tmp_path.replace(path)
            except OSError as exc:
                if exc.errno != errno.EBUSY:
                    raise
                with path.open("w", encoding="utf-8", newline="") as handle:
                    handle.write(content)
                if tmp_path.exists():
                    tmp_path.unlink()
        except OSError as exc:
            raise NoteWriteError(f"Failed to write note {relative_path}: {exc}") from exc

    def create(self, relative_path: str, content: str) -> None:
        if self.exists(relative_path):
            return
        self.write(relative_path, content)

    def delete(self, relative_path: str) -> None:
        path = self.resolve(relative_path)
        if path.exists():
            path.unlink()


class DailyNoteStore:
    def __init__(self, vault: NoteVault, notes: NotesConfig, tz: tzinfo) -> None:
        self.vault = vault
        self.notes = notes
        self.tz = tz
        self.headings = {category: notes.heading_for(category) for category in EventCategory}
        self.heading_map = {text: category for category, text in self.headings.items()}
        self._lock = threading.RLock()

    def note_path(self, day: date) -> str:
        return (
            self.notes.daily_note_path.replace("YYYY", f"{day.year:04d}")
            .replace("MM", f"{day.month:02d}")
            .replace("DD", f"{day.day:02d}")
        )

    def local_date(self, value: datetime) -> date:
        return value.astimezone(self.tz).date()

    def render_template(self) -> str:
        sections = "".join(f"{self.headings[category]}\n\n" for category in EventCategory)
        return DAILY_NOTE_TEMPLATE.replace("{sections}", sections)

    def ensure_note(self, day: date) -> str:
        path = self.note_path(day)
        if not self.vault.exists(path):
            logger.info("Creating daily note %s", path)
            self.vault.create(path, self.render_template())
        return path

    def merge_events(self, content: str, events: list[CalendarEvent]) -> str:
        return merge_events(content, events, self.headings, self.tz)

    def write_events(self, day: date, events: list[CalendarEvent]) -> bool:
        with self._lock:
            path = self.ensure_note(day)
            content = self.vault.read(path)
            updated = self.merge_events(content, events)
            if updated == content:
                return False
            self.vault.write(path, updated)
            logger.debug("Wrote %s events to %s", len(events), path)
            return True

    def planning_table(self, content: str) -> dict[str, int]:
        planned: dict[str, int] = {}
        for name, count in PLANNING_ROW_PATTERN.findall(content):
            key = LEADING_SYMBOLS_PATTERN.sub("", name.strip()).strip().lower()
            units = int(count)
            if key and units > 0:
                planned[key] = units
        return planned

    @staticmethod
    def lookup_planned_units(title: str, planning: dict[str, int]) -> int | None:
        normalized = title.lower()
        if normalized in planning:
            return planning[normalized]
        for key, value in planning.items():
            if key in normalized or normalized in key:
                return value
        return None

    def parse_content(self, content: str, day: date, path: str) -> list[CalendarEvent]:
        planning = self.planning_table(content)
        lines, _ = _split_lines(content)
        events: list[CalendarEvent] = []
        current: EventCategory | None = None
        for index, line in enumerate(lines):
            token = classify_line(line, self.heading_map)
            if token.kind == LineKind.CATEGORY_HEADING:
                current = token.category
                continue
            if token.kind == LineKind.HEADING:
                current = None
                continue
            if token.kind != LineKind.EVENT or current is None:
                continue
            parsed = parse_event_line(line)
            if parsed is None:
                continue
            start = self._at(day, parsed.start)
            end = self._at(day, parsed.end)
            if end < start:
                end += timedelta(days=1)
            if end == start:
                logger.debug("Skipping zero-length event line %s:%s", path, index + 1)
                continue
            planned = parsed.planned_units
            if planned is None:
                planned = self.lookup_planned_units(parsed.title, planning)
            events.append(
                CalendarEvent(
                    event_id=f"local-{path}:{index + 1}-{parsed.start}-{parsed.end}",
                    title=parsed.title,
                    start=start,
                    end=end,
                    category=current,
                    origin="local",
                    planned_units=planned,
                    source_path=path,
                    source_line=index + 1,
                    task_path=parsed.task_path,
                    task_line=parsed.task_line,
                )
            )
        return events

    def _at(self, day: date, hhmm: str) -> datetime:
        hour, minute = (int(part) for part in hhmm.split(":"))
        return datetime.combine(day, time(hour % 24, minute), tzinfo=self.tz)

    def parse_events(self, day: date) -> list[CalendarEvent]:
        path = self.note_path(day)
        if not self.vault.exists(path):
            return []
        return self.parse_content(self.vault.read(path), day, path)

    def parse_pomodoros(self, day: date) -> list[PomodoroRecord]:
        path = self.note_path(day)
        if not self.vault.exists(path):
            return []
        records: list[PomodoroRecord] = []
        for kind, duration, begin, end in POMODORO_PATTERN.findall(self.vault.read(path)):
            try:
                start_at = datetime.fromisoformat(begin.strip().replace(" ", "T")).replace(tzinfo=self.tz)
                end_at = datetime.fromisoformat(end.strip().replace(" ", "T")).replace(tzinfo=self.tz)
            except ValueError:
                logger.debug("Skipping unparseable pomodoro record in %s", path)
                continue
            records.append(
                PomodoroRecord(kind=kind, start=start_at, end=end_at, duration_minutes=int(duration))
            )
        return records

    def _path_for(self, event: CalendarEvent) -> str:
        return event.source_path or self.note_path(self.local_date(event.start))

    def _section(self, lines: list[str], category: EventCategory, path: str) -> tuple[int, int]:
        sections = find_sections(lines, self.heading_map)
        if category not in sections:
            raise SectionNotFoundError(self.headings[category], path)
        return sections[category]

    def _locate(self, lines: list[str], event: CalendarEvent, path: str) -> int:
        heading_index, end_index = self._section(lines, event.category, path)
        start_text = format_hhmm(event.start.astimezone(self.tz))
        end_text = format_hhmm(event.end.astimezone(self.tz))
        relaxed: int | None = None
        for index in range(heading_index + 1, end_index):
            parsed = parse_event_line(lines[index])
            if parsed is None or parsed.start != start_text or parsed.end != end_text:
                continue
            if parsed.title == event.title:
                return index
            if relaxed is None and event.title in lines[index]:
                relaxed = index
        if relaxed is not None:
            return relaxed
        raise EventNotFoundError(event.title, event.start, event.end)

    def _insertion_index(self, lines: list[str], category: EventCategory, path: str) -> int:
        heading_index, end_index = self._section(lines, category, path)
        position = heading_index + 1
        for index in range(heading_index + 1, end_index):
            if classify_line(lines[index], self.heading_map).kind == LineKind.EVENT:
                position = index + 1
        return position

    def _retime_line(self, line: str, start: datetime, end: datetime, title: str | None = None) -> str:
        times = (
            f"[startTime:: {format_hhmm(start.astimezone(self.tz))}]"
            f" [endTime:: {format_hhmm(end.astimezone(self.tz))}]"
        )
        updated = EVENT_TIME_PATTERN.sub(lambda _: times, line, count=1)
        if title is not None:
            match = EVENT_TITLE_PATTERN.match(updated)
            if match:
                updated = updated[: match.start(1)] + title + updated[match.end(1) :]
        return updated

    def add_event(self, event: CalendarEvent) -> str:
        with self._lock:
            path = self.ensure_note(self.local_date(event.start))
            lines, newline = _split_lines(self.vault.read(path))
            lines.insert(self._insertion_index(lines, event.category, path), render_event_line(event, self.tz))
            self.vault.write(path, newline.join(lines))
            return path

    def remove_event(self, event: CalendarEvent) -> str:
        with self._lock:
            path = self._path_for(event)
            if not self.vault.exists(path):
                raise EventNotFoundError(event.title, event.start, event.end, f"Note not found: {path}")
            lines, newline = _split_lines(self.vault.read(path))
            del lines[self._locate(lines, event, path)]
            self.vault.write(path, newline.join(lines))
            return path

    def update_event(
        self,
        event: CalendarEvent,
        new_start: datetime,
        new_end: datetime,
        new_title: str | None = None,
    ) -> CalendarEvent:
        if new_end <= new_start:
            raise ValueError("Event end must be after its start.")
        with self._lock:
            if self.local_date(new_start) != self.local_date(event.start):
                return self.move_event(event, new_start, new_end, new_title)
            path = self._path_for(event)
            if not self.vault.exists(path):
                raise EventNotFoundError(event.title, event.start, event.end, f"Note not found: {path}")
            lines, newline = _split_lines(self.vault.read(path))
            index = self._locate(lines, event, path)
            lines[index] = self._retime_line(lines[index], new_start, new_end, new_title)
            self.vault.write(path, newline.join(lines))
            return event.with_updates(
                start=new_start,
                end=new_end,
                title=new_title if new_title is not None else event.title,
                source_path=path,
                source_line=index + 1,
            )

    def move_event(
        self,
        event: CalendarEvent,
        new_start: datetime,
        new_end: datetime,
        new_title: str | None = None,
    ) -> CalendarEvent:
        """Move an event to another day's note.

        Both notes are prepared in memory first; the target is written before
        the source, and restored if the source write fails.
        """
        with self._lock:
            source_path = self._path_for(event)
            target_day = self.local_date(new_start)
            target_path = self.note_path(target_day)
            if not self.vault.exists(source_path):
                raise EventNotFoundError(event.title, event.start, event.end, f"Note not found: {source_path}")

            source_original = self.vault.read(source_path)
            source_lines, source_newline = _split_lines(source_original)
            index = self._locate(source_lines, event, source_path)
            moved_line = self._retime_line(source_lines.pop(index), new_start, new_end, new_title)

            target_created = not self.vault.exists(target_path)
            target_original = self.render_template() if target_created else self.vault.read(target_path)
            target_lines, target_newline = _split_lines(target_original)
            position = self._insertion_index(target_lines, event.category, target_path)
            target_lines.insert(position, moved_line)

            self.vault.write(target_path, target_newline.join(target_lines))
            try:
                self.vault.write(source_path, source_newline.join(source_lines))
            except NoteWriteError:
                logger.error("Rolling back move of '%s' into %s", event.title, target_path)
                if target_created:
                    self.vault.delete(target_path)
                else:
                    self.vault.write(target_path, target_original)
                raise

            return event.with_updates(
                start=new_start,
                end=new_end,
                title=new_title if new_title is not None else event.title,
                source_path=target_path,
                source_line=position + 1,
            )
