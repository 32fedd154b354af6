from __future__ import annotations

import hashlib
import logging
import re
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Any

from icalendar import Event as ICEvent

from focusplanner.classifier import CategoryClassifier
from focusplanner.models import CalendarEvent, PolicyConfig, RecurrenceRule, parse_ics_datetime
from focusplanner.recurrence import expand_recurrence

logger = logging.getLogger(__name__)

VEVENT_BLOCK_PATTERN = re.compile(r"BEGIN:VEVENT.*?END:VEVENT", re.DOTALL)
ENTITY_PATTERN = re.compile(r"&(lt|gt|amp|quot|#39|#x[dD]|#x[aA]|#13|#10);")
ENTITY_VALUES = {
    "lt": "<",
    "gt": ">",
    "amp": "&",
    "quot": '"',
    "#39": "'",
    "#xd": "\r",
    "#xa": "\n",
    "#13": "\r",
    "#10": "\n",
}
DEFAULT_TITLE = "Untitled Event"


def decode_xml_entities(text: str) -> str:
    return ENTITY_PATTERN.sub(lambda match: ENTITY_VALUES[match.group(1).lower()], text)


def _data_hash(raw_ical: str) -> str:
    return hashlib.sha1(raw_ical.encode("utf-8")).hexdigest()  # nosec B324


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def split_vevent_blocks(text: str) -> list[str]:
    return VEVENT_BLOCK_PATTERN.findall(text)


class IcalDecoder:
    def __init__(
        self,
        policy: PolicyConfig,
        classifier: CategoryClassifier,
        tz: tzinfo,
        id_prefix: str = "caldav",
    ) -> None:
        self.policy = policy
        self.classifier = classifier
        self.tz = tz
        self.id_prefix = id_prefix

    def decode(self, raw_data: Any, window_start: datetime, window_end: datetime) -> list[CalendarEvent]:
        text = decode_xml_entities(_decode_raw_ical(raw_data))
        events: list[CalendarEvent] = []
        for block in split_vevent_blocks(text):
            try:
                events.extend(self._decode_block(block, window_start, window_end))
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping undecodable VEVENT block: %s", exc)
        return events

    def _coerce_value(self, prop: Any, all_day_hour: int) -> tuple[datetime | None, bool]:
        if prop is None:
            return None, False
        if isinstance(prop, list):
            prop = prop[0] if prop else None
            if prop is None:
                return None, False
        value = getattr(prop, "dt", None)
        if isinstance(value, datetime):
            if value.tzinfo is None:
                return value.replace(tzinfo=self.tz), False
            return value, False
        if isinstance(value, date):
            return datetime.combine(value, time(all_day_hour), tzinfo=self.tz), True
        raw = prop.to_ical() if hasattr(prop, "to_ical") else prop
        return parse_ics_datetime(_decode_raw_ical(raw), self.tz, all_day_hour), False

    def _decode_block(self, block: str, window_start: datetime, window_end: datetime) -> list[CalendarEvent]:
        vevent = ICEvent.from_ical(block)

        status = str(vevent.get("STATUS", "")).strip().upper()
        if status == "CANCELLED":
            return []

        start, all_day = self._coerce_value(vevent.get("DTSTART"), self.policy.all_day_start_hour)
        if start is None:
            logger.debug("Skipping VEVENT without a usable DTSTART")
            return []

        end = None
        if vevent.get("DTEND") is not None:
            end, end_all_day = self._coerce_value(vevent.get("DTEND"), self.policy.all_day_end_hour)
            if end is not None and all_day and end_all_day:
                # DTEND of an all-day event is exclusive.
                last_day = max(end.date() - timedelta(days=1), start.date())
                end = datetime.combine(last_day, time(self.policy.all_day_end_hour), tzinfo=self.tz)
        if end is None or end <= start:
            end = start + self.policy.default_duration

        uid = str(vevent.get("UID", "")).strip() or _data_hash(block)[:16]
        title = str(vevent.get("SUMMARY", "")).strip() or DEFAULT_TITLE
        category = self.classifier.classify(title)

        rule = None
        rrule_prop = vevent.get("RRULE")
        if rrule_prop is not None:
            rrule_text = _decode_raw_ical(rrule_prop.to_ical()) if hasattr(rrule_prop, "to_ical") else str(rrule_prop)
            rule = RecurrenceRule.parse(rrule_text, self.tz)

        if rule is None:
            if start > window_end or end < window_start:
                return []
            return [
                CalendarEvent(
                    event_id=f"{self.id_prefix}-{uid}",
                    title=title,
                    start=start,
                    end=end,
                    category=category,
                    remote_id=uid,
                )
            ]

        duration = end - start
        occurrences = expand_recurrence(
            start,
            duration,
            rule,
            window_start,
            window_end,
            max_iterations=self.policy.max_recurrence_iterations,
        )
        return [
            CalendarEvent(
                event_id=f"{self.id_prefix}-{uid}-{index}",
                title=title,
                start=occurrence,
                end=occurrence + duration,
                category=category,
                remote_id=uid,
            )
            for index, occurrence in enumerate(occurrences)
        ]
