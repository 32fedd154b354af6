from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo


class EventCategory(str, Enum):
    FOCUS = "focus"
    MEETING = "meeting"
    PERSONAL = "personal"
    REST = "rest"
    ADMIN = "admin"

    @classmethod
    def coerce(cls, value: Any, default: "EventCategory") -> "EventCategory":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return default


# First match wins when classifying titles.
CLASSIFICATION_ORDER = (
    EventCategory.REST,
    EventCategory.MEETING,
    EventCategory.PERSONAL,
    EventCategory.ADMIN,
    EventCategory.FOCUS,
)

CATEGORY_LABELS = {
    EventCategory.FOCUS: "专注学习",
    EventCategory.MEETING: "会议",
    EventCategory.PERSONAL: "家庭/个人",
    EventCategory.REST: "休息",
    EventCategory.ADMIN: "事务",
}

CATEGORY_COLORS = {
    EventCategory.FOCUS: "#22c55e",
    EventCategory.MEETING: "#3b82f6",
    EventCategory.PERSONAL: "#f97316",
    EventCategory.REST: "#6b7280",
    EventCategory.ADMIN: "#eab308",
}

DEFAULT_SECTION_HEADINGS = {
    EventCategory.FOCUS.value: "### 🎯 专注时间",
    EventCategory.MEETING.value: "### 📅 会议",
    EventCategory.PERSONAL.value: "### 🏠 家庭/个人",
    EventCategory.REST.value: "### 😴 休息",
    EventCategory.ADMIN.value: "### 📝 事务",
}

DEFAULT_CATEGORY_KEYWORDS = {
    EventCategory.FOCUS.value: ["专注", "学习", "阅读", "代码", "demo", "论文", "RL", "nanoGPT"],
    EventCategory.MEETING.value: ["会议", "讨论", "周会", "Seminar", "oneone", "sync", "meeting"],
    EventCategory.PERSONAL.value: ["家庭", "个人", "湿疹", "晚间", "跨年", "退房"],
    EventCategory.REST.value: ["午休", "休息", "break"],
    EventCategory.ADMIN.value: ["报销", "行政", "Review", "述职"],
}

DEFAULT_CALDAV_URL = "https://caldav.feishu.cn"
DEFAULT_FEISHU_API_BASE = "https://open.feishu.cn/open-apis"
DEFAULT_DAILY_NOTE_PATH = "0. PeriodicNotes/YYYY/Daily/MM/YYYY-MM-DD.md"

ICS_DATETIME_PATTERN = re.compile(r"^(\d{4})(\d{2})(\d{2})(?:T(\d{2})(\d{2})(\d{2})?(Z)?)?$")


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def resolve_timezone(name: str | None) -> tzinfo:
    text = str(name or "").strip()
    if not text or text.upper() in {"UTC", "Z", "GMT"}:
        return timezone.utc
    return ZoneInfo(text)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def parse_ics_datetime(value: str | None, tz: tzinfo, all_day_hour: int = 9) -> datetime | None:
    """Parse an iCalendar DATE or DATE-TIME value.

    Three shapes are accepted:

    * ``YYYYMMDD``: all-day, placed at ``all_day_hour`` local time
    * ``YYYYMMDDTHHMMSSZ``: absolute UTC time
    * ``YYYYMMDDTHHMMSS``: floating time, interpreted in ``tz``

    A leading ``NAME;PARAM=...:`` prefix is ignored. Returns ``None`` when the
    value cannot be parsed.
    """
    if not value:
        return None
    text = str(value).strip()
    if ":" in text:
        text = text.rsplit(":", 1)[1].strip()
    match = ICS_DATETIME_PATTERN.match(text)
    if not match:
        return None
    year, month, day, hour, minute, second, utc_flag = match.groups()
    try:
        if hour is None:
            return datetime(int(year), int(month), int(day), all_day_hour, 0, tzinfo=tz)
        return datetime(
            int(year),
            int(month),
            int(day),
            int(hour),
            int(minute),
            int(second or 0),
            tzinfo=timezone.utc if utc_flag else tz,
        )
    except ValueError:
        return None


def format_hhmm(value: datetime) -> str:
    return f"{value.hour:02d}:{value.minute:02d}"


def week_start(day: date) -> date:
    return day - timedelta(days=day.weekday())


def sync_window(now: datetime, window_days: int, tz: tzinfo) -> tuple[datetime, datetime]:
    local_now = _ensure_tz(now).astimezone(tz)
    first_day = week_start(local_now.date())
    start = datetime.combine(first_day, time.min, tzinfo=tz)
    last_day = first_day + timedelta(days=max(1, window_days) - 1)
    end = datetime.combine(last_day, time.max, tzinfo=tz)
    return start, end


def empty_category_totals() -> dict[EventCategory, int]:
    return {category: 0 for category in EventCategory}


@dataclass
class CalDAVConfig:
    base_url: str = DEFAULT_CALDAV_URL
    username: str = ""
    password: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip() or DEFAULT_CALDAV_URL,
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
        )

    def is_configured(self) -> bool:
        return bool(self.base_url and self.username and self.password)


@dataclass
class FeishuConfig:
    api_base: str = DEFAULT_FEISHU_API_BASE
    app_id: str = ""
    app_secret: str = ""
    redirect_uri: str = "http://localhost:3000/callback"
    access_token: str = ""
    refresh_token: str = ""
    token_expiry: float = 0.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FeishuConfig":
        data = data or {}
        try:
            token_expiry = float(data.get("token_expiry", 0) or 0)
        except (TypeError, ValueError):
            token_expiry = 0.0
        return cls(
            api_base=str(data.get("api_base", "")).strip().rstrip("/") or DEFAULT_FEISHU_API_BASE,
            app_id=str(data.get("app_id", "")).strip(),
            app_secret=str(data.get("app_secret", "")).strip(),
            redirect_uri=str(data.get("redirect_uri", "")).strip() or "http://localhost:3000/callback",
            access_token=str(data.get("access_token", "") or "").strip(),
            refresh_token=str(data.get("refresh_token", "") or "").strip(),
            token_expiry=token_expiry,
        )

    def is_configured(self) -> bool:
        return bool(self.app_id and self.app_secret)


@dataclass
class SyncConfig:
    enabled: bool = False
    mode: str = "caldav"
    interval_seconds: int = 900
    window_days: int = 7
    timezone: str = "UTC"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        mode = str(data.get("mode", "caldav")).strip().lower()
        if mode not in {"caldav", "rest"}:
            mode = "caldav"
        return cls(
            enabled=bool(data.get("enabled", False)),
            mode=mode,
            interval_seconds=max(30, int(data.get("interval_seconds", 900))),
            window_days=max(1, int(data.get("window_days", 7))),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
        )


@dataclass
class NotesConfig:
    vault_path: str = "vault"
    daily_note_path: str = DEFAULT_DAILY_NOTE_PATH
    section_headings: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_SECTION_HEADINGS))
    pomodoro_minutes: int = 25

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "NotesConfig":
        data = data or {}
        headings = dict(DEFAULT_SECTION_HEADINGS)
        raw_headings = data.get("section_headings", {})
        if isinstance(raw_headings, dict):
            for key, value in raw_headings.items():
                category = str(key).strip().lower()
                heading = str(value or "").strip()
                if category in headings and heading:
                    headings[category] = heading
        return cls(
            vault_path=str(data.get("vault_path", "")).strip() or "vault",
            daily_note_path=str(data.get("daily_note_path", "")).strip() or DEFAULT_DAILY_NOTE_PATH,
            section_headings=headings,
            pomodoro_minutes=max(1, int(data.get("pomodoro_minutes", 25))),
        )

    def heading_for(self, category: EventCategory) -> str:
        return self.section_headings[category.value]


@dataclass
class CategoriesConfig:
    keywords: dict[str, list[str]] = field(
        default_factory=lambda: {key: list(value) for key, value in DEFAULT_CATEGORY_KEYWORDS.items()}
    )

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CategoriesConfig":
        data = data or {}
        raw = data.get("keywords", {})
        keywords = {key: list(value) for key, value in DEFAULT_CATEGORY_KEYWORDS.items()}
        if isinstance(raw, dict):
            for key, value in raw.items():
                category = str(key).strip().lower()
                if category not in keywords or not isinstance(value, list):
                    continue
                keywords[category] = [str(x).strip() for x in value if str(x).strip()]
        return cls(keywords=keywords)


@dataclass
class PolicyConfig:
    all_day_start_hour: int = 9
    all_day_end_hour: int = 18
    default_duration_minutes: int = 60
    calendar_default_category: str = EventCategory.MEETING.value
    task_default_category: str = EventCategory.FOCUS.value
    multiget_batch_size: int = 50
    max_individual_fetches: int = 200
    max_recurrence_iterations: int = 1000
    token_refresh_buffer_seconds: int = 300

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PolicyConfig":
        data = data or {}
        return cls(
            all_day_start_hour=min(23, max(0, int(data.get("all_day_start_hour", 9)))),
            all_day_end_hour=min(23, max(0, int(data.get("all_day_end_hour", 18)))),
            default_duration_minutes=max(1, int(data.get("default_duration_minutes", 60))),
            calendar_default_category=EventCategory.coerce(
                data.get("calendar_default_category"), EventCategory.MEETING
            ).value,
            task_default_category=EventCategory.coerce(
                data.get("task_default_category"), EventCategory.FOCUS
            ).value,
            multiget_batch_size=max(1, int(data.get("multiget_batch_size", 50))),
            max_individual_fetches=max(1, int(data.get("max_individual_fetches", 200))),
            max_recurrence_iterations=max(1, int(data.get("max_recurrence_iterations", 1000))),
            token_refresh_buffer_seconds=max(0, int(data.get("token_refresh_buffer_seconds", 300))),
        )

    @property
    def default_duration(self) -> timedelta:
        return timedelta(minutes=self.default_duration_minutes)


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    feishu: FeishuConfig = field(default_factory=FeishuConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    notes: NotesConfig = field(default_factory=NotesConfig)
    categories: CategoriesConfig = field(default_factory=CategoriesConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            feishu=FeishuConfig.from_dict(data.get("feishu")),
            sync=SyncConfig.from_dict(data.get("sync")),
            notes=NotesConfig.from_dict(data.get("notes")),
            categories=CategoriesConfig.from_dict(data.get("categories")),
            policy=PolicyConfig.from_dict(data.get("policy")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def tz(self) -> tzinfo:
        return resolve_timezone(self.sync.timezone)


@dataclass(frozen=True)
class CalendarEvent:
    event_id: str
    title: str
    start: datetime
    end: datetime
    category: EventCategory
    origin: str = "remote"
    planned_units: int | None = None
    completed_units: int | None = None
    source_path: str = ""
    source_line: int | None = None
    task_path: str = ""
    task_line: int | None = None
    remote_id: str = ""

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError(f"Event '{self.title}' must end after it starts.")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def dedupe_key(self) -> tuple[str, datetime]:
        return (self.title, self.start)

    def with_updates(self, **kwargs: Any) -> "CalendarEvent":
        return replace(self, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["category"] = self.category.value
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        return payload


def dedupe_events(events: list[CalendarEvent]) -> list[CalendarEvent]:
    seen: set[tuple[str, datetime]] = set()
    unique: list[CalendarEvent] = []
    for event in events:
        if event.dedupe_key in seen:
            continue
        seen.add(event.dedupe_key)
        unique.append(event)
    return unique


@dataclass(frozen=True)
class RecurrenceRule:
    freq: str
    interval: int = 1
    until: datetime | None = None
    count: int | None = None
    by_day: tuple[str, ...] = ()

    @classmethod
    def parse(cls, text: str, tz: tzinfo = timezone.utc) -> "RecurrenceRule | None":
        value = str(text or "").strip()
        if value.upper().startswith("RRULE:"):
            value = value[6:]
        parts: dict[str, str] = {}
        for chunk in value.split(";"):
            if "=" not in chunk:
                continue
            key, _, raw = chunk.partition("=")
            parts[key.strip().upper()] = raw.strip()
        freq = parts.get("FREQ", "").upper()
        if not freq:
            return None

        try:
            interval = max(1, int(parts.get("INTERVAL", "1")))
        except ValueError:
            interval = 1
        try:
            count = int(parts["COUNT"]) if "COUNT" in parts else None
        except ValueError:
            count = None

        until = None
        raw_until = parts.get("UNTIL", "")
        if raw_until:
            if len(raw_until) == 8 and raw_until.isdigit():
                # A date-only UNTIL includes the whole day.
                parsed = parse_ics_datetime(raw_until, tz, 0)
                until = datetime.combine(parsed.date(), time.max, tzinfo=tz) if parsed else None
            else:
                until = parse_ics_datetime(raw_until, tz)

        by_day = tuple(code.strip().upper() for code in parts.get("BYDAY", "").split(",") if code.strip())
        return cls(freq=freq, interval=interval, until=until, count=count, by_day=by_day)


@dataclass(frozen=True)
class PomodoroRecord:
    kind: str
    start: datetime
    end: datetime
    duration_minutes: int
    category: EventCategory = EventCategory.FOCUS


@dataclass
class ParsedTask:
    title: str
    status: str = "todo"
    priority: str = "normal"
    due: date | None = None
    planned_units: int = 0
    tags: list[str] = field(default_factory=list)
    source_path: str = ""
    line_number: int = 0


@dataclass
class DailyStats:
    day: date
    total_minutes: int = 0
    units_completed: int = 0
    units_planned: int = 0
    by_category: dict[EventCategory, int] = field(default_factory=empty_category_totals)

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.day.isoformat(),
            "total_minutes": self.total_minutes,
            "units_completed": self.units_completed,
            "units_planned": self.units_planned,
            "by_category": {category.value: minutes for category, minutes in self.by_category.items()},
        }


@dataclass
class WeeklyStats:
    week_label: str
    start_date: date
    end_date: date
    daily: list[DailyStats] = field(default_factory=list)
    total_minutes: int = 0
    units_completed: int = 0
    units_planned: int = 0
    by_category: dict[EventCategory, int] = field(default_factory=empty_category_totals)

    def to_dict(self) -> dict[str, Any]:
        return {
            "week": self.week_label,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "daily": [item.to_dict() for item in self.daily],
            "total_minutes": self.total_minutes,
            "units_completed": self.units_completed,
            "units_planned": self.units_planned,
            "by_category": {category.value: minutes for category, minutes in self.by_category.items()},
        }


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    events_synced: int
    notes_written: int
    trigger: str
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "events_synced": self.events_synced,
            "notes_written": self.notes_written,
            "trigger": self.trigger,
            "run_at": serialize_datetime(self.run_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()
