from __future__ import annotations

from typing import Any

from focusplanner.models import (
    CLASSIFICATION_ORDER,
    DEFAULT_CATEGORY_KEYWORDS,
    AppConfig,
    EventCategory,
    ParsedTask,
)


class CategoryClassifier:
    def __init__(
        self,
        keywords: dict[str, list[str]] | None = None,
        calendar_default: EventCategory = EventCategory.MEETING,
        task_default: EventCategory = EventCategory.FOCUS,
    ) -> None:
        source = keywords if keywords is not None else DEFAULT_CATEGORY_KEYWORDS
        self.keywords: dict[EventCategory, list[str]] = {}
        for category in CLASSIFICATION_ORDER:
            values = source.get(category.value, [])
            self.keywords[category] = [str(item).lower() for item in values if str(item).strip()]
        self.calendar_default = calendar_default
        self.task_default = task_default

    @classmethod
    def from_config(cls, config: AppConfig) -> "CategoryClassifier":
        return cls(
            keywords=config.categories.keywords,
            calendar_default=EventCategory.coerce(config.policy.calendar_default_category, EventCategory.MEETING),
            task_default=EventCategory.coerce(config.policy.task_default_category, EventCategory.FOCUS),
        )

    def match(self, text: str) -> EventCategory | None:
        lowered = str(text or "").lower()
        for category in CLASSIFICATION_ORDER:
            if any(keyword in lowered for keyword in self.keywords[category]):
                return category
        return None

    def classify(self, title: str) -> EventCategory:
        return self.match(title) or self.calendar_default

    def classify_task(self, task: ParsedTask | dict[str, Any]) -> EventCategory:
        if isinstance(task, dict):
            title = str(task.get("title", ""))
            tags = task.get("tags") or []
        else:
            title = task.title
            tags = task.tags
        text = " ".join([title, *[str(tag) for tag in tags]])
        return self.match(text) or self.task_default
