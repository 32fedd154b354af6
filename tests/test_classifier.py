import unittest

from focusplanner.classifier import CategoryClassifier
from focusplanner.models import AppConfig, EventCategory, ParsedTask


class CategoryClassifierTests(unittest.TestCase):
    def setUp(self) -> None:
        self.classifier = CategoryClassifier()

    def test_priority_order_rest_before_meeting(self) -> None:
        self.assertEqual(self.classifier.classify("会议 午休"), EventCategory.REST)
        self.assertEqual(self.classifier.classify("Team Meeting"), EventCategory.MEETING)
        self.assertEqual(self.classifier.classify("报销 review"), EventCategory.ADMIN)
        self.assertEqual(self.classifier.classify("读论文"), EventCategory.FOCUS)

    def test_calendar_default_is_meeting(self) -> None:
        self.assertEqual(self.classifier.classify("Lunch with Sam"), EventCategory.MEETING)
        self.assertEqual(self.classifier.classify(""), EventCategory.MEETING)

    def test_task_classification_uses_tags_and_focus_default(self) -> None:
        task = ParsedTask(title="Expense forms", tags=["#报销"])
        self.assertEqual(self.classifier.classify_task(task), EventCategory.ADMIN)
        self.assertEqual(self.classifier.classify_task({"title": "Write chapter"}), EventCategory.FOCUS)

    def test_from_config_uses_configured_keywords(self) -> None:
        config = AppConfig.from_dict(
            {
                "categories": {"keywords": {"personal": ["gym"]}},
                "policy": {"calendar_default_category": "admin"},
            }
        )
        classifier = CategoryClassifier.from_config(config)
        self.assertEqual(classifier.classify("GYM session"), EventCategory.PERSONAL)
        self.assertEqual(classifier.classify("Unknown thing"), EventCategory.ADMIN)


if __name__ == "__main__":
    unittest.main()
