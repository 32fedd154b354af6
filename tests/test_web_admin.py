import os
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from focusplanner.models import SyncResult
from focusplanner.web_admin import create_app


class WebAdminTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = str(Path(self.temp_dir.name) / "config.yaml")
        self.state_path = str(Path(self.temp_dir.name) / "state.db")
        self.vault_path = Path(self.temp_dir.name) / "vault"
        os.environ["FOCUSPLANNER_CONFIG_PATH"] = self.config_path
        os.environ["FOCUSPLANNER_STATE_PATH"] = self.state_path
        self.client = TestClient(create_app())

        # Seed non-empty secrets for masking/preserve tests.
        seed_payload = {
            "caldav": {"base_url": "https://dav.example.com", "username": "u", "password": "secret-pass"},
            "feishu": {"app_id": "", "app_secret": "secret-app"},
            "sync": {"window_days": 7, "interval_seconds": 300, "timezone": "UTC"},
            "notes": {"vault_path": str(self.vault_path), "daily_note_path": "YYYY-MM-DD.md"},
        }
        resp = self.client.put("/api/config", json={"payload": seed_payload})
        self.assertEqual(resp.status_code, 200)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_config_is_masked(self) -> None:
        resp = self.client.get("/api/config")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["caldav"]["password"], "***")
        self.assertEqual(data["feishu"]["app_secret"], "***")
        self.assertEqual(data["caldav"]["username"], "u")

    def test_put_config_empty_or_masked_secret_does_not_override(self) -> None:
        update = {
            "caldav": {"base_url": "https://dav-2.example.com", "password": ""},
            "feishu": {"app_secret": "***"},
        }
        resp = self.client.put("/api/config", json={"payload": update})
        self.assertEqual(resp.status_code, 200)
        config = self.client.app.state.context.config_manager.load()
        self.assertEqual(config.caldav.base_url, "https://dav-2.example.com")
        self.assertEqual(config.caldav.password, "secret-pass")
        self.assertEqual(config.feishu.app_secret, "secret-app")

    def test_put_config_non_secret_fields_merge(self) -> None:
        resp = self.client.put("/api/config", json={"payload": {"sync": {"interval_seconds": 600}}})
        self.assertEqual(resp.status_code, 200)
        config = resp.json()["config"]
        self.assertEqual(config["sync"]["interval_seconds"], 600)
        self.assertEqual(config["sync"]["window_days"], 7)

    def test_sync_run_triggers_scheduler(self) -> None:
        with mock.patch.object(self.client.app.state.context.scheduler, "trigger_manual") as trigger:
            resp = self.client.post("/api/sync/run")
        self.assertEqual(resp.status_code, 200)
        trigger.assert_called_once_with()

    def test_sync_run_window_calls_sync_engine(self) -> None:
        fake_result = SyncResult(
            status="success",
            message="ok",
            duration_ms=42,
            events_synced=3,
            notes_written=2,
            trigger="manual-window",
            run_at=datetime(2025, 6, 16, 0, 0, 0, tzinfo=timezone.utc),
        )
        with mock.patch.object(self.client.app.state.context.sync_engine, "run_once", return_value=fake_result) as run_once:
            resp = self.client.post(
                "/api/sync/run-window",
                json={"start": "2025-06-16T00:00:00Z", "end": "2025-06-22T23:59:59Z"},
            )
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["result"]["status"], "success")
        self.assertEqual(data["result"]["notes_written"], 2)
        run_once.assert_called_once_with(
            trigger="manual-window",
            window_start_override=datetime(2025, 6, 16, tzinfo=timezone.utc),
            window_end_override=datetime(2025, 6, 22, 23, 59, 59, tzinfo=timezone.utc),
        )

    def test_sync_run_window_rejects_invalid_range(self) -> None:
        resp = self.client.post(
            "/api/sync/run-window",
            json={"start": "2025-06-22T00:00:00Z", "end": "2025-06-16T23:59:59Z"},
        )
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post("/api/sync/run-window", json={"start": "yesterday", "end": "today"})
        self.assertEqual(resp.status_code, 400)

    def test_sync_status_and_audit_events(self) -> None:
        state_store = self.client.app.state.context.state_store
        run_id = state_store.start_sync_run(trigger="manual", mode="caldav")
        state_store.finish_sync_run(
            run_id=run_id, status="success", message="synced 1 events", duration_ms=5, events_synced=1, notes_written=1
        )
        state_store.record_audit_event(
            scope="note", subject="2025-06-16.md", action="note_written", details={"events": 1}, run_id=run_id
        )
        status = self.client.get("/api/sync/status").json()
        self.assertEqual(status["runs"][0]["message"], "synced 1 events")
        audit = self.client.get(f"/api/audit/events?run_id={run_id}").json()["events"]
        self.assertEqual(audit[0]["subject"], "2025-06-16.md")
        self.assertEqual(audit[0]["details"], {"events": 1})

    def test_feishu_oauth_url_requires_app_id(self) -> None:
        self.assertEqual(self.client.get("/api/feishu/oauth-url").status_code, 400)
        self.client.put("/api/config", json={"payload": {"feishu": {"app_id": "cli_1"}}})
        resp = self.client.get("/api/feishu/oauth-url")
        self.assertEqual(resp.status_code, 200)
        self.assertIn("app_id=cli_1", resp.json()["url"])

    def test_feishu_oauth_exchanges_code(self) -> None:
        tokens = {"access_token": "at", "refresh_token": "rt", "token_expiry": 99.0}
        with mock.patch("focusplanner.feishu_client.FeishuClient.exchange_code", return_value=tokens) as exchange:
            resp = self.client.post("/api/feishu/oauth", json={"code": " abc "})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["token_expiry"], 99.0)
        exchange.assert_called_once_with("abc")

    def test_event_editing_round_trip(self) -> None:
        payload = {"title": "Reading", "start": "2025-06-16T14:00:00", "end": "2025-06-16T15:00:00", "category": "focus"}
        resp = self.client.post("/api/events", json=payload)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["path"], "2025-06-16.md")

        events = self.client.get("/api/events?start=2025-06-16&end=2025-06-16").json()["events"]
        self.assertEqual([(e["title"], e["category"], e["completed_units"]) for e in events], [("Reading", "focus", 0)])

        resp = self.client.put(
            "/api/events",
            json={"event": payload, "new_start": "2025-06-16T15:00:00", "new_end": "2025-06-16T16:30:00"},
        )
        self.assertEqual(resp.status_code, 200)
        note = (self.vault_path / "2025-06-16.md").read_text(encoding="utf-8")
        self.assertIn("- Reading [startTime:: 15:00] [endTime:: 16:30]", note)

        stats = self.client.get("/api/stats/day?day=2025-06-16").json()
        self.assertEqual(stats["total_minutes"], 90)
        week = self.client.get("/api/stats/week?start=2025-06-16").json()
        self.assertEqual(week["week"], "2025-W25")
        self.assertEqual(week["distribution"][0]["category"], "focus")

        moved = dict(payload, start="2025-06-16T15:00:00", end="2025-06-16T16:30:00")
        resp = self.client.request("DELETE", "/api/events", json=moved)
        self.assertEqual(resp.status_code, 200)
        self.assertNotIn("Reading", (self.vault_path / "2025-06-16.md").read_text(encoding="utf-8"))

    def test_event_errors_map_to_status_codes(self) -> None:
        payload = {"title": "Ghost", "start": "2025-06-16T14:00:00", "end": "2025-06-16T15:00:00", "category": "focus"}
        self.client.post("/api/events", json=dict(payload, title="Real"))
        resp = self.client.request("DELETE", "/api/events", json=payload)
        self.assertEqual(resp.status_code, 404)

        resp = self.client.post("/api/events", json=dict(payload, category="holiday"))
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post("/api/events", json=dict(payload, end="2025-06-16T13:00:00"))
        self.assertEqual(resp.status_code, 400)

        self.vault_path.mkdir(parents=True, exist_ok=True)
        (self.vault_path / "2025-06-17.md").write_text("# No sections here\n", encoding="utf-8")
        resp = self.client.post(
            "/api/events",
            json=dict(payload, start="2025-06-17T09:00:00", end="2025-06-17T10:00:00"),
        )
        self.assertEqual(resp.status_code, 409)

    def test_invalid_query_dates_are_rejected(self) -> None:
        self.assertEqual(self.client.get("/api/events?start=not-a-date").status_code, 400)
        self.assertEqual(self.client.get("/api/events?start=2025-06-20&end=2025-06-16").status_code, 400)


if __name__ == "__main__":
    unittest.main()
