from __future__ import annotations

import logging
import threading
import traceback
from datetime import date, datetime, timezone
from typing import Any

from focusplanner.caldav_client import CalDAVTransport
from focusplanner.classifier import CategoryClassifier
from focusplanner.config_manager import ConfigManager
from focusplanner.daily_note import DailyNoteStore, NoteVault
from focusplanner.feishu_client import FeishuClient
from focusplanner.ical_decoder import IcalDecoder
from focusplanner.models import AppConfig, CalendarEvent, SyncResult, serialize_datetime, sync_window
from focusplanner.state_store import StateStore

logger = logging.getLogger(__name__)


def group_events_by_day(events: list[CalendarEvent], tz: Any) -> dict[date, list[CalendarEvent]]:
    grouped: dict[date, list[CalendarEvent]] = {}
    for event in events:
        grouped.setdefault(event.start.astimezone(tz).date(), []).append(event)
    return grouped


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


class SyncEngine:
    def __init__(self, config_manager: ConfigManager, state_store: StateStore) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self._run_lock = threading.Lock()

    def update_configuration(self, payload: dict[str, Any]) -> AppConfig:
        config = self.config_manager.update(payload)
        logger.info("Configuration updated: %s", ", ".join(sorted(payload)) or "no sections")
        return config

    def _store_feishu_tokens(self, tokens: dict[str, Any]) -> None:
        self.config_manager.update({"feishu": tokens})

    def build_feishu_client(self, config: AppConfig) -> FeishuClient:
        return FeishuClient(
            config.feishu,
            config.policy,
            CategoryClassifier.from_config(config),
            config.tz,
            on_tokens_changed=self._store_feishu_tokens,
        )

    def build_remote_client(self, config: AppConfig) -> CalDAVTransport | FeishuClient:
        if config.sync.mode == "rest":
            return self.build_feishu_client(config)
        decoder = IcalDecoder(config.policy, CategoryClassifier.from_config(config), config.tz)
        return CalDAVTransport(config.caldav, decoder, config.policy)

    def build_note_store(self, config: AppConfig) -> DailyNoteStore:
        return DailyNoteStore(NoteVault(config.notes.vault_path), config.notes, config.tz)

    @staticmethod
    def _missing_credentials(config: AppConfig) -> str:
        if config.sync.mode == "rest":
            if not config.feishu.is_configured():
                return "Feishu app_id/app_secret missing. Sync skipped."
            return ""
        if not config.caldav.is_configured():
            return "CalDAV config missing base_url/username/password. Sync skipped."
        return ""

    def _resolve_window(
        self,
        config: AppConfig,
        window_start_override: datetime | None,
        window_end_override: datetime | None,
    ) -> tuple[datetime, datetime]:
        if (window_start_override is None) ^ (window_end_override is None):
            raise ValueError("window_start_override and window_end_override must both be provided")
        if window_start_override is not None and window_end_override is not None:
            if window_end_override < window_start_override:
                raise ValueError("window_end_override must be later than window_start_override")
            return window_start_override, window_end_override
        return sync_window(datetime.now(timezone.utc), config.sync.window_days, config.tz)

    def run_once(
        self,
        trigger: str = "manual",
        window_start_override: datetime | None = None,
        window_end_override: datetime | None = None,
    ) -> SyncResult:
        if not self._run_lock.acquire(blocking=False):
            message = "Sync already in progress. Trigger skipped."
            logger.info("%s (trigger=%s)", message, trigger)
            self.state_store.record_audit_event(
                scope="system",
                subject="sync",
                action="skip_in_flight",
                details={"trigger": trigger},
            )
            return SyncResult(
                status="skipped",
                message=message,
                duration_ms=0,
                events_synced=0,
                notes_written=0,
                trigger=trigger,
            )
        try:
            return self._run_locked(trigger, window_start_override, window_end_override)
        finally:
            self._run_lock.release()

    def _run_locked(
        self,
        trigger: str,
        window_start_override: datetime | None,
        window_end_override: datetime | None,
    ) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        events_synced = 0
        notes_written = 0
        mode = "unknown"
        run_id: int | None = None

        try:
            config = self.config_manager.load()
            mode = config.sync.mode
            skip_reason = self._missing_credentials(config)
            if skip_reason:
                duration_ms = _elapsed_ms(started_at)
                run_id = self.state_store.start_sync_run(trigger=trigger, mode=mode)
                self.state_store.finish_sync_run(
                    run_id=run_id,
                    status="skipped",
                    message=skip_reason,
                    duration_ms=duration_ms,
                    events_synced=0,
                    notes_written=0,
                )
                logger.info(skip_reason)
                return SyncResult(
                    status="skipped",
                    message=skip_reason,
                    duration_ms=duration_ms,
                    events_synced=0,
                    notes_written=0,
                    trigger=trigger,
                )

            run_id = self.state_store.start_sync_run(trigger=trigger, mode=mode)
            window_start, window_end = self._resolve_window(config, window_start_override, window_end_override)
            logger.info(
                "Sync started (trigger=%s, mode=%s, window=%s..%s)",
                trigger,
                mode,
                window_start.isoformat(),
                window_end.isoformat(),
            )

            client = self.build_remote_client(config)
            events = client.get_events(window_start, window_end)
            events_synced = len(events)

            store = self.build_note_store(config)
            grouped = group_events_by_day(events, config.tz)
            for day in sorted(grouped):
                day_events = grouped[day]
                changed = store.write_events(day, day_events)
                if changed:
                    notes_written += 1
                self.state_store.record_audit_event(
                    scope="note",
                    subject=store.note_path(day),
                    action="note_written" if changed else "note_unchanged",
                    details={"trigger": trigger, "date": day.isoformat(), "events": len(day_events)},
                    run_id=run_id,
                )

            duration_ms = _elapsed_ms(started_at)
            message = f"synced {events_synced} events"
            self.state_store.finish_sync_run(
                run_id=run_id,
                status="success",
                message=message,
                duration_ms=duration_ms,
                events_synced=events_synced,
                notes_written=notes_written,
            )
            self.state_store.set_meta("last_sync_at", serialize_datetime(datetime.now(timezone.utc)) or "")
            logger.info("Sync finished: %s, %s notes written in %sms", message, notes_written, duration_ms)
            return SyncResult(
                status="success",
                message=f"{message} run_id={run_id}",
                duration_ms=duration_ms,
                events_synced=events_synced,
                notes_written=notes_written,
                trigger=trigger,
            )
        except Exception as exc:
            duration_ms = _elapsed_ms(started_at)
            error_message = f"{type(exc).__name__}: {exc}"
            logger.error("Sync failed (trigger=%s): %s", trigger, error_message)
            if run_id is None:
                run_id = self.state_store.start_sync_run(trigger=trigger, mode=mode)
            self.state_store.finish_sync_run(
                run_id=run_id,
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                events_synced=events_synced,
                notes_written=notes_written,
            )
            self.state_store.record_audit_event(
                scope="system",
                subject="sync",
                action="run_error",
                details={
                    "trigger": trigger,
                    "error": error_message,
                    "traceback": traceback.format_exc(limit=5),
                },
                run_id=run_id,
            )
            return SyncResult(
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                events_synced=events_synced,
                notes_written=notes_written,
                trigger=trigger,
            )
