from __future__ import annotations

import os
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from focusplanner.classifier import CategoryClassifier
from focusplanner.config_manager import MASK, SECRET_FIELDS, ConfigManager
from focusplanner.errors import EventNotFoundError, FeishuAPIError, FocusPlannerError, SectionNotFoundError
from focusplanner.models import CalendarEvent, EventCategory, parse_iso_datetime, week_start
from focusplanner.scheduler import SyncScheduler
from focusplanner.state_store import StateStore
from focusplanner.stats import StatsAggregator
from focusplanner.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class CustomWindowSyncRequest(BaseModel):
    start: str
    end: str


class OAuthCodeRequest(BaseModel):
    code: str = Field(min_length=1)


class EventPayload(BaseModel):
    title: str = Field(min_length=1)
    start: str
    end: str
    category: str = ""
    planned_units: int | None = Field(default=None, ge=0)
    task_path: str = ""
    task_line: int | None = None
    source_path: str = ""
    event_id: str = ""


class EventUpdateRequest(BaseModel):
    event: EventPayload
    new_start: str
    new_end: str
    new_title: str | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    for section_name, key in SECRET_FIELDS:
        section = sanitized.get(section_name)
        if not isinstance(section, dict) or key not in section:
            continue
        section = dict(section)
        value = str(section.get(key) or "").strip()
        if value in {"", MASK}:
            if str(current.get(section_name, {}).get(key, "")):
                section.pop(key, None)
            else:
                section[key] = ""
        if section:
            sanitized[section_name] = section
        else:
            sanitized.pop(section_name, None)
    return sanitized


def _parse_local_datetime(value: str, tz: tzinfo) -> datetime:
    text = str(value or "").strip()
    if not text:
        raise ValueError("datetime value is required")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        # Naive times from the editor are wall-clock times in the configured zone.
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def _parse_date(value: str | None, default: date) -> date:
    if not value:
        return default
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid date: {value}") from exc


def _event_from_payload(payload: EventPayload, tz: tzinfo, classifier: CategoryClassifier) -> CalendarEvent:
    try:
        start = _parse_local_datetime(payload.start, tz)
        end = _parse_local_datetime(payload.end, tz)
        category = (
            EventCategory(payload.category.strip().lower())
            if payload.category.strip()
            else classifier.classify_task({"title": payload.title, "tags": []})
        )
        return CalendarEvent(
            event_id=payload.event_id or f"local-{start.isoformat()}",
            title=payload.title.strip(),
            start=start,
            end=end,
            category=category,
            origin="local",
            planned_units=payload.planned_units,
            source_path=payload.source_path,
            task_path=payload.task_path,
            task_line=payload.task_line,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _edit_error(exc: FocusPlannerError) -> HTTPException:
    if isinstance(exc, EventNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, SectionNotFoundError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def create_app() -> FastAPI:
    config_path = os.getenv("FOCUSPLANNER_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("FOCUSPLANNER_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Focus Planner Sync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    def _note_tools() -> tuple[Any, Any, CategoryClassifier]:
        config = app.state.context.config_manager.load()
        store = app.state.context.sync_engine.build_note_store(config)
        return config, store, CategoryClassifier.from_config(config)

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        if not isinstance(request.payload, dict):
            raise HTTPException(status_code=400, detail="payload must be an object")
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        app.state.context.sync_engine.update_configuration(sanitized_payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.post("/api/sync/run-window")
    def trigger_sync_with_custom_window(request: CustomWindowSyncRequest) -> dict[str, Any]:
        try:
            start = parse_iso_datetime(request.start)
            end = parse_iso_datetime(request.end)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid start/end datetime") from exc
        if start is None or end is None:
            raise HTTPException(status_code=400, detail="Invalid start/end datetime")
        if end < start:
            raise HTTPException(status_code=400, detail="end must be later than start")
        result = app.state.context.sync_engine.run_once(
            trigger="manual-window",
            window_start_override=start,
            window_end_override=end,
        )
        return {
            "message": "sync completed",
            "result": result.to_dict(),
        }

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {
            "runs": app.state.context.state_store.recent_sync_runs(limit=limit),
            "last_sync_at": app.state.context.state_store.get_meta("last_sync_at"),
        }

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    @app.get("/api/feishu/oauth-url")
    def feishu_oauth_url() -> dict[str, str]:
        config = app.state.context.config_manager.load()
        if not config.feishu.app_id:
            raise HTTPException(status_code=400, detail="feishu.app_id is not configured")
        client = app.state.context.sync_engine.build_feishu_client(config)
        return {"url": client.authorization_url()}

    @app.post("/api/feishu/oauth")
    def feishu_oauth(request: OAuthCodeRequest) -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        client = app.state.context.sync_engine.build_feishu_client(config)
        try:
            tokens = client.exchange_code(request.code.strip())
        except FeishuAPIError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"message": "authorized", "token_expiry": tokens["token_expiry"]}

    @app.get("/api/events")
    def list_events(start: str | None = None, end: str | None = None) -> dict[str, Any]:
        config, store, _ = _note_tools()
        today = datetime.now(timezone.utc).astimezone(config.tz).date()
        start_day = _parse_date(start, week_start(today))
        end_day = _parse_date(end, start_day + timedelta(days=6))
        if end_day < start_day:
            raise HTTPException(status_code=400, detail="end must not be before start")
        events = StatsAggregator(store).events_with_progress(start_day, end_day)
        return {"events": [event.to_dict() for event in events]}

    @app.post("/api/events")
    def add_event(request: EventPayload) -> dict[str, Any]:
        config, store, classifier = _note_tools()
        event = _event_from_payload(request, config.tz, classifier)
        try:
            path = store.add_event(event)
        except FocusPlannerError as exc:
            raise _edit_error(exc) from exc
        return {"message": "event added", "path": path}

    @app.put("/api/events")
    def update_event(request: EventUpdateRequest) -> dict[str, Any]:
        config, store, classifier = _note_tools()
        event = _event_from_payload(request.event, config.tz, classifier)
        try:
            new_start = _parse_local_datetime(request.new_start, config.tz)
            new_end = _parse_local_datetime(request.new_end, config.tz)
            updated = store.update_event(event, new_start, new_end, request.new_title)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except FocusPlannerError as exc:
            raise _edit_error(exc) from exc
        return {"message": "event updated", "event": updated.to_dict()}

    @app.delete("/api/events")
    def delete_event(request: EventPayload) -> dict[str, Any]:
        config, store, classifier = _note_tools()
        event = _event_from_payload(request, config.tz, classifier)
        try:
            path = store.remove_event(event)
        except FocusPlannerError as exc:
            raise _edit_error(exc) from exc
        return {"message": "event removed", "path": path}

    @app.get("/api/stats/day")
    def stats_day(day: str | None = None) -> dict[str, Any]:
        config, store, _ = _note_tools()
        today = datetime.now(timezone.utc).astimezone(config.tz).date()
        return StatsAggregator(store).daily_stats(_parse_date(day, today)).to_dict()

    @app.get("/api/stats/week")
    def stats_week(start: str | None = None) -> dict[str, Any]:
        config, store, _ = _note_tools()
        today = datetime.now(timezone.utc).astimezone(config.tz).date()
        aggregator = StatsAggregator(store)
        weekly = aggregator.weekly_stats(_parse_date(start, week_start(today)))
        payload = weekly.to_dict()
        payload["distribution"] = aggregator.time_distribution(weekly)
        return payload

    return app


app = create_app()
