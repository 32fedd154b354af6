from __future__ import annotations

import logging
import threading
import time
from datetime import date, datetime, time as dt_time, tzinfo
from typing import Any, Callable
from urllib.parse import quote, urlencode

import requests

from focusplanner.classifier import CategoryClassifier
from focusplanner.errors import CalendarDiscoveryError, FeishuAPIError, NotAuthenticatedError
from focusplanner.ical_decoder import DEFAULT_TITLE
from focusplanner.models import CalendarEvent, FeishuConfig, PolicyConfig, RecurrenceRule, dedupe_events
from focusplanner.recurrence import expand_recurrence

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
OAUTH_STATE = "focus-planner-auth"
OAUTH_SCOPE = "calendar:calendar:readonly calendar:calendar:read"
WRITABLE_ROLES = ("owner", "writer")
CALENDAR_PAGE_SIZE = 50
EVENT_PAGE_SIZE = 500

TokensCallback = Callable[[dict[str, Any]], None]


class FeishuClient:
    def __init__(
        self,
        config: FeishuConfig,
        policy: PolicyConfig,
        classifier: CategoryClassifier,
        tz: tzinfo,
        on_tokens_changed: TokensCallback | None = None,
        session: requests.Session | None = None,
        timeout: int = DEFAULT_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.policy = policy
        self.classifier = classifier
        self.tz = tz
        self.on_tokens_changed = on_tokens_changed
        self.session = session or requests.Session()
        self.timeout = timeout
        self._clock = clock
        self._token_lock = threading.Lock()

    def _call(
        self,
        method: str,
        path: str,
        token: str = "",
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self.config.api_base}{path}"
        headers = {"Content-Type": "application/json; charset=utf-8"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        logger.debug("%s %s", method, url)
        try:
            response = self.session.request(
                method, url, headers=headers, params=params, json=payload, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise FeishuAPIError(path, None, None, str(exc)) from exc
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        code = body.get("code")
        if response.status_code != 200 or code != 0:
            message = str(body.get("msg") or body.get("message") or f"HTTP {response.status_code}")
            raise FeishuAPIError(path, response.status_code, code, message)
        return body

    def authorization_url(self) -> str:
        query = urlencode(
            {
                "app_id": self.config.app_id,
                "redirect_uri": self.config.redirect_uri,
                "state": OAUTH_STATE,
                "scope": OAUTH_SCOPE,
            },
            quote_via=quote,
        )
        return f"{self.config.api_base}/authen/v1/authorize?{query}"

    def tenant_access_token(self) -> str:
        body = self._call(
            "POST",
            "/auth/v3/tenant_access_token/internal",
            payload={"app_id": self.config.app_id, "app_secret": self.config.app_secret},
        )
        return str(body.get("tenant_access_token", ""))

    def _store_tokens(self, data: dict[str, Any]) -> dict[str, Any]:
        self.config.access_token = str(data.get("access_token", "") or "")
        self.config.refresh_token = str(data.get("refresh_token", "") or self.config.refresh_token)
        self.config.token_expiry = self._clock() + float(data.get("expires_in", 0) or 0)
        tokens = {
            "access_token": self.config.access_token,
            "refresh_token": self.config.refresh_token,
            "token_expiry": self.config.token_expiry,
        }
        if self.on_tokens_changed is not None:
            self.on_tokens_changed(tokens)
        return tokens

    def exchange_code(self, code: str) -> dict[str, Any]:
        tenant_token = self.tenant_access_token()
        body = self._call(
            "POST",
            "/authen/v1/oidc/access_token",
            token=tenant_token,
            payload={"grant_type": "authorization_code", "code": code},
        )
        with self._token_lock:
            tokens = self._store_tokens(body.get("data") or {})
        logger.info("Feishu authorization code exchanged for user tokens")
        return tokens

    def _refresh_locked(self) -> None:
        tenant_token = self.tenant_access_token()
        body = self._call(
            "POST",
            "/authen/v1/oidc/refresh_access_token",
            token=tenant_token,
            payload={"grant_type": "refresh_token", "refresh_token": self.config.refresh_token},
        )
        self._store_tokens(body.get("data") or {})
        logger.info("Feishu access token refreshed")

    def refresh_access_token(self) -> None:
        with self._token_lock:
            if not self.config.refresh_token:
                raise NotAuthenticatedError("No refresh token available: log in again.")
            self._refresh_locked()

    def ensure_valid_token(self) -> str:
        with self._token_lock:
            if not self.config.access_token and not self.config.refresh_token:
                raise NotAuthenticatedError()
            expiring = bool(self.config.token_expiry) and (
                self._clock() > self.config.token_expiry - self.policy.token_refresh_buffer_seconds
            )
            if not self.config.access_token or expiring:
                if not self.config.refresh_token:
                    raise NotAuthenticatedError("Access token expired and no refresh token is stored.")
                self._refresh_locked()
            return self.config.access_token

    def _paginate(self, path: str, token: str, page_size: int, list_key: str) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page_token = ""
        while True:
            params: dict[str, Any] = {"page_size": page_size}
            if page_token:
                params["page_token"] = page_token
            data = self._call("GET", path, token=token, params=params).get("data") or {}
            items.extend(item for item in data.get(list_key) or [] if isinstance(item, dict))
            page_token = str(data.get("page_token") or "")
            if not data.get("has_more") or not page_token:
                return items

    def list_calendar_ids(self, token: str) -> list[str]:
        calendars = self._paginate("/calendar/v4/calendars", token, CALENDAR_PAGE_SIZE, "calendar_list")
        calendar_ids = []
        for calendar in calendars:
            role = str(calendar.get("role", "")).lower()
            calendar_id = str(calendar.get("calendar_id", "")).strip()
            if role in WRITABLE_ROLES and calendar_id:
                calendar_ids.append(calendar_id)
            else:
                logger.debug("Skipping calendar %s with role %r", calendar.get("summary"), role)
        if not calendar_ids:
            raise CalendarDiscoveryError("No Feishu calendar with owner or writer access was found.")
        return calendar_ids

    def list_raw_events(self, calendar_id: str, token: str) -> list[dict[str, Any]]:
        path = f"/calendar/v4/calendars/{quote(calendar_id, safe='')}/events"
        return self._paginate(path, token, EVENT_PAGE_SIZE, "items")

    def _item_bounds(self, item: dict[str, Any]) -> tuple[datetime, datetime] | None:
        start_info = item.get("start_time") or {}
        end_info = item.get("end_time") or {}
        if not isinstance(start_info, dict) or not isinstance(end_info, dict):
            return None
        if start_info.get("date") and not start_info.get("timestamp"):
            start_day = date.fromisoformat(str(start_info["date"]))
            end_day = date.fromisoformat(str(end_info.get("date") or start_info["date"]))
            start = datetime.combine(start_day, dt_time(self.policy.all_day_start_hour), tzinfo=self.tz)
            end = datetime.combine(end_day, dt_time(self.policy.all_day_end_hour), tzinfo=self.tz)
        elif start_info.get("timestamp") and end_info.get("timestamp"):
            start = datetime.fromtimestamp(int(start_info["timestamp"]), self.tz)
            end = datetime.fromtimestamp(int(end_info["timestamp"]), self.tz)
        else:
            return None
        if end <= start:
            end = start + self.policy.default_duration
        return start, end

    def decode_item(self, item: dict[str, Any], window_start: datetime, window_end: datetime) -> list[CalendarEvent]:
        if str(item.get("status", "")).lower() == "cancelled":
            return []
        bounds = self._item_bounds(item)
        if bounds is None:
            return []
        start, end = bounds
        event_id = str(item.get("event_id", "")).strip()
        title = str(item.get("summary") or "").strip() or DEFAULT_TITLE
        category = self.classifier.classify(title)

        recurrence = str(item.get("recurrence") or "").strip()
        rule = RecurrenceRule.parse(recurrence, self.tz) if recurrence else None
        if rule is None:
            if end < window_start or start > window_end:
                return []
            return [
                CalendarEvent(
                    event_id=f"feishu-{event_id}",
                    title=title,
                    start=start,
                    end=end,
                    category=category,
                    remote_id=event_id,
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
                event_id=f"feishu-{event_id}-{index}",
                title=title,
                start=occurrence,
                end=occurrence + duration,
                category=category,
                remote_id=event_id,
            )
            for index, occurrence in enumerate(occurrences)
        ]

    def get_events(self, window_start: datetime, window_end: datetime) -> list[CalendarEvent]:
        token = self.ensure_valid_token()
        calendar_ids = self.list_calendar_ids(token)
        collected: list[CalendarEvent] = []
        for calendar_id in calendar_ids:
            try:
                items = self.list_raw_events(calendar_id, token)
            except FeishuAPIError as exc:
                logger.warning("Skipping Feishu calendar %s: %s", calendar_id, exc)
                continue
            for item in items:
                try:
                    collected.extend(self.decode_item(item, window_start, window_end))
                except (TypeError, ValueError) as exc:
                    logger.warning("Skipping undecodable Feishu event %s: %s", item.get("event_id"), exc)
        events = dedupe_events(collected)
        logger.info(
            "Feishu returned %s events from %s calendars (%s after de-duplication)",
            len(collected),
            len(calendar_ids),
            len(events),
        )
        return events
