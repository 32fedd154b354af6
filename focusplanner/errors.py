from __future__ import annotations

from datetime import datetime


class FocusPlannerError(RuntimeError):
    pass


class AuthenticationError(FocusPlannerError):
    pass


class NotAuthenticatedError(FocusPlannerError):
    def __init__(self, message: str = "Not authenticated: log in again to obtain a fresh token.") -> None:
        super().__init__(message)


class CalDAVProtocolError(FocusPlannerError):
    def __init__(self, stage: str, status: int | None, message: str = "") -> None:
        self.stage = stage
        self.status = status
        detail = message or "unexpected response"
        super().__init__(f"CalDAV {stage} failed (status={status}): {detail}")


class CalendarDiscoveryError(FocusPlannerError):
    pass


class NoCalendarDataError(FocusPlannerError):
    def __init__(self, message: str = "No calendar data available after all retrieval methods.") -> None:
        super().__init__(message)


class FeishuAPIError(FocusPlannerError):
    def __init__(self, endpoint: str, status: int | None, code: int | None = None, message: str = "") -> None:
        self.endpoint = endpoint
        self.status = status
        self.code = code
        super().__init__(f"Feishu API {endpoint} failed (status={status}, code={code}): {message or 'error'}")


class NoteWriteError(FocusPlannerError):
    pass


class EventNotFoundError(FocusPlannerError):
    def __init__(self, title: str, start: datetime | str, end: datetime | str, message: str = "") -> None:
        self.title = title
        self.start = start
        self.end = end
        super().__init__(message or f"Event '{title}' ({_hhmm(start)}-{_hhmm(end)}) not found in note.")


class SectionNotFoundError(FocusPlannerError):
    def __init__(self, heading: str, path: str) -> None:
        self.heading = heading
        self.path = path
        super().__init__(f"Section '{heading}' not found in {path}.")


def _hhmm(value: datetime | str) -> str:
    if isinstance(value, datetime):
        return value.strftime("%H:%M")
    return str(value)
