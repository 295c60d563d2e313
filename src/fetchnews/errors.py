"""Error taxonomy for the client core.

Only ``FetchError`` ever reaches the user (via ``FetchOrchestrator.last_error``).
Everything else is caught by the coordinator that owns it, logged, and
recovered from by re-invocation.
"""
from __future__ import annotations

from enum import Enum


class FetchNewsError(Exception):
    """Base class for every error raised by the client core."""


class FetchErrorKind(Enum):
    NO_CONNECTION = "no_connection"
    TIMEOUT = "timeout"
    SERVER_UNREACHABLE = "server_unreachable"
    INVALID_RESPONSE = "invalid_response"
    SERVER_ERROR = "server_error"
    NO_CONTENT = "no_content"
    UNKNOWN = "unknown"


_USER_MESSAGES: dict[FetchErrorKind, str] = {
    FetchErrorKind.NO_CONNECTION: "No internet connection. Please check your network settings.",
    FetchErrorKind.TIMEOUT: "Request timed out. The server may be busy.",
    FetchErrorKind.SERVER_UNREACHABLE: "Cannot reach the server. Please try again later.",
    FetchErrorKind.INVALID_RESPONSE: "Invalid response from server.",
    FetchErrorKind.NO_CONTENT: (
        "No news articles found for the selected topics. "
        "Try different topics or check back later."
    ),
}


class FetchError(FetchNewsError):
    """Gather, summarize or synthesize failed. Recoverable: the user may retry."""

    def __init__(self, kind: FetchErrorKind, message: str = "") -> None:
        self.kind = kind
        self.message = message
        super().__init__(f"{kind.value}: {message}" if message else kind.value)

    def user_message(self) -> str:
        if self.kind in _USER_MESSAGES:
            return _USER_MESSAGES[self.kind]
        if self.kind is FetchErrorKind.SERVER_ERROR:
            return f"Server error: {self.message or 'please try again'}"
        return f"Failed to fetch news: {self.message or 'unknown error'}"


class FetchCancelled(FetchNewsError):
    """The in-flight call observed its cancel token. Never shown to the user."""


class AudioLoadError(FetchNewsError):
    """Audio for one topic could not be loaded. Scoped to that topic."""

    def __init__(self, ref: str | None, reason: str = "") -> None:
        self.ref = ref
        self.reason = reason
        super().__init__(f"audio unavailable ({ref or 'no reference'}): {reason}" if reason
                         else f"audio unavailable ({ref or 'no reference'})")


class ApiError(FetchNewsError):
    """Non-success response or transport failure from the news API."""

    def __init__(self, status: int, message: str = "") -> None:
        self.status = status
        self.message = message
        super().__init__(f"HTTP {status}: {message}" if message else f"HTTP {status}")


class SubmissionError(FetchNewsError):
    """A topic's feedback batch failed. The entry stays editable."""


class ScheduleListError(FetchNewsError):
    """Listing scheduled summaries failed. Degrades to 'no schedules known'."""
