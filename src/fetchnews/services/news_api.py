"""News API client: summarize, article feedback, scheduled summaries.

``RemoteNewsService`` is the interface the coordinators depend on; tests
substitute fakes. ``HttpNewsService`` talks to the FetchNews backend with
urllib (stdlib), running each blocking request in a worker thread so the
event loop stays free and cancellation can win the race against the response.

Env vars (read by ``fetchnews.models.config``):
    FETCHNEWS_API_BASE    backend base URL
    FETCHNEWS_AUTH_TOKEN  bearer token
"""
from __future__ import annotations

import asyncio
import http.client
import json
import logging
import socket
import time
import urllib.error
import urllib.parse
import urllib.request
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Iterable

from fetchnews.errors import (
    ApiError,
    FetchCancelled,
    FetchError,
    FetchErrorKind,
    FetchNewsError,
    ScheduleListError,
    SubmissionError,
)
from fetchnews.models.domain import (
    Article,
    FetchPhase,
    FetchPreferences,
    Reaction,
    ScheduleDefinition,
    Session,
    TopicSection,
    condense_whitespace,
    sanitize_text,
)
from fetchnews.services.cancel import CancelToken

log = logging.getLogger(__name__)

ProgressCallback = Callable[[FetchPhase], None]

_RETRY_BACKOFF = (1.0, 2.0, 4.0)
_RETRYABLE_STATUS = (429, 500, 502, 503, 504)


class RemoteNewsService(ABC):
    """Everything the client core needs from the backend."""

    @abstractmethod
    async def fetch(
        self,
        topics: Iterable[str],
        preferences: FetchPreferences,
        cancel_token: CancelToken,
        on_progress: ProgressCallback | None = None,
    ) -> Session:
        """Gather, summarize and synthesize a session for ``topics``.

        Reports server checkpoints through ``on_progress``. Raises FetchError
        on failure and FetchCancelled once ``cancel_token`` has been cancelled.
        """

    @abstractmethod
    async def submit_feedback(
        self,
        article_id: str,
        url: str,
        title: str,
        source: str,
        topic: str,
        reaction: Reaction,
        comment: str | None = None,
    ) -> None:
        """Record feedback for one article. Raises SubmissionError."""

    @abstractmethod
    async def list_schedules(self) -> list[ScheduleDefinition]:
        """Raises ScheduleListError."""

    @abstractmethod
    async def create_schedule(self, definition: ScheduleDefinition) -> ScheduleDefinition: ...

    @abstractmethod
    async def update_schedule(self, definition: ScheduleDefinition) -> ScheduleDefinition: ...

    @abstractmethod
    async def delete_schedule(self, schedule_id: str) -> None: ...

    @abstractmethod
    async def record_run(self, schedule_id: str, timestamp: datetime) -> None: ...


# ──────────────────────────────────────────────────────────────────────
# Response decoding
# ──────────────────────────────────────────────────────────────────────


def resolve_audio_url(base_url: str, ref: str | None) -> str | None:
    """Make server-relative audio paths absolute against the API base."""
    if not ref:
        return None
    parsed = urllib.parse.urlparse(ref)
    if parsed.scheme:
        return ref
    path = ref.strip()
    if not path.startswith("/"):
        path = "/" + path
    return base_url.rstrip("/") + path


def _flatten_batch(data: dict[str, Any]) -> dict[str, Any]:
    """Convert a ``/summarize/batch`` response into the single-topic shape."""
    results = [r for r in data.get("results") or [] if isinstance(r, dict)]
    items: list[dict] = []
    for r in results:
        items.extend(i for i in r.get("items") or [] if isinstance(i, dict))

    combined = next((r["combined"] for r in results if isinstance(r.get("combined"), dict)), None)
    if combined is None and items:
        first = items[0]
        combined = {
            "title": "Multi-Topic Summary",
            "summary": first.get("summary", ""),
            "audioUrl": first.get("audioUrl"),
        }
    return {"combined": combined, "items": items}


def parse_summarize_response(data: Any, topics: Iterable[str], base_url: str = "") -> Session:
    """Build a Session from either summarize response shape.

    Raises FetchError(INVALID_RESPONSE) for non-object payloads and
    FetchError(NO_CONTENT) when there is neither summary text nor articles.
    """
    if not isinstance(data, dict):
        raise FetchError(FetchErrorKind.INVALID_RESPONSE, "expected a JSON object")
    if "results" in data and "combined" not in data:
        data = _flatten_batch(data)

    raw_items = [i for i in data.get("items") or [] if isinstance(i, dict)]
    combined = data.get("combined") if isinstance(data.get("combined"), dict) else {}

    raw_summary = combined.get("summary") or combined.get("text") or ""
    if not raw_summary and raw_items:
        raw_summary = raw_items[0].get("summary") or ""
    summary_text = condense_whitespace(sanitize_text(raw_summary))

    articles = tuple(Article.from_dict(i) for i in raw_items)
    if not summary_text and not articles:
        raise FetchError(FetchErrorKind.NO_CONTENT, "empty summary and no articles")

    sections: list[TopicSection] = []
    for raw in combined.get("topicSections") or []:
        if not isinstance(raw, dict):
            continue
        section = TopicSection.from_dict(raw)
        sections.append(replace(section, audio_ref=resolve_audio_url(base_url, section.audio_ref)))

    session_id = (
        combined.get("id")
        or (raw_items[0].get("id") if raw_items else None)
        or f"fetch-{uuid.uuid4().hex[:12]}"
    )
    return Session(
        id=str(session_id),
        summary_text=summary_text,
        sections=tuple(sections),
        articles=articles,
        audio_ref=resolve_audio_url(base_url, combined.get("audioUrl")),
        title=condense_whitespace(sanitize_text(combined.get("title") or "Summary")),
        topics=frozenset(topics),
    )


# ──────────────────────────────────────────────────────────────────────
# HTTP implementation
# ──────────────────────────────────────────────────────────────────────


def _transport_error_kind(reason: Any) -> FetchErrorKind:
    if isinstance(reason, (socket.timeout, TimeoutError)):
        return FetchErrorKind.TIMEOUT
    if isinstance(reason, (ConnectionRefusedError, socket.gaierror)):
        return FetchErrorKind.SERVER_UNREACHABLE
    if isinstance(reason, (ConnectionResetError, ConnectionAbortedError, OSError)):
        return FetchErrorKind.NO_CONNECTION
    if isinstance(reason, http.client.HTTPException):
        return FetchErrorKind.INVALID_RESPONSE
    return FetchErrorKind.UNKNOWN


class HttpNewsService(RemoteNewsService):
    """FetchNews backend client.

    Retries transient 429/5xx and network errors with exponential backoff.
    """

    # UX hint: report "summarizing" if the server is still working after this long
    SUMMARIZE_HINT_S = 0.35

    def __init__(
        self,
        base_url: str,
        auth_token: str = "",
        timeout: float = 60.0,
        max_retries: int = 2,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_retries = max(0, min(max_retries, len(_RETRY_BACKOFF)))
        self._sleep = sleep
        self._headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if auth_token:
            self._headers["Authorization"] = f"Bearer {auth_token}"

    def _request(self, method: str, path: str, body: dict | None = None) -> Any:
        """Send one request and return the decoded JSON body (or None).

        Raises ApiError for non-2xx responses and FetchError for transport failures.
        """
        url = self.base_url + path
        data = json.dumps(body).encode("utf-8") if body is not None else None

        for attempt in range(self._max_retries + 1):
            req = urllib.request.Request(url, data=data, headers=self._headers, method=method)
            try:
                with urllib.request.urlopen(req, timeout=self._timeout) as resp:
                    raw = resp.read().decode("utf-8")
                break
            except urllib.error.HTTPError as e:
                body_text = e.read().decode("utf-8", errors="replace")[:500]
                if e.code in _RETRYABLE_STATUS and attempt < self._max_retries:
                    wait = _RETRY_BACKOFF[attempt]
                    log.warning("API %s %s -> %d (attempt %d/%d), retrying in %.1fs",
                                method, path, e.code, attempt + 1, self._max_retries + 1, wait)
                    self._sleep(wait)
                    continue
                raise ApiError(e.code, _error_message(body_text)) from e
            except urllib.error.URLError as e:
                if attempt < self._max_retries:
                    wait = _RETRY_BACKOFF[attempt]
                    log.warning("API network error on %s %s (attempt %d/%d), retrying in %.1fs: %s",
                                method, path, attempt + 1, self._max_retries + 1, wait, e.reason)
                    self._sleep(wait)
                    continue
                raise FetchError(_transport_error_kind(e.reason), str(e.reason)) from e
            except (socket.timeout, TimeoutError) as e:
                if attempt < self._max_retries:
                    self._sleep(_RETRY_BACKOFF[attempt])
                    continue
                raise FetchError(FetchErrorKind.TIMEOUT, str(e)) from e
            except (http.client.HTTPException, OSError) as e:
                # Raised by getresponse() and not wrapped in URLError
                if attempt < self._max_retries:
                    wait = _RETRY_BACKOFF[attempt]
                    log.warning("API connection error on %s %s (attempt %d/%d), retrying in %.1fs: %r",
                                method, path, attempt + 1, self._max_retries + 1, wait, e)
                    self._sleep(wait)
                    continue
                raise FetchError(_transport_error_kind(e), str(e) or type(e).__name__) from e

        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise FetchError(FetchErrorKind.INVALID_RESPONSE, f"malformed JSON: {e}") from e

    async def _call(self, method: str, path: str, body: dict | None = None) -> Any:
        return await asyncio.to_thread(self._request, method, path, body)

    # ── Fetch ────────────────────────────────────────────────────────

    async def fetch(
        self,
        topics: Iterable[str],
        preferences: FetchPreferences,
        cancel_token: CancelToken,
        on_progress: ProgressCallback | None = None,
    ) -> Session:
        topic_list = sorted(set(topics))
        cancel_token.raise_if_cancelled()

        payload = {"topics": topic_list, **preferences.to_payload()}
        if len(topic_list) == 1:
            path, body = "/api/summarize", payload
        else:
            path, body = "/api/summarize/batch", {"batches": [payload]}

        def progress(phase: FetchPhase) -> None:
            if on_progress is not None and not cancel_token.cancelled:
                on_progress(phase)

        request = asyncio.ensure_future(self._call("POST", path, body))
        cancelled = asyncio.ensure_future(cancel_token.wait())
        hint = asyncio.get_running_loop().call_later(
            self.SUMMARIZE_HINT_S, progress, FetchPhase.SUMMARIZING,
        )
        started = time.monotonic()
        try:
            done, _ = await asyncio.wait({request, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            hint.cancel()
            cancelled.cancel()

        if request not in done:
            # The worker thread cannot be interrupted; its result is discarded.
            request.add_done_callback(_consume_result)
            raise FetchCancelled(f"summarize for {topic_list} cancelled")

        try:
            data = request.result()
        except ApiError as e:
            raise FetchError(FetchErrorKind.SERVER_ERROR, e.message or f"HTTP {e.status}") from e
        cancel_token.raise_if_cancelled()

        log.info("Summarize returned in %.2fs for %s", time.monotonic() - started, topic_list,
                 extra={"duration_ms": int((time.monotonic() - started) * 1000)})
        progress(FetchPhase.SUMMARIZING)
        progress(FetchPhase.SYNTHESIZING)
        session = parse_summarize_response(data, topic_list, self.base_url)
        cancel_token.raise_if_cancelled()
        return session

    # ── Feedback ─────────────────────────────────────────────────────

    async def submit_feedback(
        self,
        article_id: str,
        url: str,
        title: str,
        source: str,
        topic: str,
        reaction: Reaction,
        comment: str | None = None,
    ) -> None:
        if reaction is Reaction.NONE:
            raise SubmissionError("cannot submit feedback without a reaction")
        body: dict[str, Any] = {
            "articleId": article_id,
            "url": url,
            "title": title,
            "source": source,
            "topic": topic,
            "feedback": reaction.value,
        }
        if comment:
            body["comment"] = comment
        try:
            await self._call("POST", "/api/article-feedback", body)
        except FetchNewsError as e:
            raise SubmissionError(f"feedback for article {article_id} failed: {e}") from e

    # ── Scheduled summaries ──────────────────────────────────────────

    async def list_schedules(self) -> list[ScheduleDefinition]:
        try:
            data = await self._call("GET", "/api/scheduled-summaries")
        except FetchNewsError as e:
            raise ScheduleListError(str(e)) from e
        raw = data.get("scheduledSummaries") if isinstance(data, dict) else data
        if not isinstance(raw, list):
            raise ScheduleListError("scheduledSummaries missing from response")
        schedules: list[ScheduleDefinition] = []
        for record in raw:
            definition = ScheduleDefinition.from_dict(record)
            if definition is None:
                log.warning("Skipping malformed schedule record: %r", str(record)[:120])
                continue
            schedules.append(definition)
        return schedules

    async def create_schedule(self, definition: ScheduleDefinition) -> ScheduleDefinition:
        data = await self._call("POST", "/api/scheduled-summaries", definition.to_dict())
        return ScheduleDefinition.from_dict(data) or definition

    async def update_schedule(self, definition: ScheduleDefinition) -> ScheduleDefinition:
        path = f"/api/scheduled-summaries/{urllib.parse.quote(definition.id, safe='')}"
        data = await self._call("PUT", path, definition.to_dict())
        return ScheduleDefinition.from_dict(data) or definition

    async def delete_schedule(self, schedule_id: str) -> None:
        await self._call("DELETE", f"/api/scheduled-summaries/{urllib.parse.quote(schedule_id, safe='')}")

    async def record_run(self, schedule_id: str, timestamp: datetime) -> None:
        path = f"/api/scheduled-summaries/{urllib.parse.quote(schedule_id, safe='')}"
        await self._call("PUT", path, {"lastRun": timestamp.isoformat()})


def _error_message(body_text: str) -> str:
    try:
        parsed = json.loads(body_text)
    except json.JSONDecodeError:
        return body_text[:200]
    if isinstance(parsed, dict) and isinstance(parsed.get("error"), str):
        return parsed["error"]
    return body_text[:200]


def _consume_result(task: asyncio.Future) -> None:
    """Retrieve an abandoned request's outcome so asyncio doesn't warn about it."""
    if not task.cancelled():
        exc = task.exception()
        if exc is not None:
            log.debug("Discarded result of cancelled request: %s", exc)
