"""HTTP delivery of metrics and conversation records to the analytics backend."""
from __future__ import annotations

import asyncio
import logging
import time
from pathlib import PurePath
from typing import Any, Callable, Optional

import requests

from agent_telemetry import config
from agent_telemetry.models import ConversationPayload, Session, SessionMetric

logger = logging.getLogger("agent_telemetry.sync")

METRICS_ENDPOINT = "/v1/metrics"
CONVERSATIONS_ENDPOINT = "/v1/conversations"

METRIC_SESSION_TOTAL = "agent_session_total"
METRIC_USAGE_TOTAL = "agent_usage_total"


class SyncRequestError(RuntimeError):
    """Remote call failed; `status_code` is None for network errors and timeouts."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code >= 500 or self.status_code == 429


def extract_repository(working_directory: str) -> str:
    """`parent/name` of the working directory, the closest thing to a repo slug we have offline."""
    parts = [part for part in PurePath(working_directory or "").parts if part not in ("/", "\\")]
    if not parts:
        return "unknown"
    return "/".join(parts[-2:])


def zero_usage_attributes() -> dict[str, Any]:
    return {
        "total_user_prompts": 0,
        "total_input_tokens": 0,
        "total_output_tokens": 0,
        "total_cache_read_input_tokens": 0,
        "total_cache_creation_tokens": 0,
        "total_tool_calls": 0,
        "successful_tool_calls": 0,
        "failed_tool_calls": 0,
        "files_created": 0,
        "files_modified": 0,
        "files_deleted": 0,
        "total_lines_added": 0,
        "total_lines_removed": 0,
    }


class ApiClient:
    """POSTs JSON bodies with bounded retries.

    Network errors, HTTP 5xx and 429 are retried with `retry_delays`; any other
    4xx fails immediately.
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        api_key: str = "",
        cookies: str = "",
        timeout: float | None = None,
        retry_attempts: int | None = None,
        retry_delays: tuple[float, ...] | None = None,
        client_type: str | None = None,
        version: str | None = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = (base_url or config.API_BASE_URL).rstrip("/")
        self.api_key = api_key or config.API_KEY
        self.cookies = cookies or config.COOKIES
        self.timeout = config.SYNC_TIMEOUT_SECONDS if timeout is None else timeout
        self.retry_attempts = config.SYNC_RETRY_ATTEMPTS if retry_attempts is None else retry_attempts
        self.retry_delays = retry_delays or config.SYNC_RETRY_DELAYS
        self.client_type = client_type or config.CLIENT_TYPE
        self.version = version or config.CLIENT_VERSION
        self._session = session or requests.Session()
        self._sleep = sleep

    def headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"agent-telemetry/{self.version}",
            "X-Agent-Telemetry-Client": self.client_type,
        }
        if self.api_key:
            headers["user-id"] = self.api_key
        elif self.cookies:
            headers["Cookie"] = self.cookies
        return headers

    def _post_once(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.post(url, json=body, headers=self.headers(), timeout=self.timeout)
        except requests.Timeout as e:
            raise SyncRequestError(f"Request to {url} timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise SyncRequestError(f"Request to {url} failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if not response.ok:
            message = data.get("message") or response.reason or "request failed"
            details = f" ({data['details']})" if data.get("details") else ""
            raise SyncRequestError(f"API returned {response.status_code}: {message}{details}", response.status_code)
        if data.get("success") is False:
            raise SyncRequestError(f"API reported failure: {data.get('message', '')}", response.status_code)
        return data

    def post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        if not self.base_url:
            raise SyncRequestError("No API base URL configured", 400)
        last_error: SyncRequestError | None = None
        for attempt in range(self.retry_attempts + 1):
            if attempt > 0:
                delay = self.retry_delays[min(attempt - 1, len(self.retry_delays) - 1)] if self.retry_delays else 0
                logger.debug(f"Retry attempt {attempt} for {path} after {delay}s")
                self._sleep(delay)
            try:
                return self._post_once(path, body)
            except SyncRequestError as e:
                last_error = e
                if not e.retryable:
                    logger.error(f"Non-retryable error from {path}: {e}")
                    raise
                logger.warning(f"Attempt {attempt + 1} to {path} failed: {e}")
        raise SyncRequestError(
            f"Failed after {self.retry_attempts} retries: {last_error}",
            last_error.status_code if last_error else None,
        ) from last_error

    async def apost(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        return await asyncio.to_thread(self.post, path, body)


class MetricsSender:
    """Builds the backend's metric and conversation payloads on top of ApiClient."""

    def __init__(self, client: Optional[ApiClient] = None, *, dry_run: bool | None = None):
        self.client = client or ApiClient()
        self.dry_run = config.DRY_RUN if dry_run is None else dry_run

    def _lifecycle_metric(
        self,
        session: Session,
        status: str,
        reason: Optional[str],
        duration_ms: int,
        error: Optional[dict[str, str]] = None,
    ) -> SessionMetric:
        attributes: dict[str, Any] = {
            "agent": session.agentName,
            "agent_version": self.client.version,
            "llm_model": session.model or "unknown",
            "repository": extract_repository(session.workingDirectory),
            "session_id": session.sessionId,
            "branch": session.gitBranch or "unknown",
        }
        if session.project:
            attributes["project"] = session.project
        attributes.update(zero_usage_attributes())
        attributes.update(
            {
                "session_duration_ms": duration_ms,
                "had_errors": status == "failed",
                "count": 1,
                "status": status,
            }
        )
        if reason:
            attributes["reason"] = reason
        if status == "failed" and error:
            code = error.get("code")
            message = f"[{code}] {error.get('message', '')}" if code else error.get("message", "")
            attributes["errors"] = {error.get("type", "error"): [message]}
        return SessionMetric(name=METRIC_SESSION_TOTAL, attributes=attributes)

    async def send_metric(self, metric: SessionMetric) -> dict[str, Any]:
        if self.dry_run:
            logger.info(
                f"[DRY-RUN] Would POST {METRICS_ENDPOINT} {metric.name} "
                f"session={metric.attributes.get('session_id')} branch={metric.attributes.get('branch')}"
            )
            return {"success": True, "message": "[DRY-RUN] metric logged"}
        response = await self.client.apost(METRICS_ENDPOINT, metric.model_dump())
        logger.info(f"Sent {metric.name} for session {metric.attributes.get('session_id')}")
        return response

    async def send_session_start(self, session: Session, reason: Optional[str] = None) -> dict[str, Any]:
        return await self.send_metric(self._lifecycle_metric(session, "started", reason, 0))

    async def send_session_end(
        self,
        session: Session,
        status: str,
        duration_ms: int,
        reason: Optional[str] = None,
        error: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        return await self.send_metric(self._lifecycle_metric(session, status, reason, duration_ms, error))

    async def send_conversation(self, record_id: str, payload: ConversationPayload) -> dict[str, Any]:
        body = {"recordId": record_id, **payload.model_dump(exclude_none=True)}
        if self.dry_run:
            logger.info(
                f"[DRY-RUN] Would POST {CONVERSATIONS_ENDPOINT} conversation={payload.conversationId} "
                f"entries={len(payload.history)}"
            )
            return {"success": True, "message": "[DRY-RUN] conversation logged"}
        return await self.client.apost(CONVERSATIONS_ENDPOINT, body)
