"""Delivers pending metric deltas and conversation records to the backend."""
from __future__ import annotations

import logging
import time
from collections import Counter
from pathlib import Path
from typing import Any, Iterable, Optional

from agent_telemetry import config, observability
from agent_telemetry.date_utils import iso_to_epoch, utc_now_iso
from agent_telemetry.db.api_client import METRIC_USAGE_TOTAL, MetricsSender, SyncRequestError, extract_repository
from agent_telemetry.db.locks import LockFile
from agent_telemetry.db.record_store import conversation_store, metrics_store
from agent_telemetry.db.session_store import SessionStore
from agent_telemetry.models import (
    ConversationPayloadRecord,
    MetricDelta,
    Session,
    SessionMetric,
    SyncResult,
)
from agent_telemetry.processors.base import ProcessingContext

logger = logging.getLogger("agent_telemetry.sync")

UNKNOWN_BRANCH = "unknown"


def group_by_branch(deltas: Iterable[MetricDelta], fallback: Optional[str]) -> dict[str, list[MetricDelta]]:
    groups: dict[str, list[MetricDelta]] = {}
    for delta in deltas:
        groups.setdefault(delta.gitBranch or fallback or UNKNOWN_BRANCH, []).append(delta)
    return groups


def aggregate_deltas(
    deltas: list[MetricDelta],
    *,
    branch: str,
    session: Optional[Session],
    session_id: str,
    working_directory: str,
    agent_version: str,
) -> SessionMetric:
    """Fold one branch group into a usage metric; `record_ids` is the remote idempotency key."""
    totals = Counter()
    models = Counter()
    tool_failures: dict[str, int] = {}
    seen: set[str] = set()
    unique: list[MetricDelta] = []
    for delta in deltas:
        if delta.recordId in seen:
            logger.warning(f"Skipping duplicate metric delta {delta.recordId} in session {session_id}")
            continue
        seen.add(delta.recordId)
        unique.append(delta)
    deltas = unique

    for delta in deltas:
        totals["input"] += delta.tokens.input
        totals["output"] += delta.tokens.output
        totals["cacheRead"] += delta.tokens.cacheRead or 0
        totals["cacheCreation"] += delta.tokens.cacheCreation or 0
        totals["prompts"] += sum(prompt.count for prompt in delta.userPrompts or [])
        totals["toolCalls"] += sum((delta.tools or {}).values())
        for name, status in (delta.toolStatus or {}).items():
            totals["toolSuccess"] += status.success
            totals["toolFailure"] += status.failure
            if status.failure:
                tool_failures[name] = tool_failures.get(name, 0) + status.failure
        for operation in delta.fileOperations or []:
            if operation.type == "write":
                totals["filesCreated"] += 1
            elif operation.type == "edit":
                totals["filesModified"] += 1
            elif operation.type == "delete":
                totals["filesDeleted"] += 1
            totals["linesAdded"] += operation.linesAdded or 0
            totals["linesRemoved"] += operation.linesRemoved or 0
        models.update(delta.models or [])

    timestamps = [iso_to_epoch(delta.timestamp) for delta in deltas if delta.timestamp]
    start = iso_to_epoch(session.startTime) if session is not None else 0.0
    if not start and timestamps:
        start = min(timestamps)
    duration_ms = int(max(0.0, (max(timestamps) - start) * 1000)) if timestamps and start else 0

    attributes: dict[str, Any] = {
        "agent": session.agentName if session is not None else "unknown",
        "agent_version": agent_version,
        "llm_model": models.most_common(1)[0][0] if models else (session.model if session and session.model else "unknown"),
        "repository": extract_repository(working_directory),
        "session_id": session_id,
        "branch": branch,
    }
    if session is not None and session.project:
        attributes["project"] = session.project
    attributes.update(
        {
            "total_user_prompts": totals["prompts"],
            "total_input_tokens": totals["input"],
            "total_output_tokens": totals["output"],
            "total_cache_read_input_tokens": totals["cacheRead"],
            "total_cache_creation_tokens": totals["cacheCreation"],
            "total_tool_calls": totals["toolCalls"],
            "successful_tool_calls": totals["toolSuccess"],
            "failed_tool_calls": totals["toolFailure"],
            "files_created": totals["filesCreated"],
            "files_modified": totals["filesModified"],
            "files_deleted": totals["filesDeleted"],
            "total_lines_added": totals["linesAdded"],
            "total_lines_removed": totals["linesRemoved"],
            "session_duration_ms": duration_ms,
            "had_errors": bool(tool_failures),
            "count": 1,
            "record_ids": sorted(seen),
        }
    )
    if tool_failures:
        attributes["errors"] = {name: [f"{count} failed call(s)"] for name, count in sorted(tool_failures.items())}
    return SessionMetric(name=METRIC_USAGE_TOTAL, attributes=attributes)


class SyncEngine:
    """Single-flight delivery of a session's pending records.

    A second call for a session already syncing, in this process or another
    one holding `<session id>.sync.lock`, returns success without doing work.
    """

    _in_flight: set[str] = set()

    def __init__(self, sender: Optional[MetricsSender] = None, *, lock_stale_seconds: float | None = None):
        self.sender = sender or MetricsSender()
        self.lock_stale_seconds = config.SYNC_LOCK_STALE_SECONDS if lock_stale_seconds is None else lock_stale_seconds

    def _lock(self, sessions_dir: Path, session_id: str) -> LockFile:
        return LockFile(sessions_dir / f"{session_id}.sync.lock", stale_seconds=self.lock_stale_seconds, timeout=0)

    async def sync(self, session_id: str, context: ProcessingContext) -> SyncResult:
        if session_id in self._in_flight:
            logger.debug(f"Sync already running for {session_id}")
            return SyncResult(success=True, message="Sync already in progress", metadata={"skipped": True})

        context.sessions_dir.mkdir(parents=True, exist_ok=True)
        lock = self._lock(context.sessions_dir, session_id)
        if not lock.try_acquire():
            logger.debug(f"Sync lock for {session_id} held by another process")
            return SyncResult(success=True, message="Sync already in progress", metadata={"skipped": True})

        self._in_flight.add(session_id)
        t0 = time.monotonic()
        try:
            with observability.start_span("agent_telemetry.sync", {"session_id": session_id}):
                result = await self._sync(session_id, context)
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"Sync failed for {session_id}: {exc}")
            result = SyncResult(success=False, message=f"Sync failed: {exc}")
        finally:
            self._in_flight.discard(session_id)
            lock.release()

        observability.record_processing(
            "sync",
            "success" if result.success else "failure",
            (time.monotonic() - t0) * 1000,
            agent=str(result.metadata.get("agent", "unknown")),
        )
        context.progress.emit("synced", sessionId=session_id, success=result.success, **result.metadata)
        return result

    async def _sync(self, session_id: str, context: ProcessingContext) -> SyncResult:
        session = SessionStore(context.sessions_dir).load_session(session_id)
        deltas_store = metrics_store(context.sessions_dir, session_id)
        records_store = conversation_store(context.sessions_dir, session_id)
        pending_deltas = [delta for delta in deltas_store.read_all() if delta.syncStatus == "pending"]
        pending_records = [record for record in records_store.read_all() if record.status == "pending"]
        agent = session.agentName if session is not None else "unknown"

        if not pending_deltas and not pending_records:
            return SyncResult(success=True, message="No pending deltas to sync", metadata={"agent": agent})

        working_directory = (session.workingDirectory if session is not None else "") or context.working_directory
        fallback_branch = session.gitBranch if session is not None else None
        groups = group_by_branch(pending_deltas, fallback_branch)

        synced_ids: set[str] = set()
        failed_ids: set[str] = set()
        errors: list[str] = []
        for branch, deltas in groups.items():
            metric = aggregate_deltas(
                deltas,
                branch=branch,
                session=session,
                session_id=session_id,
                working_directory=working_directory,
                agent_version=self.sender.client.version,
            )
            ids = {delta.recordId for delta in deltas}
            try:
                await self.sender.send_metric(metric)
            except SyncRequestError as exc:
                logger.warning(f"Metrics sync for {session_id} branch {branch} failed: {exc}")
                failed_ids |= ids
                errors.append(str(exc))
                continue
            synced_ids |= ids

        if pending_deltas:
            self._mark_deltas(deltas_store, synced_ids, failed_ids)
            observability.record_sync_result("metrics", "success", len(synced_ids))
            if failed_ids:
                observability.record_sync_result("metrics", "failure", len(failed_ids))

        sent_records: set[str] = set()
        failed_record: Optional[str] = None
        for record in pending_records:
            try:
                await self.sender.send_conversation(record.recordId, record.payload)
            except SyncRequestError as exc:
                # Later turns wait so the backend never sees them out of order.
                logger.warning(f"Conversation sync for {session_id} stopped at {record.recordId}: {exc}")
                failed_record = record.recordId
                errors.append(str(exc))
                break
            sent_records.add(record.recordId)

        if pending_records:
            self._mark_records(records_store, sent_records, failed_record)
            observability.record_sync_result("conversations", "success", len(sent_records))
            if failed_record:
                observability.record_sync_result("conversations", "failure")

        metadata = {
            "agent": agent,
            "branchCount": len(groups),
            "metricsSynced": len(synced_ids),
            "metricsFailed": len(failed_ids),
            "conversationsSynced": len(sent_records),
            "conversationsFailed": 1 if failed_record else 0,
        }
        if errors:
            return SyncResult(success=False, message=f"Sync incomplete: {errors[0]}", metadata=metadata)
        logger.info(
            f"Synced {len(synced_ids)} delta(s) across {len(groups)} branch(es) "
            f"and {len(sent_records)} conversation record(s) for {session_id}"
        )
        return SyncResult(
            success=True,
            message=f"Synced {len(synced_ids)} delta(s) and {len(sent_records)} conversation record(s)",
            metadata=metadata,
        )

    @staticmethod
    def _mark_deltas(store, synced_ids: set[str], failed_ids: set[str]) -> None:
        now = utc_now_iso()

        def mutate(deltas: list[MetricDelta]) -> None:
            for delta in deltas:
                if delta.syncStatus != "pending":
                    continue
                if delta.recordId in synced_ids:
                    delta.syncStatus = "synced"
                    delta.syncAttempts += 1
                    delta.syncedAt = now
                elif delta.recordId in failed_ids:
                    delta.syncAttempts += 1

        store.update_records(mutate)

    @staticmethod
    def _mark_records(store, sent_ids: set[str], failed_id: Optional[str]) -> None:
        now = utc_now_iso()

        def mutate(records: list[ConversationPayloadRecord]) -> None:
            for record in records:
                if record.status != "pending":
                    continue
                if record.recordId in sent_ids:
                    record.status = "synced"
                    record.syncAttempts += 1
                    record.syncedAt = now
                elif record.recordId == failed_id:
                    record.syncAttempts += 1

        store.update_records(mutate)
