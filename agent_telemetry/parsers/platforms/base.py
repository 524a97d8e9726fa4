"""Adapter contract shared by every transcript format."""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Iterable, Optional

from agent_telemetry import observability
from agent_telemetry.date_utils import iso_to_epoch
from agent_telemetry.models import (
    AggregatedResult,
    Event,
    ParsedSession,
    ProcessingResult,
    ProcessorSummary,
    SessionDescriptor,
    SessionMetricsSnapshot,
    TokenUsage,
)
from agent_telemetry.processors.base import ProcessingContext, SessionProcessor

logger = logging.getLogger("agent_telemetry.adapter")


class SessionParseError(ValueError):
    """The root transcript could not be read or decoded after retries."""


class MetadataValidationError(ValueError):
    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


def normalize_cwd(value: str | None) -> str:
    return (value or "").rstrip("/\\")


def finalize_discovery(results: list[SessionDescriptor], limit: Optional[int]) -> list[SessionDescriptor]:
    """Newest first, then truncated to `limit` when positive."""
    ordered = sorted(results, key=lambda item: iso_to_epoch(item.createdAt), reverse=True)
    if limit and limit > 0:
        return ordered[:limit]
    return ordered


def metrics_snapshot(events: Iterable[Event]) -> SessionMetricsSnapshot:
    tokens = TokenUsage()
    tools: dict[str, int] = {}
    for event in events:
        usage = event.usage or event.stepUsage
        if usage is not None:
            tokens.input += usage.input
            tokens.output += usage.output
            tokens.cacheRead += usage.cacheRead
            tokens.cacheCreation += usage.cacheCreation
            tokens.reasoning += usage.reasoning
        for item in event.content:
            if item.type == "tool_use" and item.toolName:
                tools[item.toolName] = tools.get(item.toolName, 0) + 1
    return SessionMetricsSnapshot(tokens=tokens, tools=tools)


def default_processors() -> list[SessionProcessor]:
    from agent_telemetry.processors.conversations import ConversationsProcessor
    from agent_telemetry.processors.metrics import MetricsProcessor

    return [MetricsProcessor(), ConversationsProcessor()]


class SessionAdapter:
    """Discovers, normalizes and processes the transcripts of one agent format.

    Subclasses implement `discover_sessions` and `parse_session_file`, and
    declare the type and failure reason code of every metadata field they
    attach in `metadata_fields`.
    """

    agent_name = ""
    display_name = ""
    # field -> (expected type, reason code reported when missing or mistyped)
    metadata_fields: dict[str, tuple[type, str]] = {
        "agentSessionId": (str, "NO_AGENT_SESSION_ID"),
    }
    # Fields every processor of this adapter depends on.
    required_metadata: tuple[str, ...] = ()

    def __init__(self, processors: Optional[list[SessionProcessor]] = None):
        self._processors: list[SessionProcessor] = []
        for processor in default_processors() if processors is None else processors:
            self.register_processor(processor)

    @property
    def processors(self) -> list[SessionProcessor]:
        return list(self._processors)

    def register_processor(self, processor: SessionProcessor) -> None:
        self._processors.append(processor)
        self._processors.sort(key=lambda item: item.priority)
        logger.debug(f"[{self.agent_name}] Registered processor {processor.name} (priority {processor.priority})")

    def discover_sessions(
        self,
        max_age_days: int = 30,
        cwd: Optional[str] = None,
        limit: Optional[int] = None,
        include_timestampless: bool = False,
    ) -> list[SessionDescriptor]:
        raise NotImplementedError

    def parse_session_file(self, path: Path, session_id: str) -> ParsedSession:
        raise NotImplementedError

    def validate_metadata(self, session: ParsedSession, keys: Iterable[str]) -> None:
        """Raise MetadataValidationError for the first requested field that is absent or mistyped."""
        for key in keys:
            expected, reason = self.metadata_fields.get(key, (str, f"NO_{key.upper()}"))
            value: Any = session.metadata.get(key)
            if value is None or not isinstance(value, expected) or (isinstance(value, str) and not value.strip()):
                raise MetadataValidationError(
                    reason,
                    f"Session {session.sessionId} metadata field '{key}' is missing or not a {expected.__name__}",
                )

    async def _run_processor(
        self,
        processor: SessionProcessor,
        session: ParsedSession,
        context: ProcessingContext,
    ) -> ProcessingResult:
        required = tuple(dict.fromkeys((*getattr(processor, "required_metadata", ()), *self.required_metadata)))
        try:
            self.validate_metadata(session, required)
        except MetadataValidationError as exc:
            logger.warning(f"[{self.agent_name}] {processor.name} skipped: {exc} ({exc.reason})")
            return ProcessingResult(success=False, message=str(exc), metadata={"failureReason": exc.reason})
        return await processor.process(session, context)

    async def process_session(self, path: Path | str, session_id: str, context: ProcessingContext) -> AggregatedResult:
        """Parse once, then run every registered processor in priority order.

        Only SessionParseError escapes; processor failures are captured per processor.
        """
        t0 = time.monotonic()
        with observability.start_span("agent_telemetry.process_session", {"agent": self.agent_name, "session_id": session_id}):
            try:
                parsed = self.parse_session_file(Path(path), session_id)
            except SessionParseError:
                observability.record_parser_failure(self.agent_name, reason="unreadable")
                raise
            if not context.agent_session_id:
                context.agent_session_id = str(parsed.metadata.get("agentSessionId") or "")
            context.progress.emit("parsed", sessionId=session_id, messages=len(parsed.messages), subagents=len(parsed.subagents))

            summaries: dict[str, ProcessorSummary] = {}
            failed: list[str] = []
            total_records = 0
            for processor in self._processors:
                try:
                    if not processor.should_process(parsed):
                        logger.debug(f"[{self.agent_name}] Processor {processor.name} skipped")
                        continue
                    result = await self._run_processor(processor, parsed, context)
                except Exception as exc:  # noqa: BLE001
                    logger.exception(f"[{self.agent_name}] Processor {processor.name} raised: {exc}")
                    result = ProcessingResult(success=False, message=str(exc) or type(exc).__name__)

                summaries[processor.name] = ProcessorSummary(
                    success=result.success,
                    message=result.message,
                    recordsProcessed=result.recordsProcessed,
                )
                total_records += result.recordsProcessed
                if not result.success:
                    failed.append(processor.name)
                    logger.warning(f"[{self.agent_name}] Processor {processor.name} failed: {result.message}")
                context.progress.emit(
                    "processor",
                    name=processor.name,
                    success=result.success,
                    recordsProcessed=result.recordsProcessed,
                )

        aggregated = AggregatedResult(
            success=not failed,
            processors=summaries,
            totalRecords=total_records,
            failedProcessors=failed,
        )
        observability.record_processing(
            "process_session",
            "success" if aggregated.success else "failure",
            (time.monotonic() - t0) * 1000,
            agent=self.agent_name,
        )
        return aggregated
