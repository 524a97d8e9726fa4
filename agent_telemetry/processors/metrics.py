"""Incremental usage/tool/file-operation extraction into metric deltas."""
from __future__ import annotations

import logging
import time
from collections import Counter
from pathlib import Path
from typing import Any, Iterable, Optional

from agent_telemetry import observability
from agent_telemetry.db.record_store import metrics_store
from agent_telemetry.models import (
    ContentItem,
    DeltaTokens,
    Event,
    FileOperation,
    MetricDelta,
    ParsedSession,
    ProcessingResult,
    TokenUsage,
    ToolStatusCount,
    UserPrompt,
)
from agent_telemetry.processors.base import ProcessingContext, SessionProcessor
from agent_telemetry.processors.events import (
    collect_tool_results,
    is_turn_start,
    tool_uses,
    unresolved_tool_uses,
    user_message_text,
)
from agent_telemetry.processors.file_operations import extract_file_operations

logger = logging.getLogger("agent_telemetry.processors.metrics")


def cooldown_marker_path(cache_dir: Path, session_id: str) -> Path:
    return cache_dir / f"{session_id}_last_processed"


def within_cooldown(marker: Path, cooldown_seconds: int, now: Optional[float] = None) -> bool:
    if cooldown_seconds <= 0:
        return False
    try:
        last = marker.stat().st_mtime
    except FileNotFoundError:
        return False
    return ((now if now is not None else time.time()) - last) < cooldown_seconds


def touch_marker(marker: Path) -> None:
    marker.parent.mkdir(parents=True, exist_ok=True)
    marker.write_text(str(int(time.time() * 1000)), encoding="utf-8")


def tool_succeeded(result: ContentItem) -> bool:
    if result.isError:
        return False
    return (result.status or "").lower() != "error"


def resolve_usage(event: Event) -> tuple[Optional[TokenUsage], str]:
    """Return the event's usage and where it came from: message, step-finish or none."""
    if event.usage is not None:
        return event.usage, "message"
    if event.stepUsage is not None:
        return event.stepUsage, "step-finish"
    return None, "none"


def collect_user_prompts(events: Iterable[Event]) -> list[str]:
    prompts: list[str] = []
    for event in events:
        if not is_turn_start(event):
            continue
        text = user_message_text(event).strip()
        if text:
            prompts.append(text)
    return prompts


def new_user_prompts(current: list[str], stored: Iterable[MetricDelta]) -> list[UserPrompt]:
    """Prompts in `current` not yet attached to a stored delta, counted per occurrence."""
    already = Counter()
    for delta in stored:
        for prompt in delta.userPrompts or []:
            already[prompt.text] += prompt.count
    remaining = Counter(current)
    remaining.subtract(already)
    prompts: list[UserPrompt] = []
    seen: set[str] = set()
    for text in current:
        if text in seen:
            continue
        seen.add(text)
        if remaining[text] > 0:
            prompts.append(UserPrompt(text=text, count=remaining[text]))
    return prompts


class MetricsProcessor(SessionProcessor):
    """Emits one MetricDelta per assistant event with resolved usage and no pending tool calls."""

    name = "metrics"
    priority = 1
    required_metadata = ("agentSessionId",)

    def build_delta(
        self,
        event: Event,
        usage: TokenUsage,
        results: dict[str, ContentItem],
        session_id: str,
        agent_session_id: str,
        default_branch: Optional[str],
    ) -> MetricDelta:
        tools: dict[str, int] = {}
        tool_status: dict[str, ToolStatusCount] = {}
        file_operations: list[FileOperation] = []
        for item in tool_uses(event):
            name = item.toolName or "unknown"
            tools[name] = tools.get(name, 0) + 1
            result = results.get(item.toolUseId or "")
            if result is None:
                continue
            status = tool_status.setdefault(name, ToolStatusCount())
            if tool_succeeded(result):
                status.success += 1
                file_operations.extend(extract_file_operations(name, item.input, result.metadata))
            else:
                status.failure += 1

        return MetricDelta(
            recordId=event.id,
            sessionId=session_id,
            agentSessionId=agent_session_id,
            timestamp=event.timestamp,
            gitBranch=event.gitBranch or default_branch,
            tokens=DeltaTokens(
                input=usage.input,
                output=usage.output,
                cacheRead=usage.cacheRead or None,
                cacheCreation=usage.cacheCreation or None,
            ),
            tools=tools or None,
            toolStatus=tool_status or None,
            fileOperations=file_operations or None,
            models=[event.model] if event.model else None,
        )

    async def process(self, session: ParsedSession, context: ProcessingContext) -> ProcessingResult:
        marker = cooldown_marker_path(context.cache_dir, context.session_id)
        if not context.force and within_cooldown(marker, context.metrics_cooldown_seconds):
            logger.debug(f"Metrics for {context.session_id} processed recently; skipping")
            return ProcessingResult(success=True, message="Skipped (cooldown)", metadata={"cooldown": True})

        store = metrics_store(context.sessions_dir, context.session_id)
        # Pre-filter only; append_new re-checks ids under the store lock.
        stored_ids = {delta.recordId for delta in store.read_all()}

        agent_session_id = str(session.metadata.get("agentSessionId") or context.agent_session_id)
        default_branch = session.metadata.get("gitBranch")
        event_streams: list[list[Event]] = [session.messages] + [sub.messages for sub in session.subagents]

        stats: dict[str, Any] = {
            "deltasWritten": 0,
            "deltasSkipped": 0,
            "messagesWithTokens": 0,
            "messagesWithoutTokens": 0,
            "tokensFromMessage": 0,
            "tokensFromStepFinish": 0,
            "unresolvedToolMessages": 0,
        }
        deltas: list[MetricDelta] = []
        for events in event_streams:
            results = collect_tool_results(events)
            for event in events:
                if event.type != "assistant":
                    continue
                usage, source = resolve_usage(event)
                if usage is None:
                    stats["messagesWithoutTokens"] += 1
                    continue
                stats["messagesWithTokens"] += 1
                if source == "step-finish":
                    stats["tokensFromStepFinish"] += 1
                    logger.debug(f"Event {event.id}: tokens taken from step-finish")
                else:
                    stats["tokensFromMessage"] += 1

                pending = unresolved_tool_uses(event, results)
                if pending:
                    stats["unresolvedToolMessages"] += 1
                    logger.debug(f"Event {event.id}: {len(pending)} tool call(s) still pending; deferring")
                    continue
                if event.id in stored_ids:
                    stats["deltasSkipped"] += 1
                    continue
                stored_ids.add(event.id)
                deltas.append(
                    self.build_delta(event, usage, results, context.session_id, agent_session_id, default_branch)
                )

        if stats["messagesWithoutTokens"]:
            logger.warning(
                f"Data quality: {stats['messagesWithoutTokens']} assistant message(s) in session "
                f"{context.session_id} have no token usage and were excluded from metrics"
            )
            observability.record_data_quality("missing_tokens", stats["messagesWithoutTokens"], agent=session.agentName)

        current_prompts = collect_user_prompts(session.messages)

        def attach_prompts(fresh: list[MetricDelta], on_disk: list[MetricDelta]) -> None:
            prompts = new_user_prompts(current_prompts, on_disk)
            if prompts:
                fresh[0].userPrompts = prompts

        written = store.append_new(deltas, key=lambda delta: delta.recordId, before_write=attach_prompts)
        stats["deltasSkipped"] += len(deltas) - len(written)
        for delta in written:
            observability.record_tokens(
                model=(delta.models or ["unknown"])[0],
                token_input=delta.tokens.input,
                token_output=delta.tokens.output,
                agent=session.agentName,
            )
        if written:
            # The cooldown starts only after a write.
            touch_marker(marker)

        stats["deltasWritten"] = len(written)
        assistant_total = stats["messagesWithTokens"] + stats["messagesWithoutTokens"]
        stats["tokenCoverageRate"] = round(stats["messagesWithTokens"] / assistant_total, 4) if assistant_total else 1.0
        observability.record_records_extracted(self.name, len(written), agent=session.agentName)
        logger.info(f"Session {context.session_id}: wrote {len(written)} metric delta(s), skipped {stats['deltasSkipped']}")
        return ProcessingResult(
            success=True,
            message=f"Wrote {len(written)} metric delta(s)",
            recordsProcessed=len(written),
            metadata=stats,
        )
