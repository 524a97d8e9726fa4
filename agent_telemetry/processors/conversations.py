"""Turn-by-turn conversation history extraction.

A turn runs from one user-initiated message up to the next one (or to a
compaction boundary). The cursor stored under the "conversations" key records
the last event consumed, so a turn interrupted by a boundary or still in
flight when the hook fired is resumed as a continuation record with the same
history index.
"""
from __future__ import annotations

import json
import logging
from typing import Optional

from agent_telemetry import observability
from agent_telemetry.date_utils import seconds_between, utc_now_iso
from agent_telemetry.db.record_store import conversation_store
from agent_telemetry.models import (
    ContentItem,
    ConversationPayload,
    ConversationPayloadRecord,
    Event,
    HistoryEntry,
    ParsedSession,
    ProcessingResult,
    SubagentTranscript,
    SyncCursor,
    Thought,
    TokenUsage,
)
from agent_telemetry.processors.base import ProcessingContext, SessionProcessor
from agent_telemetry.processors.events import (
    collect_tool_results,
    is_conversation_splitter,
    is_tool_result_only,
    is_turn_start,
    should_filter,
    text_of,
    tool_uses,
    unresolved_tool_uses,
    user_message_text,
)

logger = logging.getLogger("agent_telemetry.processors.conversations")

COMPACT_BOUNDARY_SUBTYPE = "compact_boundary"
API_ERROR_SUBTYPE = "api_error"


def is_turn_boundary(event: Event) -> bool:
    if is_turn_start(event) or is_conversation_splitter(event):
        return True
    return event.type == "system" and event.subtype == COMPACT_BOUNDARY_SUBTYPE


def is_api_error(event: Event) -> bool:
    return event.type == "system" and (event.subtype == API_ERROR_SUBTYPE or bool(event.error))


def _add_usage(total: TokenUsage, usage: Optional[TokenUsage]) -> None:
    if usage is None:
        return
    total.input += usage.input
    total.output += usage.output
    total.cacheRead += usage.cacheRead
    total.cacheCreation += usage.cacheCreation


def _is_failed_result(result: ContentItem) -> bool:
    return result.isError or (result.status or "").lower() == "error"


def tool_thought(item: ContentItem, result: Optional[ContentItem], parent_id: Optional[str] = None) -> Thought:
    return Thought(
        id=item.toolUseId or "",
        parent_id=parent_id,
        in_progress=result is None,
        input_text=json.dumps(item.input, ensure_ascii=False) if item.input else "",
        message=(result.output or "") if result is not None else "",
        author_type="Tool",
        author_name=item.toolName or "",
        error=result is not None and _is_failed_result(result),
    )


def subagent_thought(
    subagent: SubagentTranscript,
    invocation: ContentItem,
    result: ContentItem,
) -> tuple[Thought, TokenUsage]:
    """Summarize a sub-agent transcript as one Agent thought with its tool calls as children."""
    thought_id = f"agent-{subagent.agentId}"
    results = collect_tool_results(subagent.messages)
    usage = TokenUsage()
    texts: list[str] = []
    children: list[Thought] = []
    for event in subagent.messages:
        if event.type != "assistant":
            continue
        _add_usage(usage, event.usage or event.stepUsage)
        text = text_of(event, include_reasoning=True)
        if text:
            texts.append(text)
        for item in tool_uses(event):
            children.append(tool_thought(item, results.get(item.toolUseId or ""), parent_id=thought_id))

    timestamps = [event.timestamp for event in subagent.messages if event.timestamp]
    subagent_type = invocation.input.get("subagent_type")
    thought = Thought(
        id=thought_id,
        metadata={
            "agent_id": subagent.agentId,
            "slug": subagent.slug,
            "subagent_type": subagent_type,
            "start_timestamp": timestamps[0] if timestamps else None,
            "end_timestamp": timestamps[-1] if timestamps else None,
            "token_usage": usage.model_dump(),
        },
        input_text=str(invocation.input.get("prompt") or invocation.input.get("description") or ""),
        message="\n\n".join(texts),
        author_type="Agent",
        author_name=str(subagent_type or subagent.slug or "subagent"),
        error=_is_failed_result(result),
        children=children,
    )
    return thought, usage


def transform_turn(
    user_event: Event,
    events: list[Event],
    history_index: int,
    results: dict[str, ContentItem],
    subagents: dict[str, SubagentTranscript],
) -> list[HistoryEntry]:
    """Build the User entry and, when there is anything to report, the Assistant entry of one turn."""
    user_entry = HistoryEntry(
        role="User",
        message=user_message_text(user_event),
        message_raw=user_message_text(user_event),
        history_index=history_index,
        date=user_event.timestamp,
        file_names=[],
    )

    assistant_events = [event for event in events if event.type == "assistant"]
    final_event: Optional[Event] = None
    for event in reversed(assistant_events):
        if text_of(event) or event.error:
            final_event = event
            break

    tokens = TokenUsage()
    thoughts: list[Thought] = []
    for event in events:
        if event.type == "user" and event.isMeta:
            text = text_of(event)
            if text:
                thoughts.append(Thought(id=event.id, message=text, author_name="System", output_format="intermediate_response"))
            continue
        if event.type != "assistant":
            continue
        _add_usage(tokens, event.usage or event.stepUsage)
        is_final = event is final_event
        if event.error:
            thoughts.append(
                Thought(
                    id=event.id,
                    message=f"Error: {event.error}",
                    author_name=event.model or "assistant",
                    output_format="error",
                    error=True,
                    metadata={"error_type": "assistant_error"},
                )
            )
        for item in tool_uses(event):
            result = results.get(item.toolUseId or "")
            agent_id = result.metadata.get("agentId") if result is not None else None
            subagent = subagents.get(str(agent_id)) if agent_id else None
            if subagent is not None and result is not None:
                thought, sub_usage = subagent_thought(subagent, item, result)
                thoughts.append(thought)
                _add_usage(tokens, sub_usage)
            elif result is not None or not is_final:
                thoughts.append(tool_thought(item, result))
        text = text_of(event)
        if text and not is_final:
            thoughts.append(Thought(id=event.id, message=text, author_name=event.model or "assistant"))

    entries = [user_entry]
    api_errors = [event for event in events if is_api_error(event)]
    if final_event is not None:
        message = text_of(final_event) or f"Error: {final_event.error}"
        message_raw = message
        date = final_event.timestamp
        assistant_id: Optional[str] = final_event.messageId or final_event.id
    elif api_errors:
        first = api_errors[0].error or "Unknown error"
        count = len(api_errors)
        message_raw = f"Failed after {count} error(s)"
        message = f"{message_raw}: {first}"
        date = api_errors[-1].timestamp
        assistant_id = None
        for error_event in api_errors:
            status = error_event.metadata.get("status", "unknown")
            thoughts.append(
                Thought(
                    id=error_event.id,
                    message=f"API Error ({status}): {error_event.error or 'Unknown error'}",
                    author_name="API",
                    output_format="error",
                    error=True,
                    metadata={"error_type": "api_error", "status": status},
                )
            )
    elif thoughts:
        message = message_raw = ""
        date = events[-1].timestamp if events else user_event.timestamp
        assistant_id = None
    else:
        return entries

    entries.append(
        HistoryEntry(
            role="Assistant",
            message=message,
            message_raw=message_raw,
            history_index=history_index,
            date=date,
            response_time=seconds_between(user_event.timestamp, date),
            input_tokens=tokens.input,
            output_tokens=tokens.output,
            cache_creation_input_tokens=tokens.cacheCreation,
            cache_read_input_tokens=tokens.cacheRead,
            assistant_id=assistant_id,
            thoughts=thoughts or None,
        )
    )
    return entries


def _turn_incomplete(events: list[Event], results: dict[str, ContentItem]) -> bool:
    """A turn still being written: no response yet, or the last assistant message awaits tool results."""
    assistant_events = [event for event in events if event.type == "assistant"]
    if not assistant_events:
        return not any(is_api_error(event) for event in events)
    return bool(unresolved_tool_uses(assistant_events[-1], results))


class ConversationsProcessor(SessionProcessor):
    name = "conversations"
    priority = 2
    required_metadata = ("agentSessionId",)

    @staticmethod
    def resume_index(events: list[Event], cursor: SyncCursor) -> int:
        """First unconsumed event index; the stored identifier wins over the stored index."""
        if cursor.lastSyncedRecordIdentifier:
            for index, event in enumerate(events):
                if event.id == cursor.lastSyncedRecordIdentifier:
                    return index + 1
        return cursor.lastSyncedSequenceIndex + 1

    async def process(self, session: ParsedSession, context: ProcessingContext) -> ProcessingResult:
        store = context.session_store
        if store.load_session(context.session_id) is None:
            return ProcessingResult(
                success=False,
                message="Session metadata not found",
                metadata={"failureReason": "NO_SESSION_METADATA"},
            )

        events = session.messages
        conversation_id = str(session.metadata.get("agentSessionId") or context.agent_session_id)
        cursor = store.get_sync_cursor(context.session_id, self.name)
        start = self.resume_index(events, cursor)
        if start >= len(events):
            return ProcessingResult(success=True, message="No new events")

        results = collect_tool_results(events)
        subagents = {sub.agentId: sub for sub in session.subagents}
        turn_starts = [index for index, event in enumerate(events) if is_turn_start(event)]
        records_store = conversation_store(context.sessions_dir, context.session_id)
        # Pre-filter only; append_new re-checks ids under the store lock.
        known_ids = {record.recordId for record in records_store.read_all()}

        written = 0
        held_back = False
        while start < len(events):
            first_real = next(
                (
                    index
                    for index in range(start, len(events))
                    if not should_filter(events[index]) or is_tool_result_only(events[index])
                ),
                None,
            )
            if first_real is None:
                # Only noise left; consume it.
                self._advance(context, events, len(events) - 1)
                break

            previous_starts = [index for index in turn_starts if index <= first_real]
            if previous_starts and previous_starts[-1] == first_real:
                turn_start, continuation = first_real, False
            elif previous_starts:
                turn_start, continuation = previous_starts[-1], True
            else:
                later = [index for index in turn_starts if index > first_real]
                if not later:
                    self._advance(context, events, len(events) - 1)
                    break
                logger.debug(f"Skipping {later[0] - start} event(s) with no preceding user turn")
                self._advance(context, events, later[0] - 1)
                start = later[0]
                continue

            turn_end = next(
                (index for index in range(first_real + 1, len(events)) if is_turn_boundary(events[index])),
                len(events),
            )
            segment = events[start if continuation else turn_start + 1:turn_end]
            if turn_end == len(events) and _turn_incomplete(segment, results):
                logger.debug(f"Turn at event {turn_start} still in progress; holding back")
                held_back = True
                break

            history_index = turn_starts.index(turn_start)
            entries = transform_turn(events[turn_start], segment, history_index, results, subagents)
            if continuation:
                entries = [entry for entry in entries if entry.role == "Assistant"]

            last_event = events[turn_end - 1]
            if entries:
                record = ConversationPayloadRecord(
                    recordId=f"{conversation_id}:{last_event.id}",
                    timestamp=last_event.timestamp or utc_now_iso(),
                    isTurnContinuation=continuation,
                    historyIndices=[history_index],
                    messageCount=len(entries),
                    payload=ConversationPayload(conversationId=conversation_id, history=entries),
                )
                if record.recordId in known_ids or not records_store.append_new([record], key=lambda r: r.recordId):
                    logger.debug(f"Conversation record {record.recordId} already stored")
                else:
                    written += 1
                known_ids.add(record.recordId)
            self._advance(context, events, turn_end - 1)
            start = turn_end

        observability.record_records_extracted(self.name, written, agent=session.agentName)
        logger.info(f"Session {context.session_id}: wrote {written} conversation record(s)")
        return ProcessingResult(
            success=True,
            message=f"Wrote {written} conversation record(s)",
            recordsProcessed=written,
            metadata={"heldBack": held_back},
        )

    def _advance(self, context: ProcessingContext, events: list[Event], index: int) -> None:
        if index < 0:
            return
        context.session_store.update_sync_cursor(
            context.session_id,
            self.name,
            SyncCursor(lastSyncedRecordIdentifier=events[index].id, lastSyncedSequenceIndex=index),
        )
