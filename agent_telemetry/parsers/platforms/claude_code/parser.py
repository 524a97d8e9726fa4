"""Normalize Claude Code JSONL transcripts into ParsedSession models."""
from __future__ import annotations

import hashlib
import logging
import time
from pathlib import Path
from typing import Any, Optional

from agent_telemetry import config
from agent_telemetry.date_utils import file_metadata_dates, iso_to_epoch, normalize_iso_date
from agent_telemetry.models import (
    ContentItem,
    Event,
    ParsedSession,
    SessionDescriptor,
    SubagentTranscript,
    TokenUsage,
)
from agent_telemetry.parsers.json_io import parse_jsonl_lines, read_text_with_retry
from agent_telemetry.parsers.platforms.base import (
    SessionAdapter,
    SessionParseError,
    finalize_discovery,
    metrics_snapshot,
    normalize_cwd,
)

logger = logging.getLogger("agent_telemetry.adapter.claude")

_CONVERSATIONAL_TYPES = {"user", "assistant", "system"}
_SYNTHETIC_MODEL = "<synthetic>"
_DISCOVERY_HEAD_LINES = 25


def _coerce_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _usage_from(raw: Any) -> Optional[TokenUsage]:
    if not isinstance(raw, dict):
        return None
    if not isinstance(raw.get("input_tokens"), (int, float)) or not isinstance(raw.get("output_tokens"), (int, float)):
        return None
    return TokenUsage(
        input=_coerce_int(raw.get("input_tokens")),
        output=_coerce_int(raw.get("output_tokens")),
        cacheRead=_coerce_int(raw.get("cache_read_input_tokens")),
        cacheCreation=_coerce_int(raw.get("cache_creation_input_tokens")),
    )


def _tool_result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n\n".join(
            str(block.get("text") or "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return ""


def _content_items(content: Any, tool_use_result: Any = None) -> list[ContentItem]:
    if isinstance(content, str):
        return [ContentItem(type="text", text=content)] if content else []
    if not isinstance(content, list):
        return []
    result_metadata = tool_use_result if isinstance(tool_use_result, dict) else {}
    items: list[ContentItem] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        kind = block.get("type")
        if kind == "text":
            items.append(ContentItem(type="text", text=str(block.get("text") or "")))
        elif kind == "thinking":
            items.append(ContentItem(type="reasoning", text=str(block.get("thinking") or "")))
        elif kind == "tool_use":
            tool_input = block.get("input")
            items.append(
                ContentItem(
                    type="tool_use",
                    toolUseId=block.get("id"),
                    toolName=str(block.get("name") or ""),
                    input=tool_input if isinstance(tool_input, dict) else {},
                )
            )
        elif kind == "tool_result":
            items.append(
                ContentItem(
                    type="tool_result",
                    toolUseId=block.get("tool_use_id"),
                    output=_tool_result_text(block.get("content")),
                    isError=block.get("is_error") is True,
                    metadata=dict(result_metadata),
                )
            )
    return items


def _find_error_message(payload: Any) -> str:
    """Depth-first search for the first `message`/`Message` string in an error payload."""
    if isinstance(payload, str):
        return payload
    if isinstance(payload, dict):
        for key in ("message", "Message"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
        for value in payload.values():
            found = _find_error_message(value)
            if found:
                return found
    return ""


def _assistant_error(entry: dict[str, Any], message: dict[str, Any]) -> Optional[str]:
    output = message.get("Output")
    if isinstance(output, dict) and output.get("__type"):
        return str(output["__type"])
    error = message.get("error")
    if error:
        return _find_error_message(error) or "Unknown error"
    if entry.get("isApiErrorMessage"):
        return _tool_result_text(message.get("content")) or str(entry.get("error") or "API error")
    return None


def _fallback_id(source: Path, index: int, entry: dict[str, Any]) -> str:
    digest = hashlib.sha1(f"{source.name}:{index}:{entry.get('timestamp', '')}".encode("utf-8")).hexdigest()
    return f"entry-{digest[:16]}"


def normalize_entries(
    entries: list[dict[str, Any]],
    *,
    source: Path,
    expected_session_id: Optional[str] = None,
    sidechain: bool = False,
) -> list[Event]:
    """Convert raw transcript entries into ordered events.

    Assistant fragments that share one API message id are merged into the event
    created for the first fragment, keeping the usage with the highest output
    count (streamed usage only grows).
    """
    events: list[Event] = []
    by_message_id: dict[str, Event] = {}
    for index, entry in enumerate(entries):
        kind = entry.get("type")
        if kind not in _CONVERSATIONAL_TYPES:
            continue
        entry_session = entry.get("sessionId")
        if expected_session_id and entry_session and entry_session != expected_session_id:
            logger.debug(f"Dropping entry from session {entry_session} in {source} (expected {expected_session_id})")
            continue

        entry_id = str(entry.get("uuid") or _fallback_id(source, index, entry))
        message = entry.get("message") if isinstance(entry.get("message"), dict) else {}
        timestamp = normalize_iso_date(entry.get("timestamp")) or str(entry.get("timestamp") or "")
        common: dict[str, Any] = {
            "timestamp": timestamp,
            "agentSessionId": str(entry_session or ""),
            "gitBranch": entry.get("gitBranch") or None,
            "isSidechain": sidechain or bool(entry.get("isSidechain")),
        }

        if kind == "assistant":
            message_id = str(message.get("id") or entry_id)
            items = _content_items(message.get("content"))
            usage = _usage_from(message.get("usage"))
            error = _assistant_error(entry, message)
            existing = by_message_id.get(message_id)
            if existing is not None:
                existing.content.extend(items)
                if usage is not None and (existing.usage is None or usage.output >= existing.usage.output):
                    existing.usage = usage
                if error and not existing.error:
                    existing.error = error
                continue
            model = message.get("model")
            event = Event(
                id=entry_id,
                messageId=message_id,
                type="assistant",
                model=model if isinstance(model, str) and model != _SYNTHETIC_MODEL else None,
                usage=usage,
                content=items,
                error=error,
                **common,
            )
            by_message_id[message_id] = event
            events.append(event)
        elif kind == "user":
            items = _content_items(message.get("content"), entry.get("toolUseResult"))
            is_result_only = bool(items) and all(item.type == "tool_result" for item in items)
            events.append(
                Event(
                    id=entry_id,
                    messageId=entry_id,
                    type="tool-result" if is_result_only else "user",
                    content=items,
                    isMeta=bool(entry.get("isMeta")),
                    **common,
                )
            )
        else:
            raw_content = entry.get("content")
            error_payload = entry.get("error")
            status = error_payload.get("status") if isinstance(error_payload, dict) else None
            events.append(
                Event(
                    id=entry_id,
                    messageId=entry_id,
                    type="system",
                    subtype=entry.get("subtype"),
                    content=[ContentItem(type="text", text=raw_content)] if isinstance(raw_content, str) and raw_content else [],
                    error=(_find_error_message(error_payload) or "Unknown error") if error_payload else None,
                    metadata={"status": status} if status is not None else {},
                    **common,
                )
            )
    return events


class ClaudeCodeAdapter(SessionAdapter):
    """Transcripts live at `<claude home>/projects/<encoded cwd>/<session id>.jsonl`.

    Sub-agent transcripts are stored beside them under
    `<session id>/subagents/agent-<agent id>.jsonl`.
    """

    agent_name = "claude"
    display_name = "Claude Code"
    metadata_fields = {
        "agentSessionId": (str, "NO_AGENT_SESSION_ID"),
        "projectPath": (str, "NO_PROJECT_PATH"),
        "transcriptPath": (str, "NO_TRANSCRIPT_PATH"),
    }

    def __init__(self, claude_home: Optional[Path] = None, processors=None):
        super().__init__(processors)
        self.claude_home = claude_home or config.CLAUDE_HOME

    @property
    def projects_dir(self) -> Path:
        return self.claude_home / "projects"

    def _read_entries(self, path: Path) -> Optional[list[dict[str, Any]]]:
        text = read_text_with_retry(path)
        if text is None:
            return None
        return parse_jsonl_lines(text, source=str(path))

    def parse_session_file(self, path: Path, session_id: str) -> ParsedSession:
        entries = self._read_entries(path)
        if entries is None:
            raise SessionParseError(f"Unable to read Claude transcript {path}")

        agent_session_id = next((str(e["sessionId"]) for e in entries if e.get("sessionId")), path.stem)
        events = normalize_entries(entries, source=path)
        subagents = self._load_subagents(path)

        first_cwd = next((e.get("cwd") for e in entries if isinstance(e.get("cwd"), str)), None)
        version = next((e.get("version") for e in reversed(entries) if isinstance(e.get("version"), str)), None)
        branch = next((e.get("gitBranch") for e in reversed(entries) if e.get("gitBranch")), None)
        timestamps = [event.timestamp for event in events if event.timestamp]
        metadata: dict[str, Any] = {
            "agentSessionId": agent_session_id,
            "transcriptPath": str(path),
            "projectPath": first_cwd or path.parent.name,
            "createdAt": timestamps[0] if timestamps else file_metadata_dates(path)["createdAt"],
            "updatedAt": timestamps[-1] if timestamps else file_metadata_dates(path)["updatedAt"],
        }
        if branch:
            metadata["gitBranch"] = branch
        if version:
            metadata["agentVersion"] = version

        logger.debug(f"Parsed Claude session {session_id}: {len(events)} events, {len(subagents)} sub-agents")
        return ParsedSession(
            sessionId=session_id,
            agentName=self.display_name,
            agentVersion=version,
            metadata=metadata,
            messages=events,
            subagents=subagents,
            metrics=metrics_snapshot([*events, *(e for sub in subagents for e in sub.messages)]),
        )

    def _load_subagents(self, session_path: Path) -> list[SubagentTranscript]:
        subagents_dir = session_path.parent / session_path.stem / "subagents"
        if not subagents_dir.is_dir():
            return []
        transcripts: list[SubagentTranscript] = []
        for agent_file in sorted(subagents_dir.glob("agent-*.jsonl")):
            entries = self._read_entries(agent_file)
            if not entries:
                logger.debug(f"Skipping empty or unreadable sub-agent transcript {agent_file}")
                continue
            first = entries[0]
            agent_id = str(first.get("agentId") or agent_file.stem[len("agent-"):])
            slug = next((str(e["slug"]) for e in entries if e.get("slug")), None)
            transcripts.append(
                SubagentTranscript(
                    agentId=agent_id,
                    filePath=str(agent_file),
                    slug=slug,
                    messages=normalize_entries(
                        entries,
                        source=agent_file,
                        expected_session_id=first.get("sessionId"),
                        sidechain=True,
                    ),
                )
            )
        return transcripts

    def _describe(self, path: Path) -> Optional[SessionDescriptor]:
        head: list[str] = []
        try:
            with path.open("r", encoding="utf-8") as handle:
                for _ in range(_DISCOVERY_HEAD_LINES):
                    line = handle.readline()
                    if not line:
                        break
                    head.append(line)
        except OSError as exc:
            logger.debug(f"Skipping unreadable transcript {path}: {exc}")
            return None
        entries = parse_jsonl_lines("".join(head), source=str(path))
        created = next((normalize_iso_date(e.get("timestamp")) for e in entries if e.get("timestamp")), "")
        cwd = next((e.get("cwd") for e in entries if isinstance(e.get("cwd"), str)), None)
        dates = file_metadata_dates(path)
        return SessionDescriptor(
            sessionId=next((str(e["sessionId"]) for e in entries if e.get("sessionId")), path.stem),
            filePath=str(path),
            projectPath=cwd,
            createdAt=created or dates["createdAt"],
            updatedAt=dates["updatedAt"] or None,
            agentName=self.agent_name,
        )

    def discover_sessions(
        self,
        max_age_days: int = 30,
        cwd: Optional[str] = None,
        limit: Optional[int] = None,
        include_timestampless: bool = False,
    ) -> list[SessionDescriptor]:
        if not self.projects_dir.is_dir():
            logger.debug(f"Claude projects directory not found: {self.projects_dir}")
            return []
        cutoff = time.time() - max_age_days * 86400
        wanted_cwd = normalize_cwd(cwd)
        results: list[SessionDescriptor] = []
        for project_dir in sorted(p for p in self.projects_dir.iterdir() if p.is_dir()):
            for path in project_dir.glob("*.jsonl"):
                if path.name.startswith("agent-"):
                    continue
                descriptor = self._describe(path)
                if descriptor is None:
                    continue
                created_epoch = iso_to_epoch(descriptor.createdAt)
                if not created_epoch and not include_timestampless:
                    continue
                if created_epoch and created_epoch < cutoff:
                    continue
                if wanted_cwd and descriptor.projectPath and normalize_cwd(descriptor.projectPath) != wanted_cwd:
                    continue
                results.append(descriptor)
        return finalize_discovery(results, limit)
