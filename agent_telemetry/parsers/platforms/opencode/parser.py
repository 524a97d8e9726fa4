"""Normalize OpenCode split-file storage into ParsedSession models.

Layout under the storage root:
  session/<projectId>/<sessionId>.json
  message/<sessionId>/<messageId>.json
  part/<messageId>/<partId>.json
"""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Optional

from agent_telemetry.date_utils import epoch_ms_to_iso
from agent_telemetry.models import ContentItem, Event, ParsedSession, SessionDescriptor, TokenUsage
from agent_telemetry.parsers.json_io import read_json_with_retry
from agent_telemetry.parsers.platforms.base import (
    SessionAdapter,
    SessionParseError,
    finalize_discovery,
    metrics_snapshot,
    normalize_cwd,
)
from agent_telemetry.parsers.platforms.opencode.paths import detect_storage_layout, resolve_storage_path

logger = logging.getLogger("agent_telemetry.adapter.opencode")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value == value


def token_usage_from(raw: Any) -> Optional[TokenUsage]:
    """Usage is valid only when both input and output are numeric."""
    if not isinstance(raw, dict) or not _is_number(raw.get("input")) or not _is_number(raw.get("output")):
        return None
    cache = raw.get("cache") if isinstance(raw.get("cache"), dict) else {}
    return TokenUsage(
        input=int(raw["input"]),
        output=int(raw["output"]),
        reasoning=int(raw["reasoning"]) if _is_number(raw.get("reasoning")) else 0,
        cacheRead=int(cache["read"]) if _is_number(cache.get("read")) else 0,
        cacheCreation=int(cache["write"]) if _is_number(cache.get("write")) else 0,
    )


def model_string(provider_id: Any, model_id: Any) -> Optional[str]:
    model = model_id.strip() if isinstance(model_id, str) else ""
    if not model:
        return None
    provider = provider_id.strip().lower() if isinstance(provider_id, str) else ""
    return f"{provider}/{model}" if provider else model


def message_error(error: Any) -> Optional[str]:
    """Error text of a message; `data` may be absent, null or a non-object."""
    if not isinstance(error, dict):
        return None
    data = error.get("data")
    message = data.get("message") if isinstance(data, dict) else None
    return str(message or error.get("name") or "Unknown error")


def _created_ms(doc: dict[str, Any]) -> Optional[float]:
    times = doc.get("time") if isinstance(doc.get("time"), dict) else {}
    created = times.get("created")
    return float(created) if _is_number(created) else None


def load_parts(storage: Path, message_id: str, expected_session_id: Optional[str]) -> list[dict[str, Any]]:
    """Parts of one message, ordered by part id; orphaned or foreign parts are dropped."""
    parts_dir = storage / "part" / message_id
    if not parts_dir.is_dir():
        return []
    parts: list[dict[str, Any]] = []
    for part_file in parts_dir.glob("*.json"):
        part = read_json_with_retry(part_file)
        if not isinstance(part, dict):
            continue
        part_id = str(part.get("id") or part_file.stem)
        if part.get("messageID") != message_id:
            logger.debug(f"Dropping orphaned part {part_id}: messageID {part.get('messageID')} != {message_id}")
            continue
        if expected_session_id and part.get("sessionID") != expected_session_id:
            logger.debug(f"Dropping part {part_id}: sessionID {part.get('sessionID')} != {expected_session_id}")
            continue
        part.setdefault("id", part_id)
        parts.append(part)
    return sorted(parts, key=lambda item: str(item.get("id")))


def _user_content(message: dict[str, Any], parts: list[dict[str, Any]]) -> list[ContentItem]:
    texts = [
        str(part.get("text") or "")
        for part in parts
        if part.get("type") == "text" and not part.get("ignored") and not part.get("synthetic")
    ]
    combined = "\n".join(text for text in texts if text.strip())
    if not combined:
        summary = message.get("summary") if isinstance(message.get("summary"), dict) else {}
        combined = str(summary.get("title") or "")
    return [ContentItem(type="text", text=combined)] if combined else []


def _assistant_content(parts: list[dict[str, Any]]) -> tuple[list[ContentItem], Optional[TokenUsage]]:
    items: list[ContentItem] = []
    step_usage: Optional[TokenUsage] = None
    for part in parts:
        kind = part.get("type")
        if kind == "text" and not part.get("synthetic"):
            items.append(ContentItem(type="text", text=str(part.get("text") or "")))
        elif kind == "reasoning":
            items.append(ContentItem(type="reasoning", text=str(part.get("text") or "")))
        elif kind == "tool":
            state = part.get("state") if isinstance(part.get("state"), dict) else {}
            status = str(state.get("status") or "").lower()
            tool_input = state.get("input")
            state_metadata = state.get("metadata")
            output = state.get("output") if status != "error" else state.get("error")
            items.append(
                ContentItem(
                    type="tool_use",
                    toolUseId=str(part.get("callID") or part.get("id")),
                    toolName=str(part.get("tool") or ""),
                    input=tool_input if isinstance(tool_input, dict) else {},
                    output=output if isinstance(output, str) else None,
                    status=status or None,
                    isError=status == "error",
                    metadata=state_metadata if isinstance(state_metadata, dict) else {},
                )
            )
        elif kind == "step-finish" and step_usage is None:
            # First valid step-finish in part-id order.
            step_usage = token_usage_from(part.get("tokens"))
    return items, step_usage


class OpenCodeAdapter(SessionAdapter):
    agent_name = "opencode"
    display_name = "OpenCode"
    metadata_fields = {
        "agentSessionId": (str, "NO_AGENT_SESSION_ID"),
        "storagePath": (str, "NO_STORAGE_PATH"),
        "projectPath": (str, "NO_PROJECT_PATH"),
    }
    required_metadata = ("storagePath",)

    def __init__(self, storage_path: Optional[Path] = None, processors=None):
        super().__init__(processors)
        self._storage_path = storage_path

    @property
    def storage_path(self) -> Optional[Path]:
        if self._storage_path is not None:
            return self._storage_path if self._storage_path.is_dir() else None
        return resolve_storage_path()

    def _message_event(
        self,
        storage: Path,
        message: dict[str, Any],
        agent_session_id: str,
        fallback_timestamp: str,
    ) -> Optional[Event]:
        message_id = message.get("id")
        role = message.get("role")
        if not isinstance(message_id, str) or role not in {"user", "assistant"}:
            return None
        parts = load_parts(storage, message_id, agent_session_id)
        created = _created_ms(message)
        timestamp = epoch_ms_to_iso(created) if created is not None else fallback_timestamp
        if role == "user":
            return Event(
                id=message_id,
                messageId=message_id,
                type="user",
                timestamp=timestamp,
                agentSessionId=agent_session_id,
                content=_user_content(message, parts),
            )

        items, step_usage = _assistant_content(parts)
        return Event(
            id=message_id,
            messageId=message_id,
            type="assistant",
            timestamp=timestamp,
            agentSessionId=agent_session_id,
            model=model_string(message.get("providerID"), message.get("modelID")),
            usage=token_usage_from(message.get("tokens")),
            stepUsage=step_usage,
            content=items,
            error=message_error(message.get("error")),
        )

    def parse_session_file(self, path: Path, session_id: str) -> ParsedSession:
        doc = read_json_with_retry(path)
        if not isinstance(doc, dict):
            raise SessionParseError(f"Unable to read OpenCode session file {path}")
        if path.parent.parent.name != "session":
            logger.warning(f"Unexpected OpenCode session path layout: {path}")

        storage = path.parent.parent.parent
        agent_session_id = str(doc.get("id") or path.stem)
        times = doc.get("time") if isinstance(doc.get("time"), dict) else {}
        created_at = epoch_ms_to_iso(times.get("created"))
        updated_at = epoch_ms_to_iso(times.get("updated"))

        raw_messages: list[dict[str, Any]] = []
        messages_dir = storage / "message" / agent_session_id
        if messages_dir.is_dir():
            for message_file in messages_dir.glob("*.json"):
                message = read_json_with_retry(message_file)
                if isinstance(message, dict):
                    raw_messages.append(message)
        raw_messages.sort(key=lambda item: _created_ms(item) or 0)

        events: list[Event] = []
        for message in raw_messages:
            event = self._message_event(storage, message, agent_session_id, updated_at)
            if event is not None:
                events.append(event)

        metadata: dict[str, Any] = {
            "agentSessionId": agent_session_id,
            "storagePath": str(storage),
            "projectPath": doc.get("directory") or path.parent.name,
            "createdAt": created_at or None,
            "updatedAt": updated_at or None,
        }
        if isinstance(doc.get("version"), str):
            metadata["agentVersion"] = doc["version"]

        logger.debug(f"Parsed OpenCode session {session_id}: {len(events)} messages")
        return ParsedSession(
            sessionId=session_id,
            agentName=self.display_name,
            agentVersion=metadata.get("agentVersion"),
            metadata=metadata,
            messages=events,
            metrics=metrics_snapshot(events),
        )

    def discover_sessions(
        self,
        max_age_days: int = 30,
        cwd: Optional[str] = None,
        limit: Optional[int] = None,
        include_timestampless: bool = False,
    ) -> list[SessionDescriptor]:
        storage = self.storage_path
        sessions_dir = storage / "session" if storage else None
        if storage is not None:
            layout = detect_storage_layout(storage)
            if layout["layout"] in {"legacy", "mixed"}:
                logger.warning(
                    f"OpenCode storage at {storage} has a {layout['layout']} layout; "
                    f"legacy sessions under {', '.join(layout['legacyPaths'])} are not read"
                )
            else:
                logger.debug(f"OpenCode storage layout: {layout['layout']} (migration {layout['migrationVersion']})")
        if sessions_dir is None or not sessions_dir.is_dir():
            logger.debug("OpenCode sessions directory not found")
            return []

        cutoff_ms = (time.time() - max_age_days * 86400) * 1000
        wanted_cwd = normalize_cwd(cwd)
        results: list[SessionDescriptor] = []
        for project_dir in sorted(p for p in sessions_dir.iterdir() if p.is_dir()):
            for session_file in project_dir.glob("*.json"):
                doc = read_json_with_retry(session_file)
                if not isinstance(doc, dict):
                    logger.debug(f"Skipping unreadable OpenCode session {session_file}")
                    continue
                created = _created_ms(doc)
                if created is None and not include_timestampless:
                    continue
                if created is not None and created < cutoff_ms:
                    continue
                directory = doc.get("directory") if isinstance(doc.get("directory"), str) else None
                if wanted_cwd and directory and normalize_cwd(directory) != wanted_cwd:
                    continue
                times = doc.get("time") if isinstance(doc.get("time"), dict) else {}
                results.append(
                    SessionDescriptor(
                        sessionId=session_file.stem,
                        filePath=str(session_file),
                        projectPath=directory,
                        createdAt=epoch_ms_to_iso(created) if created is not None else "",
                        updatedAt=epoch_ms_to_iso(times.get("updated")) or None,
                        agentName=self.agent_name,
                    )
                )
        return finalize_discovery(results, limit)
