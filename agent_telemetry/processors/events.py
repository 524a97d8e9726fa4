"""Classification helpers over normalized events shared by the processors."""
from __future__ import annotations

import re
from typing import Iterable

from agent_telemetry.models import ContentItem, Event

_COMMAND_NAME_PATTERN = re.compile(r"<command-name>\s*(/[^<\n]+?)\s*</command-name>", re.IGNORECASE)

SPLITTER_COMMANDS = ("/clear",)
FILTERED_COMMANDS = ("/compact", "/compress")
NOISE_PREFIXES = (
    "Caveat: The messages below were generated by the user while running local commands",
    "<local-command-caveat>",
    "Unknown slash command:",
    "<local-command-stdout>",
    "[Request interrupted by user",
)

# Inline tool states; anything else (pending, running) is still in flight.
TERMINAL_TOOL_STATUSES = {"completed", "error"}


def text_of(event: Event, *, include_reasoning: bool = False, separator: str = "\n\n") -> str:
    kinds = {"text", "reasoning"} if include_reasoning else {"text"}
    return separator.join(item.text for item in event.content if item.type in kinds and item.text)


def extract_command(text: str) -> str | None:
    match = _COMMAND_NAME_PATTERN.search(text or "")
    return match.group(1).strip() if match else None


def has_command(event: Event, commands: Iterable[str]) -> bool:
    if event.type != "user":
        return False
    wanted = set(commands)
    for item in event.content:
        if item.type == "text" and extract_command(item.text) in wanted:
            return True
    return False


def is_tool_result_only(event: Event) -> bool:
    if event.type == "tool-result":
        return True
    if event.type != "user":
        return False
    has_result = any(item.type == "tool_result" for item in event.content)
    has_text = any(item.type == "text" and item.text.strip() for item in event.content)
    return has_result and not has_text


def is_conversation_splitter(event: Event) -> bool:
    return has_command(event, SPLITTER_COMMANDS)


def is_noise(event: Event) -> bool:
    """Slash-command bookkeeping, local-command output and interruption markers."""
    if event.type != "user":
        return False
    if has_command(event, FILTERED_COMMANDS):
        return True
    text = text_of(event)
    return bool(text) and text.startswith(NOISE_PREFIXES)


def should_filter(event: Event) -> bool:
    if event.type == "system":
        return True
    if event.type == "user" and event.isMeta:
        return True
    return is_conversation_splitter(event) or is_noise(event) or is_tool_result_only(event)


def is_turn_start(event: Event) -> bool:
    return event.type == "user" and not should_filter(event)


def user_message_text(event: Event) -> str:
    """User-visible prompt text with slash-command wrappers reduced to the command."""
    parts: list[str] = []
    for item in event.content:
        if item.type != "text":
            continue
        parts.append(extract_command(item.text) or item.text)
    return "\n\n".join(parts)


def collect_tool_results(events: Iterable[Event]) -> dict[str, ContentItem]:
    """Map tool-use id to its terminal result item.

    Results come from `tool_result` items, or from the tool-use item itself when
    the transcript format records the terminal state inline.
    """
    results: dict[str, ContentItem] = {}
    for event in events:
        for item in event.content:
            if not item.toolUseId:
                continue
            if item.type == "tool_result":
                results[item.toolUseId] = item
            elif item.type == "tool_use" and (item.status or "").lower() in TERMINAL_TOOL_STATUSES:
                results.setdefault(item.toolUseId, item)
    return results


def tool_uses(event: Event) -> list[ContentItem]:
    return [item for item in event.content if item.type == "tool_use"]


def unresolved_tool_uses(event: Event, results: dict[str, ContentItem]) -> list[ContentItem]:
    return [item for item in tool_uses(event) if not item.toolUseId or item.toolUseId not in results]
