"""Session adapter registry keyed by agent name."""
from __future__ import annotations

from typing import Callable, Optional

from agent_telemetry.parsers.platforms.base import SessionAdapter

_FACTORIES: dict[str, Callable[[], SessionAdapter]] = {}
_ALIASES: dict[str, str] = {}


def register_adapter(agent_name: str, factory: Callable[[], SessionAdapter], *aliases: str) -> None:
    key = agent_name.strip().lower()
    _FACTORIES[key] = factory
    for alias in aliases:
        _ALIASES[alias.strip().lower()] = key


def get_adapter(agent_name: str) -> Optional[SessionAdapter]:
    """Return a fresh adapter for `agent_name` (or one of its aliases), or None when unsupported."""
    key = (agent_name or "").strip().lower()
    key = _ALIASES.get(key, key)
    factory = _FACTORIES.get(key)
    return factory() if factory else None


def list_agents() -> list[str]:
    return sorted(_FACTORIES)


def _register_builtin_adapters() -> None:
    from agent_telemetry.parsers.platforms.claude_code.parser import ClaudeCodeAdapter
    from agent_telemetry.parsers.platforms.opencode.parser import OpenCodeAdapter

    register_adapter("claude", ClaudeCodeAdapter, "claude-code", "claude_code")
    register_adapter("opencode", OpenCodeAdapter, "open-code")


_register_builtin_adapters()
