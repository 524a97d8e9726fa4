"""Processor contract and the per-invocation processing context."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from agent_telemetry import config
from agent_telemetry.db.session_store import SessionStore
from agent_telemetry.models import ParsedSession, ProcessingResult

logger = logging.getLogger("agent_telemetry.processors")


@dataclass
class ProgressEvent:
    stage: str
    details: dict[str, Any] = field(default_factory=dict)


class ProgressChannel:
    """Progress events for one invocation; listeners never break the pipeline."""

    def __init__(self) -> None:
        self.events: list[ProgressEvent] = []
        self._listeners: list[Callable[[ProgressEvent], None]] = []

    def subscribe(self, listener: Callable[[ProgressEvent], None]) -> None:
        self._listeners.append(listener)

    def emit(self, stage: str, **details: Any) -> None:
        event = ProgressEvent(stage=stage, details=details)
        self.events.append(event)
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as exc:  # noqa: BLE001
                logger.debug(f"Progress listener failed on {stage}: {exc}")

    def stages(self) -> list[str]:
        return [event.stage for event in self.events]


@dataclass
class ProcessingContext:
    session_id: str
    agent_session_id: str = ""
    agent_session_file: str = ""
    working_directory: str = ""
    sessions_dir: Path = field(default_factory=lambda: config.SESSIONS_DIR)
    cache_dir: Path = field(default_factory=lambda: config.CACHE_DIR)
    debug: bool = False
    force: bool = False
    metrics_cooldown_seconds: int = field(default_factory=lambda: config.METRICS_COOLDOWN_SECONDS)
    progress: ProgressChannel = field(default_factory=ProgressChannel)

    @property
    def session_store(self) -> SessionStore:
        return SessionStore(self.sessions_dir)


class SessionProcessor:
    """Base class for extraction processors; lower `priority` runs first."""

    name = "processor"
    priority = 100

    def should_process(self, session: ParsedSession) -> bool:
        return bool(session.messages)

    async def process(self, session: ParsedSession, context: ProcessingContext) -> ProcessingResult:
        raise NotImplementedError
