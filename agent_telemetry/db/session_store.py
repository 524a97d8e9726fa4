"""Session metadata and per-processor extraction cursor persistence."""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from agent_telemetry.date_utils import utc_now_iso
from agent_telemetry.db.locks import LockFile
from agent_telemetry.db.record_store import CONVERSATION_SUFFIX, METRICS_SUFFIX
from agent_telemetry.models import Session, SyncCursor

logger = logging.getLogger("agent_telemetry.store")

COMPLETED_PREFIX = "completed_"


class SessionStore:
    """Stores one JSON document per session under `sessions_dir`."""

    def __init__(self, sessions_dir: Path):
        self.sessions_dir = sessions_dir

    def session_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.json"

    def _completed_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{COMPLETED_PREFIX}{session_id}.json"

    def _resolve_path(self, session_id: str) -> Path:
        active = self.session_path(session_id)
        if active.exists():
            return active
        completed = self._completed_path(session_id)
        if completed.exists():
            return completed
        return active

    def _lock(self, session_id: str) -> LockFile:
        return LockFile(self.sessions_dir / f"{session_id}.json.lock", stale_seconds=60)

    def load_session(self, session_id: str) -> Optional[Session]:
        path = self._resolve_path(session_id)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        if not content.strip():
            return None
        try:
            return Session.model_validate(json.loads(content))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.error(f"Failed to load session metadata {path}: {e}")
            return None

    def _write(self, session: Session) -> None:
        path = self._resolve_path(session.sessionId)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        tmp_path.write_text(json.dumps(session.model_dump(exclude_none=True), indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    def save_session(self, session: Session) -> None:
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        with self._lock(session.sessionId):
            self._write(session)

    def update_session_status(self, session_id: str, status: str, reason: str | None = None) -> Optional[Session]:
        with self._lock(session_id):
            session = self.load_session(session_id)
            if session is None:
                logger.warning(f"Cannot update status of unknown session {session_id}")
                return None
            session.status = status  # type: ignore[assignment]
            session.reason = reason
            if status == "completed" and not session.endTime:
                session.endTime = utc_now_iso()
            self._write(session)
            return session

    def get_sync_cursor(self, session_id: str, processor: str) -> SyncCursor:
        session = self.load_session(session_id)
        if session is None:
            return SyncCursor()
        return session.sync.get(processor, SyncCursor())

    def update_sync_cursor(self, session_id: str, processor: str, cursor: SyncCursor) -> bool:
        """Persist a processor cursor; a lower sequence index than the stored one is never written."""
        with self._lock(session_id):
            session = self.load_session(session_id)
            if session is None:
                logger.warning(f"Cannot advance {processor} cursor of unknown session {session_id}")
                return False
            current = session.sync.get(processor)
            if current is not None and cursor.lastSyncedSequenceIndex < current.lastSyncedSequenceIndex:
                logger.warning(
                    f"Refusing to move {processor} cursor of {session_id} backwards "
                    f"({current.lastSyncedSequenceIndex} -> {cursor.lastSyncedSequenceIndex})"
                )
                return False
            session.sync[processor] = cursor
            self._write(session)
            return True

    def archive_session_files(self, session_id: str) -> list[Path]:
        """Rename the session document and its record stores with the completed prefix."""
        renamed: list[Path] = []
        for suffix in (".json", METRICS_SUFFIX, CONVERSATION_SUFFIX):
            source = self.sessions_dir / f"{session_id}{suffix}"
            if not source.exists():
                continue
            target = self.sessions_dir / f"{COMPLETED_PREFIX}{session_id}{suffix}"
            os.replace(source, target)
            renamed.append(target)
        if renamed:
            logger.info(f"Archived {len(renamed)} file(s) for session {session_id}")
        return renamed
