"""Append-only JSONL record stores, one per session per record kind."""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Callable, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from agent_telemetry.db.locks import LockFile
from agent_telemetry.models import ConversationPayloadRecord, MetricDelta

logger = logging.getLogger("agent_telemetry.store")

RecordT = TypeVar("RecordT", bound=BaseModel)

METRICS_SUFFIX = "_metrics.jsonl"
CONVERSATION_SUFFIX = "_conversation.jsonl"


class RecordStore(Generic[RecordT]):
    """Line-delimited durable log of records.

    Appends are single `write` calls of one full line on a file opened in
    append mode. Status rewrites replace the whole file atomically. Both take
    the store's lock file so a rewrite never drops a concurrent append.
    """

    def __init__(self, path: Path, model: type[RecordT], *, lock_timeout: float = 5.0):
        self._path = path
        self._model = model
        self._lock_timeout = lock_timeout

    @property
    def file_path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def _lock(self) -> LockFile:
        return LockFile(self._path.with_name(self._path.name + ".lock"), timeout=self._lock_timeout, stale_seconds=60)

    @staticmethod
    def _serialize(record: BaseModel) -> str:
        return record.model_dump_json(exclude_none=True)

    def _needs_leading_newline(self) -> bool:
        # A crash mid-append can leave a partial last line; never glue a new record onto it.
        try:
            size = self._path.stat().st_size
        except FileNotFoundError:
            return False
        if size == 0:
            return False
        with self._path.open("rb") as handle:
            handle.seek(-1, os.SEEK_END)
            return handle.read(1) != b"\n"

    def _write_unlocked(self, records: list[RecordT]) -> None:
        payload = "".join(self._serialize(record) + "\n" for record in records)
        if self._needs_leading_newline():
            payload = "\n" + payload
        with self._path.open("a", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())

    def append_records(self, records: list[RecordT]) -> None:
        if not records:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock():
            self._write_unlocked(records)

    def append_record(self, record: RecordT) -> None:
        self.append_records([record])

    def append_new(
        self,
        records: list[RecordT],
        *,
        key: Callable[[RecordT], str],
        before_write: Callable[[list[RecordT], list[RecordT]], None] | None = None,
    ) -> list[RecordT]:
        """Append only the records whose `key` is not already stored; returns what was written.

        The stored keys are re-read under the lock, so concurrent writers of the
        same record never both append it. `before_write(new, stored)` runs under
        the same lock and may mutate the new records before they are written.
        """
        if not records:
            return []
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock():
            stored = self.read_all()
            seen = {key(record) for record in stored}
            fresh: list[RecordT] = []
            for record in records:
                record_key = key(record)
                if record_key in seen:
                    continue
                seen.add(record_key)
                fresh.append(record)
            if not fresh:
                logger.debug(f"All {len(records)} record(s) already present in {self._path.name}")
                return []
            if before_write is not None:
                before_write(fresh, stored)
            self._write_unlocked(fresh)
        return fresh

    def _parse_line(self, line: str) -> RecordT | None:
        try:
            return self._model.model_validate(json.loads(line))
        except (json.JSONDecodeError, ValidationError, TypeError):
            return None

    def read_all(self) -> list[RecordT]:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        records: list[RecordT] = []
        corrupted = 0
        for line in text.splitlines():
            if not line.strip():
                continue
            record = self._parse_line(line)
            if record is None:
                corrupted += 1
                continue
            records.append(record)
        if corrupted:
            logger.warning(f"Skipped {corrupted} corrupted record line(s) in {self._path}")
        return records

    def update_records(self, mutator: Callable[[list[RecordT]], None]) -> int:
        """Read-modify-rewrite the whole file; returns the number of records passed to `mutator`.

        Lines that do not parse are written back untouched in their original position.
        """
        if not self.exists():
            return 0
        with self._lock():
            lines = [line for line in self._path.read_text(encoding="utf-8").splitlines() if line.strip()]
            slots: list[RecordT | str] = []
            records: list[RecordT] = []
            for line in lines:
                record = self._parse_line(line)
                if record is None:
                    slots.append(line)
                else:
                    slots.append(record)
                    records.append(record)

            mutator(records)

            out_lines = [slot if isinstance(slot, str) else self._serialize(slot) for slot in slots]
            tmp_path = self._path.with_name(self._path.name + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                handle.write("".join(line + "\n" for line in out_lines))
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self._path)
        return len(records)


def metrics_store_path(sessions_dir: Path, session_id: str) -> Path:
    return sessions_dir / f"{session_id}{METRICS_SUFFIX}"


def conversation_store_path(sessions_dir: Path, session_id: str) -> Path:
    return sessions_dir / f"{session_id}{CONVERSATION_SUFFIX}"


def metrics_store(sessions_dir: Path, session_id: str) -> RecordStore[MetricDelta]:
    return RecordStore(metrics_store_path(sessions_dir, session_id), MetricDelta)


def conversation_store(sessions_dir: Path, session_id: str) -> RecordStore[ConversationPayloadRecord]:
    return RecordStore(conversation_store_path(sessions_dir, session_id), ConversationPayloadRecord)
