"""Cross-process lock files built on exclusive create."""
from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path

logger = logging.getLogger("agent_telemetry.store")


class LockTimeoutError(RuntimeError):
    """Raised when a lock file cannot be acquired within the allotted time."""


class LockFile:
    """A lock held by the existence of a file; locks older than `stale_seconds` are broken."""

    def __init__(self, path: Path, *, stale_seconds: float = 300.0, timeout: float = 5.0, poll_interval: float = 0.02):
        self.path = path
        self.stale_seconds = stale_seconds
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._held = False

    def _is_stale(self) -> bool:
        try:
            age = time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return True
        return age > self.stale_seconds

    def try_acquire(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if not self._is_stale():
                    return False
                logger.warning(f"Breaking stale lock {self.path}")
                self.path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(json.dumps({"pid": os.getpid(), "acquiredAt": time.time()}))
            self._held = True
            return True
        return False

    def acquire(self, timeout: float | None = None) -> bool:
        deadline = time.monotonic() + (self.timeout if timeout is None else timeout)
        while True:
            if self.try_acquire():
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(self.poll_interval)

    def release(self) -> None:
        if not self._held:
            return
        self.path.unlink(missing_ok=True)
        self._held = False

    def __enter__(self) -> "LockFile":
        if not self.acquire():
            raise LockTimeoutError(f"Timed out waiting for lock {self.path}")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
