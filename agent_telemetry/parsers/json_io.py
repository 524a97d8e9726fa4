"""Tolerant readers for files an agent may still be writing."""
from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger("agent_telemetry.parsers")

# Sleep after failed attempts 1, 2 and 3; attempt 4 is the last.
READ_RETRY_DELAYS_SECONDS = (0.05, 0.1, 0.2)
READ_MAX_ATTEMPTS = len(READ_RETRY_DELAYS_SECONDS) + 1


def read_json_with_retry(
    path: Path,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> Any | None:
    """Read and decode a JSON file, retrying while a concurrent writer may be mid-flush.

    Only a missing file or a partial/malformed document is retried. Any other
    error (permissions, directories, decoding) fails immediately. Returns None
    when every attempt is exhausted.
    """
    for attempt in range(READ_MAX_ATTEMPTS):
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (FileNotFoundError, json.JSONDecodeError) as exc:
            if attempt < READ_MAX_ATTEMPTS - 1:
                delay = READ_RETRY_DELAYS_SECONDS[attempt]
                logger.debug(f"Retrying read of {path} in {delay:.2f}s ({type(exc).__name__})")
                sleep(delay)
        except (OSError, UnicodeDecodeError) as exc:
            logger.debug(f"Non-retryable read error for {path}: {exc}")
            return None
    return None


def read_text_with_retry(
    path: Path,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> str | None:
    """Read a line-delimited transcript; only a missing file is retried."""
    for attempt in range(READ_MAX_ATTEMPTS):
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            if attempt < READ_MAX_ATTEMPTS - 1:
                sleep(READ_RETRY_DELAYS_SECONDS[attempt])
        except (OSError, UnicodeDecodeError) as exc:
            logger.debug(f"Non-retryable read error for {path}: {exc}")
            return None
    return None


def parse_jsonl_lines(text: str, *, source: str = "") -> list[dict[str, Any]]:
    """Decode JSON-Lines text, skipping blank and corrupted lines."""
    entries: list[dict[str, Any]] = []
    corrupted = 0
    for line in text.splitlines():
        token = line.strip()
        if not token:
            continue
        try:
            value = json.loads(token)
        except json.JSONDecodeError:
            corrupted += 1
            continue
        if isinstance(value, dict):
            entries.append(value)
        else:
            corrupted += 1
    if corrupted:
        logger.warning(f"Skipped {corrupted} corrupted line(s) in {source or 'JSONL input'}")
    return entries
