#!/usr/bin/env python3
"""Discover recent transcripts for an agent and run the processor chain on each.

Usage:
  agent-telemetry-process --agent claude
  agent-telemetry-process --agent opencode --cwd /path/to/repo --limit 5 --sync
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os

from agent_telemetry import config, observability
from agent_telemetry.date_utils import utc_now_iso
from agent_telemetry.db.session_store import SessionStore
from agent_telemetry.db.sync_engine import SyncEngine
from agent_telemetry.models import Correlation, Session
from agent_telemetry.parsers.platforms.base import SessionParseError
from agent_telemetry.parsers.platforms.registry import get_adapter, list_agents
from agent_telemetry.processors.base import ProcessingContext

logger = logging.getLogger("agent_telemetry.scripts")


def _ensure_session(store: SessionStore, agent_name: str, descriptor) -> None:
    if store.load_session(descriptor.sessionId) is not None:
        return
    store.save_session(
        Session(
            sessionId=descriptor.sessionId,
            agentName=agent_name,
            startTime=descriptor.createdAt or utc_now_iso(),
            workingDirectory=descriptor.projectPath or "",
            correlation=Correlation(agentSessionId=descriptor.sessionId, agentSessionFile=descriptor.filePath),
        )
    )


async def _run(args: argparse.Namespace) -> int:
    adapter = get_adapter(args.agent)
    if adapter is None:
        print(f"Unsupported agent: {args.agent} (known: {', '.join(list_agents())})")
        return 1

    descriptors = adapter.discover_sessions(
        max_age_days=args.max_age_days,
        cwd=args.cwd or None,
        limit=args.limit or None,
        include_timestampless=args.include_timestampless,
    )
    if not descriptors:
        print("No sessions found.")
        return 0

    store = SessionStore(config.SESSIONS_DIR)
    engine = SyncEngine() if args.sync else None
    failures = 0
    for descriptor in descriptors:
        _ensure_session(store, adapter.agent_name, descriptor)
        context = ProcessingContext(
            session_id=descriptor.sessionId,
            agent_session_id=descriptor.sessionId,
            agent_session_file=descriptor.filePath,
            working_directory=descriptor.projectPath or "",
            debug=config.DEBUG,
            force=args.force,
        )
        try:
            result = await adapter.process_session(descriptor.filePath, descriptor.sessionId, context)
        except SessionParseError as e:
            failures += 1
            print(f"{descriptor.sessionId}: parse failed ({e})")
            continue
        line = f"{descriptor.sessionId}: records={result.totalRecords}"
        if result.failedProcessors:
            failures += 1
            line += f" failed={','.join(result.failedProcessors)}"
        if engine is not None:
            sync_result = await engine.sync(descriptor.sessionId, context)
            line += f" sync={'ok' if sync_result.success else 'failed'} ({sync_result.message})"
        print(line)
    return 1 if failures else 0


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--agent", default="claude", help="Agent transcript format to scan")
    parser.add_argument("--cwd", default="", help="Only sessions started in this directory")
    parser.add_argument("--max-age-days", type=int, default=config.DISCOVERY_MAX_AGE_DAYS)
    parser.add_argument("--limit", type=int, default=0)
    parser.add_argument("--include-timestampless", action="store_true")
    parser.add_argument("--force", action="store_true", help="Ignore the metrics cooldown")
    parser.add_argument("--sync", action="store_true", help="Sync pending records after processing")
    args = parser.parse_args()
    if args.cwd:
        args.cwd = os.path.abspath(args.cwd)

    logging.basicConfig(level=logging.DEBUG if config.DEBUG else logging.INFO)
    observability.initialize()
    try:
        return asyncio.run(_run(args))
    finally:
        observability.shutdown()


if __name__ == "__main__":
    raise SystemExit(main())
