#!/usr/bin/env python3
"""Lifecycle hook entry point: reads one hook payload as JSON from stdin.

Usage:
  echo '{"hook_event_name": "Stop", "session_id": "...", "transcript_path": "..."}' | agent-telemetry-hook
  agent-telemetry-hook --agent opencode < payload.json

Always exits 0 so the calling agent is never blocked.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from agent_telemetry import config, observability
from agent_telemetry.lifecycle import handle_hook_event

logger = logging.getLogger("agent_telemetry.lifecycle")


async def _run(payload: dict, print_summary: bool) -> int:
    observability.initialize()
    try:
        summary = await handle_hook_event(payload)
    finally:
        observability.shutdown()
    if print_summary:
        print(json.dumps(summary, indent=2, default=str))
    return 0


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--agent", default="", help="Agent whose transcript the payload refers to (default: claude)")
    parser.add_argument("--event", default="", help="Override hook_event_name from the payload")
    parser.add_argument("--print-summary", action="store_true", help="Print the dispatch summary as JSON")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if config.DEBUG else logging.INFO)

    try:
        payload = json.load(sys.stdin)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Ignoring hook invocation with unreadable payload: {e}")
        return 0
    if not isinstance(payload, dict):
        logger.warning("Ignoring hook invocation with non-object payload")
        return 0
    if args.agent:
        payload["agent"] = args.agent
    if args.event:
        payload["hook_event_name"] = args.event
    return asyncio.run(_run(payload, args.print_summary))


if __name__ == "__main__":
    raise SystemExit(main())
