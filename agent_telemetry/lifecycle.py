"""Routes agent lifecycle hook events onto the processing and sync pipeline.

Nothing raised inside a step leaves `handle_hook_event`: a telemetry failure
must never block the agent that fired the hook.
"""
from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Any, Optional

from agent_telemetry import config
from agent_telemetry.date_utils import iso_to_epoch, utc_now_iso
from agent_telemetry.db.api_client import MetricsSender, SyncRequestError
from agent_telemetry.db.session_store import SessionStore
from agent_telemetry.db.sync_engine import SyncEngine
from agent_telemetry.models import Correlation, Session
from agent_telemetry.parsers.platforms.base import SessionParseError
from agent_telemetry.parsers.platforms.registry import get_adapter
from agent_telemetry.processors.base import ProcessingContext, ProgressChannel

logger = logging.getLogger("agent_telemetry.lifecycle")

SESSION_START = "SessionStart"
STOP = "Stop"
SUBAGENT_STOP = "SubagentStop"
SESSION_END = "SessionEnd"


def detect_git_branch(working_directory: str) -> Optional[str]:
    if not working_directory or not Path(working_directory).is_dir():
        return None
    try:
        result = subprocess.run(
            ["git", "-C", working_directory, "rev-parse", "--abbrev-ref", "HEAD"],
            capture_output=True,
            text=True,
            check=False,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"git branch detection failed in {working_directory}: {e}")
        return None
    branch = result.stdout.strip()
    if result.returncode != 0 or not branch or branch == "HEAD":
        return None
    return branch


class LifecycleDispatcher:
    def __init__(
        self,
        *,
        sessions_dir: Optional[Path] = None,
        cache_dir: Optional[Path] = None,
        sender: Optional[MetricsSender] = None,
        sync_engine: Optional[SyncEngine] = None,
        sync_on_stop: Optional[bool] = None,
    ):
        self.sessions_dir = sessions_dir or config.SESSIONS_DIR
        self.cache_dir = cache_dir or config.CACHE_DIR
        self.sender = sender or MetricsSender()
        self.sync_engine = sync_engine or SyncEngine(self.sender)
        self.sync_on_stop = config.SYNC_ON_STOP if sync_on_stop is None else sync_on_stop
        self.store = SessionStore(self.sessions_dir)

    def _context(self, event: dict[str, Any], session_id: str, progress: ProgressChannel, *, force: bool) -> ProcessingContext:
        return ProcessingContext(
            session_id=session_id,
            agent_session_id=str(event.get("session_id") or ""),
            agent_session_file=str(event.get("transcript_path") or ""),
            working_directory=str(event.get("cwd") or ""),
            sessions_dir=self.sessions_dir,
            cache_dir=self.cache_dir,
            debug=config.DEBUG,
            force=force,
            progress=progress,
        )

    async def handle(self, event: dict[str, Any], progress: Optional[ProgressChannel] = None) -> dict[str, Any]:
        progress = progress or ProgressChannel()
        name = str(event.get("hook_event_name") or "")
        session_id = str(event.get("telemetry_session_id") or event.get("session_id") or "")
        summary: dict[str, Any] = {"event": name, "sessionId": session_id}
        if not session_id:
            logger.warning(f"Ignoring {name or 'hook'} event without a session id")
            summary["ignored"] = True
            return summary

        progress.subscribe(
            lambda update: logger.debug(f"Session {session_id}: {update.stage} {update.details or ''}".rstrip())
        )
        if name == SESSION_START:
            await self._step(summary, "start", self._start(event, session_id))
        elif name in (STOP, SUBAGENT_STOP):
            context = self._context(event, session_id, progress, force=False)
            await self._step(summary, "process", self._process(event, context))
            if self.sync_on_stop:
                await self._step(summary, "sync", self._sync(context))
        elif name == SESSION_END:
            context = self._context(event, session_id, progress, force=True)
            await self._step(summary, "process", self._process(event, context))
            await self._step(summary, "sync", self._sync(context))
            sync = summary.get("sync") or {}
            delivered = bool(sync.get("success")) and not (sync.get("metadata") or {}).get("skipped")
            await self._step(summary, "end", self._end(event, session_id, archive=delivered))
        else:
            logger.debug(f"Ignoring unsupported hook event {name!r}")
            summary["ignored"] = True
        summary["stages"] = progress.stages()
        return summary

    async def _step(self, summary: dict[str, Any], key: str, awaitable) -> None:
        try:
            summary[key] = await awaitable
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"Lifecycle step {key} failed for {summary.get('sessionId')}: {exc}")
            summary[key] = {"success": False, "message": str(exc)}

    def _adapter_for(self, event: dict[str, Any]):
        agent = str(event.get("agent") or "claude")
        adapter = get_adapter(agent)
        if adapter is None:
            raise ValueError(f"Unsupported agent {agent!r}")
        return adapter

    async def _start(self, event: dict[str, Any], session_id: str) -> dict[str, Any]:
        adapter = self._adapter_for(event)
        working_directory = str(event.get("cwd") or "")
        session = self.store.load_session(session_id)
        if session is None:
            session = Session(
                sessionId=session_id,
                agentName=adapter.agent_name,
                provider=str(event.get("provider") or ""),
                project=config.PROJECT or None,
                model=event.get("model") or None,
                startTime=utc_now_iso(),
                workingDirectory=working_directory,
                gitBranch=detect_git_branch(working_directory),
                correlation=Correlation(
                    agentSessionId=str(event.get("session_id") or ""),
                    agentSessionFile=str(event.get("transcript_path") or ""),
                ),
            )
            self.store.save_session(session)
            logger.info(f"Created session {session_id} for {adapter.display_name}")
        try:
            await self.sender.send_session_start(session, reason=event.get("source"))
        except SyncRequestError as exc:
            logger.warning(f"Session start metric for {session_id} not sent: {exc}")
            return {"success": False, "message": str(exc)}
        return {"success": True, "message": "Session started"}

    async def _process(self, event: dict[str, Any], context: ProcessingContext) -> dict[str, Any]:
        adapter = self._adapter_for(event)
        session = self.store.load_session(context.session_id)
        path = context.agent_session_file or (session.correlation.agentSessionFile if session else "")
        if session is not None:
            context.agent_session_id = context.agent_session_id or session.correlation.agentSessionId
            context.working_directory = context.working_directory or session.workingDirectory
        if not path:
            return {"success": False, "message": "No transcript path available"}
        try:
            result = await adapter.process_session(path, context.session_id, context)
        except SessionParseError as exc:
            logger.warning(f"Transcript for {context.session_id} unreadable: {exc}")
            return {"success": False, "message": str(exc)}
        return result.model_dump()

    async def _sync(self, context: ProcessingContext) -> dict[str, Any]:
        result = await self.sync_engine.sync(context.session_id, context)
        return result.model_dump()

    async def _end(self, event: dict[str, Any], session_id: str, *, archive: bool = True) -> dict[str, Any]:
        session = self.store.load_session(session_id)
        if session is None:
            return {"success": False, "message": "Session metadata not found"}
        reason = event.get("reason") or None
        duration_ms = int(max(0.0, iso_to_epoch(utc_now_iso()) - iso_to_epoch(session.startTime)) * 1000)
        metric_sent = True
        try:
            await self.sender.send_session_end(session, "completed", duration_ms, reason=reason)
        except SyncRequestError as exc:
            logger.warning(f"Session end metric for {session_id} not sent: {exc}")
            metric_sent = False
        self.store.update_session_status(session_id, "completed", reason)
        if archive:
            archived = self.store.archive_session_files(session_id)
        else:
            # Pending records stay under their active names for the next sync.
            logger.warning(f"Final sync for {session_id} did not complete; leaving its files unarchived")
            archived = []
        return {
            "success": metric_sent,
            "message": "Session completed",
            "archived": [path.name for path in archived],
        }


async def handle_hook_event(event: dict[str, Any], progress: Optional[ProgressChannel] = None, **kwargs) -> dict[str, Any]:
    """Handle one hook payload with a dispatcher built from configuration (or `kwargs`)."""
    return await LifecycleDispatcher(**kwargs).handle(event, progress)
