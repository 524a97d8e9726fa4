import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace

from agent_telemetry.db.api_client import SyncRequestError
from agent_telemetry.db.record_store import conversation_store, metrics_store
from agent_telemetry.db.session_store import SessionStore
from agent_telemetry.db.sync_engine import SyncEngine, aggregate_deltas
from agent_telemetry.models import (
    ConversationPayload,
    ConversationPayloadRecord,
    DeltaTokens,
    FileOperation,
    HistoryEntry,
    MetricDelta,
    Session,
    ToolStatusCount,
    UserPrompt,
)
from agent_telemetry.processors.base import ProcessingContext


class _FakeSender:
    def __init__(self, fail_metrics: bool = False, fail_conversation_at: int | None = None):
        self.client = SimpleNamespace(version="9.9.9")
        self.metrics = []
        self.conversations = []
        self.fail_metrics = fail_metrics
        self.fail_conversation_at = fail_conversation_at

    async def send_metric(self, metric):
        self.metrics.append(metric)
        if self.fail_metrics:
            raise SyncRequestError("API returned 503: unavailable", 503)
        return {"success": True}

    async def send_conversation(self, record_id, payload):
        if self.fail_conversation_at is not None and len(self.conversations) == self.fail_conversation_at:
            self.conversations.append(None)
            raise SyncRequestError("timeout")
        self.conversations.append(record_id)
        return {"success": True}


def _delta(record_id: str, branch: str | None, **extra) -> MetricDelta:
    return MetricDelta(recordId=record_id, sessionId="s1", gitBranch=branch, timestamp="2026-02-16T10:05:00.000Z", tokens=DeltaTokens(input=10, output=20), **extra)


def _record(record_id: str, index: int) -> ConversationPayloadRecord:
    return ConversationPayloadRecord(
        recordId=record_id,
        timestamp="2026-02-16T10:05:00.000Z",
        historyIndices=[index],
        messageCount=1,
        payload=ConversationPayload(conversationId="c1", history=[HistoryEntry(role="User", message="hi", history_index=index)]),
    )


class SyncEngineTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.sessions_dir = Path(tmpdir.name)
        SessionStore(self.sessions_dir).save_session(
            Session(
                sessionId="s1",
                agentName="claude",
                startTime="2026-02-16T10:00:00.000Z",
                workingDirectory="/work/acme/widgets",
                gitBranch="develop",
            )
        )
        self.deltas = metrics_store(self.sessions_dir, "s1")
        self.records = conversation_store(self.sessions_dir, "s1")
        self.context = ProcessingContext(session_id="s1", sessions_dir=self.sessions_dir)

    async def test_no_pending_records_is_success(self) -> None:
        result = await SyncEngine(_FakeSender()).sync("s1", self.context)
        self.assertTrue(result.success)
        self.assertEqual(result.message, "No pending deltas to sync")

    async def test_deltas_are_grouped_by_branch_and_marked_synced(self) -> None:
        self.deltas.append_records([_delta("a", "main"), _delta("b", "feature"), _delta("c", None), _delta("d", "main")])
        sender = _FakeSender()

        result = await SyncEngine(sender).sync("s1", self.context)

        self.assertTrue(result.success)
        self.assertEqual(result.metadata["branchCount"], 3)
        by_branch = {m.attributes["branch"]: m.attributes for m in sender.metrics}
        self.assertEqual(set(by_branch), {"main", "feature", "develop"})
        self.assertEqual(by_branch["main"]["record_ids"], ["a", "d"])
        self.assertEqual(by_branch["main"]["total_output_tokens"], 40)
        self.assertEqual(by_branch["main"]["repository"], "acme/widgets")
        for delta in self.deltas.read_all():
            self.assertEqual((delta.syncStatus, delta.syncAttempts), ("synced", 1))
            self.assertIsNotNone(delta.syncedAt)
        self.assertEqual(self.context.progress.stages(), ["synced"])

    async def test_failure_keeps_records_pending_and_resends_same_ids(self) -> None:
        self.deltas.append_records([_delta("a", "main"), _delta("b", "main")])
        failing = _FakeSender(fail_metrics=True)

        with self.assertLogs("agent_telemetry.sync", level="WARNING"):
            result = await SyncEngine(failing).sync("s1", self.context)

        self.assertFalse(result.success)
        for delta in self.deltas.read_all():
            self.assertEqual((delta.syncStatus, delta.syncAttempts), ("pending", 1))
            self.assertIsNone(delta.syncedAt)

        healthy = _FakeSender()
        await SyncEngine(healthy).sync("s1", self.context)
        self.assertEqual(healthy.metrics[0].attributes["record_ids"], failing.metrics[0].attributes["record_ids"])
        self.assertEqual({d.syncAttempts for d in self.deltas.read_all()}, {2})

    async def test_duplicate_delta_lines_are_counted_once(self) -> None:
        self.deltas.append_records([_delta("a", "main"), _delta("a", "main"), _delta("b", "main")])
        sender = _FakeSender()

        with self.assertLogs("agent_telemetry.sync", level="WARNING"):
            result = await SyncEngine(sender).sync("s1", self.context)

        self.assertTrue(result.success)
        attrs = sender.metrics[0].attributes
        self.assertEqual(attrs["record_ids"], ["a", "b"])
        self.assertEqual((attrs["total_input_tokens"], attrs["total_output_tokens"]), (20, 40))
        self.assertEqual({d.syncStatus for d in self.deltas.read_all()}, {"synced"})

    async def test_conversation_delivery_stops_at_first_failure(self) -> None:
        self.records.append_records([_record("c1:e1", 0), _record("c1:e2", 1), _record("c1:e3", 2)])
        sender = _FakeSender(fail_conversation_at=1)

        with self.assertLogs("agent_telemetry.sync", level="WARNING"):
            result = await SyncEngine(sender).sync("s1", self.context)

        self.assertFalse(result.success)
        states = [(r.recordId, r.status, r.syncAttempts) for r in self.records.read_all()]
        self.assertEqual(states, [("c1:e1", "synced", 1), ("c1:e2", "pending", 1), ("c1:e3", "pending", 0)])

    async def test_concurrent_sync_is_a_no_op(self) -> None:
        self.deltas.append_record(_delta("a", "main"))
        sender = _FakeSender()
        engine = SyncEngine(sender)

        lock_path = self.sessions_dir / "s1.sync.lock"
        lock_path.write_text("{}", encoding="utf-8")
        result = await engine.sync("s1", self.context)
        self.assertTrue(result.success)
        self.assertTrue(result.metadata["skipped"])
        self.assertEqual(sender.metrics, [])
        lock_path.unlink()

        SyncEngine._in_flight.add("s1")
        self.addCleanup(SyncEngine._in_flight.discard, "s1")
        result = await engine.sync("s1", self.context)
        self.assertEqual(result.message, "Sync already in progress")
        self.assertEqual(self.deltas.read_all()[0].syncStatus, "pending")

    async def test_stale_lock_is_broken(self) -> None:
        self.deltas.append_record(_delta("a", "main"))
        (self.sessions_dir / "s1.sync.lock").write_text("{}", encoding="utf-8")

        with self.assertLogs("agent_telemetry.store", level="WARNING"):
            result = await SyncEngine(_FakeSender(), lock_stale_seconds=-1).sync("s1", self.context)

        self.assertTrue(result.success)
        self.assertEqual(result.metadata["metricsSynced"], 1)
        self.assertFalse((self.sessions_dir / "s1.sync.lock").exists())


class AggregateDeltasTests(unittest.TestCase):
    def test_totals_models_and_file_operations(self) -> None:
        deltas = [
            _delta(
                "a",
                "main",
                tools={"Write": 1, "Edit": 2},
                toolStatus={"Write": ToolStatusCount(success=1), "Edit": ToolStatusCount(success=1, failure=1)},
                fileOperations=[
                    FileOperation(type="write", path="/w/a.py", linesAdded=10),
                    FileOperation(type="edit", path="/w/b.py", linesAdded=2, linesRemoved=1),
                ],
                models=["claude-opus"],
                userPrompts=[UserPrompt(text="go", count=2)],
            ),
            _delta("b", "main", models=["claude-sonnet"]),
            _delta("c", "main", models=["claude-sonnet"]),
        ]
        metric = aggregate_deltas(
            deltas,
            branch="main",
            session=None,
            session_id="s1",
            working_directory="/w",
            agent_version="1.0",
        )
        attrs = metric.attributes
        self.assertEqual(metric.name, "agent_usage_total")
        self.assertEqual(attrs["llm_model"], "claude-sonnet")
        self.assertEqual(attrs["total_user_prompts"], 2)
        self.assertEqual((attrs["total_tool_calls"], attrs["successful_tool_calls"], attrs["failed_tool_calls"]), (3, 2, 1))
        self.assertEqual((attrs["files_created"], attrs["files_modified"], attrs["files_deleted"]), (1, 1, 0))
        self.assertEqual((attrs["total_lines_added"], attrs["total_lines_removed"]), (12, 1))
        self.assertTrue(attrs["had_errors"])
        self.assertEqual(attrs["errors"], {"Edit": ["1 failed call(s)"]})
        self.assertEqual(attrs["record_ids"], ["a", "b", "c"])

    def test_repeated_record_id_is_counted_once(self) -> None:
        deltas = [
            _delta("a", "main", userPrompts=[UserPrompt(text="go", count=1)], tools={"Bash": 1}),
            _delta("a", "main", userPrompts=[UserPrompt(text="go", count=1)], tools={"Bash": 1}),
            _delta("b", "main"),
        ]
        with self.assertLogs("agent_telemetry.sync", level="WARNING") as logs:
            metric = aggregate_deltas(
                deltas,
                branch="main",
                session=None,
                session_id="s1",
                working_directory="/w",
                agent_version="1.0",
            )
        attrs = metric.attributes
        self.assertIn("duplicate metric delta a", logs.output[0])
        self.assertEqual((attrs["total_input_tokens"], attrs["total_output_tokens"]), (20, 40))
        self.assertEqual(attrs["total_user_prompts"], 1)
        self.assertEqual(attrs["total_tool_calls"], 1)
        self.assertEqual(attrs["record_ids"], ["a", "b"])


if __name__ == "__main__":
    unittest.main()
