import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from agent_telemetry.parsers.platforms.base import MetadataValidationError
from agent_telemetry.parsers.platforms.opencode.parser import OpenCodeAdapter, message_error, model_string, token_usage_from
from agent_telemetry.parsers.platforms.opencode.paths import default_storage_path, detect_storage_layout
from agent_telemetry.processors.base import ProcessingContext

CREATED_MS = 1771236000000  # 2026-02-16T10:00:00Z


def _write(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")


class OpenCodeAdapterTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name)
        self.storage = self.root / "opencode" / "storage"
        self.session_file = self.storage / "session" / "proj1" / "ses_1.json"
        _write(
            self.session_file,
            {
                "id": "ses_1",
                "directory": "/work/acme/widgets",
                "version": "0.9.1",
                "time": {"created": CREATED_MS, "updated": CREATED_MS + 60000},
            },
        )
        _write(
            self.storage / "message" / "ses_1" / "msg_a.json",
            {"id": "msg_a", "sessionID": "ses_1", "role": "user", "time": {"created": CREATED_MS + 1000}},
        )
        _write(
            self.storage / "message" / "ses_1" / "msg_b.json",
            {
                "id": "msg_b",
                "sessionID": "ses_1",
                "role": "assistant",
                "providerID": "Anthropic",
                "modelID": "claude-sonnet-4",
                "time": {"created": CREATED_MS + 2000},
            },
        )
        parts = self.storage / "part"
        _write(parts / "msg_a" / "prt_1.json", {"id": "prt_1", "messageID": "msg_a", "sessionID": "ses_1", "type": "text", "text": "Fix the bug"})
        _write(parts / "msg_a" / "prt_2.json", {"id": "prt_2", "messageID": "msg_a", "sessionID": "ses_1", "type": "text", "text": "hidden", "synthetic": True})
        _write(parts / "msg_b" / "prt_3.json", {"id": "prt_3", "messageID": "msg_b", "sessionID": "ses_1", "type": "text", "text": "Patched it."})
        _write(
            parts / "msg_b" / "prt_4.json",
            {
                "id": "prt_4",
                "messageID": "msg_b",
                "sessionID": "ses_1",
                "type": "tool",
                "tool": "edit",
                "callID": "call_1",
                "state": {"status": "completed", "input": {"filePath": "/work/acme/widgets/app.py"}, "output": "ok", "metadata": {}},
            },
        )
        _write(
            parts / "msg_b" / "prt_5.json",
            {"id": "prt_5", "messageID": "msg_b", "sessionID": "ses_1", "type": "step-finish", "tokens": {"input": 50, "output": 7, "cache": {"read": 3, "write": 0}}},
        )
        _write(
            parts / "msg_b" / "prt_6.json",
            {"id": "prt_6", "messageID": "msg_b", "sessionID": "ses_1", "type": "step-finish", "tokens": {"input": 999, "output": 999}},
        )
        # Orphaned: stored under msg_b but declares another parent; and one from a foreign session.
        _write(parts / "msg_b" / "prt_7.json", {"id": "prt_7", "messageID": "msg_x", "sessionID": "ses_1", "type": "text", "text": "orphan"})
        _write(parts / "msg_b" / "prt_8.json", {"id": "prt_8", "messageID": "msg_b", "sessionID": "ses_9", "type": "text", "text": "foreign"})
        self.adapter = OpenCodeAdapter(storage_path=self.storage, processors=[])

    def test_parse_reconstructs_messages_and_drops_orphaned_parts(self) -> None:
        parsed = self.adapter.parse_session_file(self.session_file, "pipeline-1")

        self.assertEqual(parsed.metadata["storagePath"], str(self.storage))
        self.assertEqual(parsed.metadata["projectPath"], "/work/acme/widgets")
        self.assertEqual(parsed.agentVersion, "0.9.1")
        user_event, assistant_event = parsed.messages
        self.assertEqual(user_event.timestamp, "2026-02-16T10:00:01.000Z")
        self.assertEqual([item.text for item in user_event.content], ["Fix the bug"])

        self.assertEqual(assistant_event.model, "anthropic/claude-sonnet-4")
        self.assertIsNone(assistant_event.usage)
        self.assertEqual((assistant_event.stepUsage.input, assistant_event.stepUsage.output), (50, 7))
        texts = [item.text for item in assistant_event.content if item.type == "text"]
        self.assertEqual(texts, ["Patched it."])
        tool = next(item for item in assistant_event.content if item.type == "tool_use")
        self.assertEqual((tool.toolUseId, tool.toolName, tool.status, tool.isError), ("call_1", "edit", "completed", False))

    def test_user_text_falls_back_to_summary_title(self) -> None:
        _write(
            self.storage / "message" / "ses_1" / "msg_c.json",
            {"id": "msg_c", "sessionID": "ses_1", "role": "user", "summary": {"title": "Refactor"}, "time": {"created": CREATED_MS + 3000}},
        )
        parsed = self.adapter.parse_session_file(self.session_file, "pipeline-1")
        self.assertEqual(parsed.messages[-1].content[0].text, "Refactor")

    def test_missing_storage_path_is_reported_with_reason_code(self) -> None:
        parsed = self.adapter.parse_session_file(self.session_file, "pipeline-1")
        parsed.metadata.pop("storagePath")
        with self.assertRaises(MetadataValidationError) as ctx:
            self.adapter.validate_metadata(parsed, ["storagePath"])
        self.assertEqual(ctx.exception.reason, "NO_STORAGE_PATH")

    async def test_every_processor_fails_without_storage_path(self) -> None:
        adapter = OpenCodeAdapter(storage_path=self.storage)
        parsed = adapter.parse_session_file(self.session_file, "pipeline-1")
        parsed.metadata.pop("storagePath")
        context = ProcessingContext(session_id="pipeline-1", sessions_dir=self.root / "state", cache_dir=self.root / "cache")

        with patch.object(adapter, "parse_session_file", return_value=parsed), self.assertLogs("agent_telemetry.adapter", level="WARNING"):
            result = await adapter.process_session(self.session_file, "pipeline-1", context)

        self.assertEqual(result.failedProcessors, ["metrics", "conversations"])
        self.assertFalse((self.root / "state" / "pipeline-1_metrics.jsonl").exists())

    def test_discover_sessions(self) -> None:
        _write(self.storage / "session" / "proj2" / "ses_old.json", {"id": "ses_old", "directory": "/elsewhere", "time": {"created": 1000}})
        _write(self.storage / "session" / "proj2" / "ses_nots.json", {"id": "ses_nots", "directory": "/elsewhere"})

        found = self.adapter.discover_sessions(max_age_days=36500)
        self.assertEqual([d.sessionId for d in found], ["ses_1", "ses_old"])
        self.assertEqual(found[0].createdAt, "2026-02-16T10:00:00.000Z")

        found = self.adapter.discover_sessions(max_age_days=36500, include_timestampless=True, cwd="/elsewhere")
        self.assertEqual({d.sessionId for d in found}, {"ses_old", "ses_nots"})

        found = self.adapter.discover_sessions(max_age_days=36500, limit=1)
        self.assertEqual(len(found), 1)

    def test_assistant_error_with_null_data_uses_error_name(self) -> None:
        _write(
            self.storage / "message" / "ses_1" / "msg_c.json",
            {
                "id": "msg_c",
                "sessionID": "ses_1",
                "role": "assistant",
                "error": {"name": "APIError", "data": None},
                "time": {"created": CREATED_MS + 3000},
            },
        )
        parsed = self.adapter.parse_session_file(self.session_file, "pipeline-1")
        self.assertEqual(parsed.messages[-1].error, "APIError")

    def test_discover_sessions_warns_about_a_mixed_storage_layout(self) -> None:
        for name in ("message", "part"):
            (self.storage / name).mkdir(parents=True, exist_ok=True)
        (self.root / "opencode" / "project").mkdir()

        with self.assertLogs("agent_telemetry.adapter.opencode", level="WARNING") as logs:
            found = self.adapter.discover_sessions(max_age_days=36500)

        self.assertEqual([d.sessionId for d in found], ["ses_1"])
        self.assertIn("mixed layout", logs.output[0])


class OpenCodeHelpersTests(unittest.TestCase):
    def test_token_usage_requires_numeric_input_and_output(self) -> None:
        self.assertIsNone(token_usage_from({"input": 1}))
        self.assertIsNone(token_usage_from({"input": "1", "output": 2}))
        usage = token_usage_from({"input": 1, "output": 2, "reasoning": 4, "cache": {"read": 5, "write": 6}})
        self.assertEqual((usage.reasoning, usage.cacheRead, usage.cacheCreation), (4, 5, 6))

    def test_model_string(self) -> None:
        self.assertEqual(model_string("OpenAI", "gpt-5"), "openai/gpt-5")
        self.assertEqual(model_string(None, "gpt-5"), "gpt-5")
        self.assertIsNone(model_string("openai", ""))

    def test_message_error_tolerates_missing_or_null_data(self) -> None:
        self.assertIsNone(message_error(None))
        self.assertEqual(message_error({"name": "APIError", "data": None}), "APIError")
        self.assertEqual(message_error({"name": "APIError", "data": "boom"}), "APIError")
        self.assertEqual(message_error({"data": {"message": "rate limited"}}), "rate limited")
        self.assertEqual(message_error({}), "Unknown error")

    def test_default_storage_path_per_platform(self) -> None:
        home = Path("/home/dev")
        self.assertEqual(
            default_storage_path(env={"XDG_DATA_HOME": "/xdg"}, platform="darwin", home=home),
            Path("/xdg/opencode/storage"),
        )
        self.assertEqual(
            default_storage_path(env={}, platform="darwin", home=home),
            home / "Library" / "Application Support" / "opencode" / "storage",
        )
        self.assertEqual(
            default_storage_path(env={"LOCALAPPDATA": "/appdata"}, platform="win32", home=home),
            Path("/appdata/opencode/storage"),
        )
        self.assertEqual(default_storage_path(env={}, platform="linux", home=home), home / ".local/share/opencode/storage")

    def test_detect_storage_layout(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            storage = Path(tmpdir) / "storage"
            self.assertEqual(detect_storage_layout(storage)["layout"], "unknown")
            (Path(tmpdir) / "project").mkdir()
            self.assertEqual(detect_storage_layout(storage)["layout"], "legacy")
            for name in ("session", "message", "part"):
                (storage / name).mkdir(parents=True)
            self.assertEqual(detect_storage_layout(storage)["layout"], "mixed")
            (storage / "migration").write_text("2", encoding="utf-8")
            layout = detect_storage_layout(storage)
            self.assertEqual((layout["layout"], layout["migrationVersion"]), ("post-migration", 2))


if __name__ == "__main__":
    unittest.main()
