import tempfile
import unittest
from pathlib import Path

from agent_telemetry.db.record_store import RecordStore, metrics_store
from agent_telemetry.models import DeltaTokens, MetricDelta


def _delta(record_id: str, output: int = 5) -> MetricDelta:
    return MetricDelta(recordId=record_id, sessionId="s1", tokens=DeltaTokens(input=1, output=output))


class RecordStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.sessions_dir = Path(tmpdir.name)
        self.store = metrics_store(self.sessions_dir, "s1")

    def test_append_and_read_preserve_order(self) -> None:
        self.assertFalse(self.store.exists())
        self.store.append_records([_delta("a"), _delta("b")])
        self.store.append_record(_delta("c"))

        self.assertTrue(self.store.exists())
        self.assertEqual(self.store.file_path, self.sessions_dir / "s1_metrics.jsonl")
        self.assertEqual([d.recordId for d in self.store.read_all()], ["a", "b", "c"])
        self.assertFalse(self.store.file_path.with_name("s1_metrics.jsonl.lock").exists())

    def test_append_new_writes_only_unseen_keys(self) -> None:
        self.store.append_records([_delta("a"), _delta("b")])
        seen_by_hook: list[list[str]] = []

        def hook(fresh: list[MetricDelta], stored: list[MetricDelta]) -> None:
            seen_by_hook.append([d.recordId for d in stored])
            fresh[0].syncAttempts = 7

        written = self.store.append_new(
            [_delta("b"), _delta("c"), _delta("c", output=9), _delta("d")],
            key=lambda d: d.recordId,
            before_write=hook,
        )

        self.assertEqual([d.recordId for d in written], ["c", "d"])
        self.assertEqual(seen_by_hook, [["a", "b"]])
        records = self.store.read_all()
        self.assertEqual([d.recordId for d in records], ["a", "b", "c", "d"])
        self.assertEqual((records[2].tokens.output, records[2].syncAttempts), (5, 7))
        self.assertFalse(self.store.file_path.with_name("s1_metrics.jsonl.lock").exists())

    def test_append_new_with_nothing_new_skips_the_hook(self) -> None:
        self.store.append_record(_delta("a"))
        calls: list[int] = []

        written = self.store.append_new([_delta("a")], key=lambda d: d.recordId, before_write=lambda fresh, stored: calls.append(1))

        self.assertEqual(written, [])
        self.assertEqual(calls, [])
        self.assertEqual(len(self.store.file_path.read_text(encoding="utf-8").splitlines()), 1)

    def test_one_corrupted_line_among_ten_yields_nine_records(self) -> None:
        lines = [_delta(f"r{i}").model_dump_json() for i in range(9)]
        lines.insert(4, '{"recordId": "broken", "tokens": ')
        self.store.file_path.write_text("\n".join(lines) + "\n", encoding="utf-8")

        with self.assertLogs("agent_telemetry.store", level="WARNING"):
            records = self.store.read_all()
        self.assertEqual(len(records), 9)

    def test_append_after_partial_line_starts_a_new_line(self) -> None:
        self.store.append_record(_delta("a"))
        with self.store.file_path.open("a", encoding="utf-8") as handle:
            handle.write('{"recordId": "half')

        self.store.append_record(_delta("b"))
        with self.assertLogs("agent_telemetry.store", level="WARNING"):
            ids = [d.recordId for d in self.store.read_all()]
        self.assertEqual(ids, ["a", "b"])

    def test_update_records_rewrites_status_and_keeps_unparseable_lines(self) -> None:
        self.store.append_records([_delta("a"), _delta("b")])
        with self.store.file_path.open("a", encoding="utf-8") as handle:
            handle.write("not json\n")
        self.store.append_record(_delta("c"))

        def mark(records: list[MetricDelta]) -> None:
            for record in records:
                if record.recordId != "b":
                    record.syncStatus = "synced"
                    record.syncAttempts += 1

        self.assertEqual(self.store.update_records(mark), 3)
        raw_lines = self.store.file_path.read_text(encoding="utf-8").splitlines()
        self.assertEqual(raw_lines[2], "not json")
        with self.assertLogs("agent_telemetry.store", level="WARNING"):
            records = {d.recordId: d for d in self.store.read_all()}
        self.assertEqual(records["a"].syncStatus, "synced")
        self.assertEqual(records["a"].syncAttempts, 1)
        self.assertEqual(records["b"].syncStatus, "pending")
        self.assertEqual(records["c"].syncStatus, "synced")

    def test_update_on_missing_file_is_a_no_op(self) -> None:
        store = RecordStore(self.sessions_dir / "absent.jsonl", MetricDelta)
        self.assertEqual(store.update_records(lambda records: None), 0)
        self.assertFalse(store.exists())


if __name__ == "__main__":
    unittest.main()
