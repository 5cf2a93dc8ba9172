import os
import sys
import tempfile
import unittest


sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))


from acp.state.memory_store import MemoryCursorStore  # noqa: E402
from acp.state.sqlite_store import SqliteCursorStore  # noqa: E402


class TestSqliteCursorStore(unittest.TestCase):
    def test_cursor_roundtrip(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            db = os.path.join(td, "state.sqlite3")
            store = SqliteCursorStore(db)
            store.ensure_schema()

            self.assertIsNone(store.get_cursor("athena:1:appointments"))
            store.set_cursor("athena:1:appointments", "101")
            store.set_cursor("athena:1:appointments", "103")
            self.assertEqual(store.get_cursor("athena:1:appointments"), "103")
            self.assertIsNone(store.get_cursor("athena:2:appointments"))

            # 新实例读取同一文件，模拟重启
            self.assertEqual(SqliteCursorStore(db).get_cursor("athena:1:appointments"), "103")

    def test_ensure_schema_is_idempotent(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            store = SqliteCursorStore(os.path.join(td, "state.sqlite3"))
            store.ensure_schema()
            store.set_cursor("k", "1")
            store.ensure_schema()
            self.assertEqual(store.get_cursor("k"), "1")

    def test_forward_failure_is_recorded(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            db = os.path.join(td, "state.sqlite3")
            store = SqliteCursorStore(db)
            store.ensure_schema()
            store.record_forward_failure(
                source_key="athena:1:appointments",
                cursor=None,
                events=3,
                error="ForwardError: sink unreachable",
            )

            store.record_forward_failure(
                source_key="athena:1:appointments",
                cursor="101",
                events=2,
                error="ForwardError: sink rejected batch (status=503)",
            )

            failures = store.recent_forward_failures("athena:1:appointments")
            self.assertEqual([f["cursor"] for f in failures], ["101", None])
            self.assertEqual([f["events"] for f in failures], [2, 3])
            self.assertEqual(failures[1]["error"], "ForwardError: sink unreachable")
            self.assertEqual(store.recent_forward_failures("athena:2:appointments"), [])
            self.assertIsNone(store.get_cursor("athena:1:appointments"))


class TestMemoryCursorStore(unittest.TestCase):
    def test_cursor_and_failures(self) -> None:
        store = MemoryCursorStore()
        store.ensure_schema()
        self.assertIsNone(store.get_cursor("k"))
        store.set_cursor("k", "7")
        self.assertEqual(store.get_cursor("k"), "7")

        store.record_forward_failure(source_key="k", cursor="7", events=1, error="ForwardError: x")
        self.assertEqual(
            list(store.failures), [{"source_key": "k", "cursor": "7", "events": 1, "error": "ForwardError: x"}]
        )
        self.assertEqual(store.get_cursor("k"), "7")

    def test_failures_are_capped(self) -> None:
        store = MemoryCursorStore(max_failures=3)
        for i in range(10):
            store.record_forward_failure(source_key="k", cursor=str(i), events=1, error="ForwardError: x")

        self.assertEqual(len(store.failures), 3)
        self.assertEqual([f["cursor"] for f in store.recent_forward_failures("k")], ["9", "8", "7"])
        self.assertEqual([f["cursor"] for f in store.recent_forward_failures("k", limit=1)], ["9"])
        self.assertEqual(store.recent_forward_failures("other"), [])

    def test_non_positive_cap_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            MemoryCursorStore(max_failures=0)


if __name__ == "__main__":
    unittest.main()
