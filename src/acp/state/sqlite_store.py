from __future__ import annotations

import sqlite3
from contextlib import closing, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Iterator

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS event_cursors (
        source_key TEXT PRIMARY KEY,
        last_event_id TEXT,
        advanced_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS forward_failures (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        source_key TEXT NOT NULL,
        cursor TEXT,
        events INTEGER NOT NULL,
        error TEXT NOT NULL,
        failed_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_forward_failures_source ON forward_failures(source_key, id)",
)


@dataclass(slots=True)
class SqliteCursorStore:
    """
    cursor 的 SQLite 持久化，进程重启后从最后一次成功投递的位置继续。

    表：
    - event_cursors：source_key -> last_event_id，只在下游确认后写入
    - forward_failures：投递失败的留痕（失败时的 cursor、事件数、错误摘要）
    """

    sqlite_path: str

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        # 每次操作独立连接，调度线程与状态查询线程互不共享
        with closing(sqlite3.connect(self.sqlite_path, timeout=10)) as conn:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.row_factory = sqlite3.Row
            with conn:
                yield conn

    def ensure_schema(self) -> None:
        with self._transaction() as conn:
            for stmt in _SCHEMA:
                conn.execute(stmt)

    def get_cursor(self, source_key: str) -> str | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT last_event_id FROM event_cursors WHERE source_key = ?",
                (source_key,),
            ).fetchone()
        return row["last_event_id"] if row else None

    def set_cursor(self, source_key: str, cursor: str | None) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO event_cursors(source_key, last_event_id, advanced_at) VALUES(?, ?, ?) "
                "ON CONFLICT(source_key) DO UPDATE SET "
                "last_event_id = excluded.last_event_id, advanced_at = excluded.advanced_at",
                (source_key, cursor, datetime.now(tz=UTC).isoformat()),
            )

    def record_forward_failure(self, *, source_key: str, cursor: str | None, events: int, error: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO forward_failures(source_key, cursor, events, error, failed_at) VALUES(?, ?, ?, ?, ?)",
                (source_key, cursor, events, error, datetime.now(tz=UTC).isoformat()),
            )

    def recent_forward_failures(self, source_key: str, limit: int = 20) -> list[dict[str, Any]]:
        """按时间倒序返回某个 source 最近的投递失败记录。"""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT cursor, events, error, failed_at FROM forward_failures "
                "WHERE source_key = ? ORDER BY id DESC LIMIT ?",
                (source_key, limit),
            ).fetchall()
        return [dict(r) for r in rows]
