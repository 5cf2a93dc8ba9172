from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class MemoryCursorStore:
    """
    未配置 sqlite_path 时的默认存储：进程内有效，重启后从上游基线重新开始。

    投递失败只保留最近 max_failures 条，常驻进程内存不随失败次数增长。
    """

    cursors: dict[str, str | None] = field(default_factory=dict)
    max_failures: int = 200
    failures: deque[dict[str, Any]] = field(init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)

    def __post_init__(self) -> None:
        if self.max_failures <= 0:
            raise ValueError(f"max_failures must be positive, got {self.max_failures}")
        self.failures = deque(maxlen=self.max_failures)

    def ensure_schema(self) -> None:
        return None

    def get_cursor(self, source_key: str) -> str | None:
        with self._lock:
            return self.cursors.get(source_key)

    def set_cursor(self, source_key: str, cursor: str | None) -> None:
        with self._lock:
            self.cursors[source_key] = cursor

    def record_forward_failure(self, *, source_key: str, cursor: str | None, events: int, error: str) -> None:
        with self._lock:
            self.failures.append({"source_key": source_key, "cursor": cursor, "events": events, "error": error})

    def recent_forward_failures(self, source_key: str, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            matched = [f for f in reversed(self.failures) if f["source_key"] == source_key]
        return matched[:limit]
