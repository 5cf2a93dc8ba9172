from __future__ import annotations

from typing import Any, Protocol


class CursorStore(Protocol):
    """
    进度存储接口：
    - cursor：每个 source_key（practice 维度）最后一次成功投递的 eventid
    - forward_failures：投递失败留痕（不做队列重试，下一轮会从同一 cursor 重新拉取）
    """

    def ensure_schema(self) -> None: ...

    def get_cursor(self, source_key: str) -> str | None: ...

    def set_cursor(self, source_key: str, cursor: str | None) -> None: ...

    def record_forward_failure(self, *, source_key: str, cursor: str | None, events: int, error: str) -> None: ...

    def recent_forward_failures(self, source_key: str, limit: int = 20) -> list[dict[str, Any]]: ...
