from __future__ import annotations

from typing import Protocol

from ..models import ChangePage, Credential


class ChangeFetcher(Protocol):
    """
    上游变更拉取接口：用 cursor 请求一页“自 cursor 以来”的原始变更。

    约定：
    - 单次网络请求，不做内部重试
    - 失败抛 UpstreamError，由调度器决定跳过本轮
    - cursor 为 None 时不携带该参数，由上游返回当前基线
    """

    def key(self) -> str: ...

    def fetch_changes(self, credential: Credential, cursor: str | None) -> ChangePage: ...


class SubscriptionManager(Protocol):
    """
    启动期的订阅管理：确保上游已经在记录变更事件。
    """

    def ensure_subscription(self, credential: Credential) -> bool: ...
