from __future__ import annotations

from typing import Protocol, Sequence

from ..models import ChangeEvent, ForwardResult


class Forwarder(Protocol):
    """
    下游投递接口：把一整批归一化事件交给下游。

    约定：
    - 成功返回 ForwardResult；失败抛 ForwardError，由调度器统一捕获并保留 cursor
    - 不做内部重试，不触碰 cursor
    """

    def target(self) -> str: ...

    def forward(self, events: Sequence[ChangeEvent]) -> ForwardResult: ...
