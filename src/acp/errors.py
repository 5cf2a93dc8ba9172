from __future__ import annotations


class AcpError(Exception):
    """acp 所有自定义异常的基类。"""


class ConfigError(AcpError):
    """
    启动参数缺失或非法。

    只在构建阶段抛出，属于致命错误：进程应直接退出，而不是带着残缺配置进入轮询。
    """


class _HttpFailure(AcpError):
    """
    携带上游 HTTP 状态码与响应体的失败基类，便于日志诊断。

    status 为 None 表示请求没有拿到响应（DNS/连接/超时等网络错误）。
    """

    def __init__(self, message: str, *, status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body

    def body_prefix(self, limit: int = 400) -> str:
        return (self.body or "")[:limit]

    def __str__(self) -> str:
        base = super().__str__()
        if self.status is None:
            return base
        return f"{base} (status={self.status})"


class CredentialError(_HttpFailure):
    """凭据续期失败：可恢复，跳过本轮。"""


class UpstreamError(_HttpFailure):
    """拉取变更 / 订阅管理失败：可恢复，跳过本轮，cursor 不动。"""


class ForwardError(_HttpFailure):
    """
    下游拒收或不可达：可恢复，cursor 不推进。

    kind:
    - "rejected"：下游返回非 2xx
    - "network"：请求没有到达下游
    """

    def __init__(self, message: str, *, kind: str, status: int | None = None, body: str = "") -> None:
        super().__init__(message, status=status, body=body)
        self.kind = kind
