from __future__ import annotations

from typing import Protocol


class CredentialProvider(Protocol):
    """
    凭据签发方接口：用 client id/secret 换取一个 bearer token 字符串。

    约定：
    - 失败抛 CredentialError（附上游状态码与响应体）
    - 有效期不从响应推断，由 CredentialCache 按配置计算
    """

    def fetch_token(self) -> str: ...
