from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Mapping

from .auth.athena import DEFAULT_SCOPE, DEFAULT_TOKEN_URL
from .errors import ConfigError
from .upstream.athena import DEFAULT_API_BASE


DEFAULT_POLL_INTERVAL_MS = 60_000
DEFAULT_PRACTICE_ID = "195900"

# 轮询间隔的环境变量（毫秒），按顺序取第一个存在的
POLL_INTERVAL_ENV_NAMES = ("POLL_INTERVAL_MS", "ATHENA_POLL_INTERVAL")
PRACTICE_ENV_NAME = "PRACTICE_ID"


def _require_dict(value: Any, *, where: str) -> Mapping[str, Any]:
    if not isinstance(value, dict):
        raise ConfigError(f"Expected object at {where}, got {type(value).__name__}")
    return value


def _get_int(d: Mapping[str, Any], key: str, default: int) -> int:
    v = d.get(key, default)
    if isinstance(v, bool) or v is None:
        return default
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


def _get_float(d: Mapping[str, Any], key: str, default: float) -> float:
    v = d.get(key, default)
    if isinstance(v, bool) or v is None:
        return default
    try:
        return float(v)
    except (TypeError, ValueError):
        return default


def _get_str(d: Mapping[str, Any], key: str, default: str | None = None) -> str | None:
    v = d.get(key, default)
    if v is None:
        return None
    return str(v)


def _get_str_list(d: Mapping[str, Any], key: str, default: list[str]) -> list[str]:
    v = d.get(key, default)
    if v is None:
        return list(default)
    if isinstance(v, list):
        return [str(x) for x in v]
    if isinstance(v, (str, int)):
        return [str(v)]
    return list(default)


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(p.strip() for p in value.split(",") if p.strip())


@dataclass(frozen=True, slots=True)
class AthenaConfig:
    """
    上游（athenahealth）配置。

    practices:
      - 需要轮询的 practice id 列表，每个 practice 一个独立调度器
    client_id_env / client_secret_env:
      - OAuth client 凭据所在的环境变量名
    subscription_event:
      - 启动时创建订阅使用的 eventname；为空表示订阅全部变更
    """

    api_base: str
    token_url: str
    scope: str
    practices: tuple[str, ...]
    subscription_event: str | None
    client_id_env: str
    client_secret_env: str


@dataclass(frozen=True, slots=True)
class CredentialConfig:
    validity_seconds: int = 3600
    refresh_threshold_seconds: int = 300


@dataclass(frozen=True, slots=True)
class SinkConfig:
    """
    下游配置。url_env 为下游地址所在的环境变量名，headers 为附加的固定请求头。
    """

    url_env: str = "BACKEND_URL"
    headers: Mapping[str, str] | None = None


@dataclass(frozen=True, slots=True)
class AppConfig:
    """
    应用总配置。

    poll_interval_ms:
      - 轮询间隔（毫秒），可被环境变量 POLL_INTERVAL_MS / ATHENA_POLL_INTERVAL 覆盖
    max_consecutive_failures:
      - 连续失败多少轮后输出告警日志；0 表示关闭
    timezone:
      - 解析上游 date/starttime 使用的 IANA 时区；为空使用服务器本地时区
    sqlite_path:
      - cursor 持久化路径；为空时只保存在内存
    """

    poll_interval_ms: int
    max_consecutive_failures: int
    timezone: str | None
    athena: AthenaConfig
    credential: CredentialConfig
    sink: SinkConfig
    sqlite_path: str | None
    http_timeout_seconds: float

    def resolve_env(self, env_name: str | None, environ: Mapping[str, str] | None = None) -> str | None:
        if not env_name:
            return None
        env = os.environ if environ is None else environ
        value = env.get(env_name)
        if value is None:
            return None
        return value.strip() or None

    def resolve_poll_interval_ms(self, environ: Mapping[str, str] | None = None) -> int:
        for name in POLL_INTERVAL_ENV_NAMES:
            raw = self.resolve_env(name, environ)
            if raw is None:
                continue
            try:
                return int(raw)
            except ValueError as e:
                raise ConfigError(f"{name} must be an integer (milliseconds), got {raw!r}") from e
        return self.poll_interval_ms

    def resolve_practices(self, environ: Mapping[str, str] | None = None) -> tuple[str, ...]:
        raw = self.resolve_env(PRACTICE_ENV_NAME, environ)
        if raw:
            return _split_csv(raw)
        return self.athena.practices


def load_config(config_path: str | None = None) -> AppConfig:
    """
    JSON 配置文件可选；secret 与下游地址一律从环境变量读取。

    JSON 顶层结构（示意）：
    {
      "poll_interval_ms": 60000,
      "athena": { "practices": ["195900"], ... },
      "credential": { "validity_seconds": 3600, "refresh_threshold_seconds": 300 },
      "sink": { "url_env": "BACKEND_URL" },
      "state": { "sqlite_path": "./acp_state.sqlite3" },
      "http": { "timeout_seconds": 20 }
    }
    """
    raw: Any = {}
    if config_path:
        try:
            with open(config_path, "rb") as f:
                raw = json.loads(f.read().decode("utf-8"))
        except OSError as e:
            raise ConfigError(f"cannot read config file {config_path}: {e}") from e
        except ValueError as e:
            raise ConfigError(f"config file {config_path} is not valid JSON: {e}") from e

    root = _require_dict(raw, where="$")

    athena = _require_dict(root.get("athena", {}), where="$.athena")
    athena_cfg = AthenaConfig(
        api_base=_get_str(athena, "api_base", DEFAULT_API_BASE) or DEFAULT_API_BASE,
        token_url=_get_str(athena, "token_url", DEFAULT_TOKEN_URL) or DEFAULT_TOKEN_URL,
        scope=_get_str(athena, "scope", DEFAULT_SCOPE) or DEFAULT_SCOPE,
        practices=tuple(_get_str_list(athena, "practices", [DEFAULT_PRACTICE_ID])),
        subscription_event=_get_str(athena, "subscription_event", None) or None,
        client_id_env=_get_str(athena, "client_id_env", "CLIENT_ID") or "CLIENT_ID",
        client_secret_env=_get_str(athena, "client_secret_env", "CLIENT_SECRET") or "CLIENT_SECRET",
    )

    credential = _require_dict(root.get("credential", {}), where="$.credential")
    credential_cfg = CredentialConfig(
        validity_seconds=_get_int(credential, "validity_seconds", 3600),
        refresh_threshold_seconds=_get_int(credential, "refresh_threshold_seconds", 300),
    )

    sink = _require_dict(root.get("sink", {}), where="$.sink")
    headers = _require_dict(sink.get("headers", {}), where="$.sink.headers")
    sink_cfg = SinkConfig(
        url_env=_get_str(sink, "url_env", "BACKEND_URL") or "BACKEND_URL",
        headers={str(k): str(v) for k, v in headers.items()},
    )

    state = _require_dict(root.get("state", {}), where="$.state")
    http = _require_dict(root.get("http", {}), where="$.http")

    return AppConfig(
        poll_interval_ms=_get_int(root, "poll_interval_ms", DEFAULT_POLL_INTERVAL_MS),
        max_consecutive_failures=_get_int(root, "max_consecutive_failures", 0),
        timezone=_get_str(root, "timezone", None) or None,
        athena=athena_cfg,
        credential=credential_cfg,
        sink=sink_cfg,
        sqlite_path=_get_str(state, "sqlite_path", None) or None,
        http_timeout_seconds=_get_float(http, "timeout_seconds", 20.0),
    )
