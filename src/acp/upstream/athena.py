from __future__ import annotations

import http.client
import logging
from dataclasses import dataclass
from typing import Any, Mapping

from ..errors import UpstreamError
from ..http_utils import HttpClient, HttpResponse, form_encode, with_query_params
from ..models import ChangePage, Credential


logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.preview.platform.athenahealth.com/v1"


def _last_event_id(records: tuple[Mapping[str, Any], ...]) -> str | None:
    # 正常情况下就是最后一条；最后一条缺 eventid 时向前找最近一条
    for record in reversed(records):
        event_id = record.get("eventid")
        if event_id is None or event_id == "":
            continue
        return str(event_id)
    return None


def _coerce_total(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_change_payload(data: Any, *, status: int, body: str) -> ChangePage:
    """
    将上游响应的几种形态统一为 ChangePage：

    - {"appointments": [...], "totalcount": N}：标准形态
    - [...]：裸数组
    - {...} 且不含 appointments：视为空页
    其他形态抛 UpstreamError。
    """
    if isinstance(data, list):
        items: Any = data
        total = None
    elif isinstance(data, dict):
        items = data.get("appointments", [])
        total = _coerce_total(data.get("totalcount", data.get("totalCount")))
    else:
        raise UpstreamError(f"changes payload has unexpected type {type(data).__name__}", status=status, body=body)

    if not isinstance(items, list):
        raise UpstreamError(
            f"changes payload 'appointments' is {type(items).__name__}, expected list", status=status, body=body
        )

    records = tuple(it for it in items if isinstance(it, dict))
    if len(records) != len(items):
        logger.warning("discarded %d non-object change records", len(items) - len(records))
    return ChangePage(records=records, last_event_id=_last_event_id(records), total_count=total)


@dataclass(slots=True)
class _AthenaBase:
    practice_id: str
    http: HttpClient
    api_base: str = DEFAULT_API_BASE

    def _url(self, path: str) -> str:
        return f"{self.api_base.rstrip('/')}/{self.practice_id}/{path.lstrip('/')}"

    def _headers(self, credential: Credential) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {credential.token}",
            "Accept": "application/json",
        }

    def _send(self, method: str, url: str, *, headers: Mapping[str, str], data: bytes | None = None) -> HttpResponse:
        try:
            resp = self.http.request(method, url, headers=headers, data=data)
        except (OSError, http.client.HTTPException) as e:
            raise UpstreamError(f"{method} {url} failed: {e}", body=str(e)) from e
        if not resp.ok:
            raise UpstreamError(f"{method} {url} rejected", status=resp.status, body=resp.text())
        return resp

    def _json(self, resp: HttpResponse) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise UpstreamError(f"invalid JSON from {resp.url}", status=resp.status, body=resp.text()) from e


@dataclass(slots=True)
class AthenaChangeFetcher(_AthenaBase):
    """
    拉取某个 practice 的预约变更（appointments/changed）。

    cursor 语义：上游 eventid，作为 lastEventId 查询参数传入。
    """

    def key(self) -> str:
        return f"athena:{self.practice_id}:appointments"

    def fetch_changes(self, credential: Credential, cursor: str | None) -> ChangePage:
        params: dict[str, str | None] = {}
        if cursor:
            params["lastEventId"] = cursor
        url = with_query_params(self._url("appointments/changed"), params)

        resp = self._send("GET", url, headers=self._headers(credential))
        page = parse_change_payload(self._json(resp), status=resp.status, body=resp.text())
        logger.debug(
            "changes fetched: practice=%s cursor=%r records=%d total=%s last_event_id=%r",
            self.practice_id,
            cursor,
            len(page),
            page.total_count,
            page.last_event_id,
        )
        return page


@dataclass(slots=True)
class AthenaSubscriptionManager(_AthenaBase):
    """
    appointments/changed/subscription 的查询与创建。

    event_name 为空时创建不带过滤的订阅（订阅全部变更事件）。
    """

    event_name: str | None = None

    def list_subscriptions(self, credential: Credential) -> list[Any]:
        resp = self._send("GET", self._url("appointments/changed/subscription"), headers=self._headers(credential))
        data = self._json(resp)
        subs = data.get("subscriptions") if isinstance(data, dict) else None
        return list(subs) if isinstance(subs, list) else []

    def subscribe(self, credential: Credential, event_name: str | None = None) -> Any:
        fields = {"eventname": event_name} if event_name else {}
        headers = dict(self._headers(credential))
        headers["Content-Type"] = "application/x-www-form-urlencoded"
        resp = self._send(
            "POST",
            self._url("appointments/changed/subscription"),
            headers=headers,
            data=form_encode(fields),
        )
        logger.info("subscription created: practice=%s event_name=%s", self.practice_id, event_name or "<all>")
        return self._json(resp) if resp.body else None

    def ensure_subscription(self, credential: Credential) -> bool:
        subs = self.list_subscriptions(credential)
        if subs:
            logger.info("subscriptions active: practice=%s count=%d", self.practice_id, len(subs))
            return False
        logger.info("no active subscription: practice=%s creating one", self.practice_id)
        self.subscribe(credential, self.event_name)
        return True
