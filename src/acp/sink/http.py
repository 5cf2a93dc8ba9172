from __future__ import annotations

import http.client
import json
import logging
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from ..errors import ForwardError
from ..http_utils import HttpClient
from ..models import ChangeEvent, ForwardResult


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HttpSinkForwarder:
    """
    以 PUT + JSON 数组的形式把整批事件投递到下游。

    说明：
    - body 为整批事件（而不是只发第一条）
    - 任何非 2xx 都视为失败（kind=rejected）；拿不到响应为 kind=network
    """

    url: str
    http: HttpClient
    headers: Mapping[str, str] = field(default_factory=dict)

    def target(self) -> str:
        return self.url

    def forward(self, events: Sequence[ChangeEvent]) -> ForwardResult:
        payload = [e.to_json_dict() for e in events]
        data = json.dumps(payload, ensure_ascii=False).encode("utf-8")

        request_headers = {
            "Content-Type": "application/json; charset=utf-8",
            "Accept": "application/json",
        }
        request_headers.update(dict(self.headers))

        try:
            resp = self.http.put(self.url, data=data, headers=request_headers)
        except (OSError, http.client.HTTPException) as e:
            raise ForwardError(f"sink unreachable: {e}", kind="network", body=str(e)) from e

        if not resp.ok:
            raise ForwardError("sink rejected batch", kind="rejected", status=resp.status, body=resp.text())

        logger.debug("batch forwarded: url=%s events=%d status=%d", self.url, len(payload), resp.status)
        return ForwardResult(status=resp.status, events=len(payload))
