from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from ..errors import CredentialError
from ..models import Credential, utc_now
from .base import CredentialProvider


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CredentialCache:
    """
    持有单个可续期的 bearer 凭据。

    - 缓存命中：now < expires_at - refresh_threshold，直接返回，不发请求
    - 否则同步调用 provider 续期，expires_at = now + validity
    - 续期同一时刻至多一个在途：并发调用方等待同一次续期的结果（成功或 CredentialError），
      不会各自再发一次请求
    """

    provider: CredentialProvider
    validity: timedelta = timedelta(hours=1)
    refresh_threshold: timedelta = timedelta(minutes=5)
    clock: Callable[[], datetime] = utc_now
    _credential: Credential | None = field(default=None, init=False)
    _inflight: Future | None = field(default=None, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)

    def __post_init__(self) -> None:
        if self.validity <= self.refresh_threshold:
            raise ValueError(
                f"validity ({self.validity}) must be longer than refresh_threshold ({self.refresh_threshold})"
            )

    @property
    def credential(self) -> Credential | None:
        return self._credential

    def get_valid_credential(self) -> Credential:
        with self._lock:
            cached = self._credential
            now = self.clock()
            if cached is not None and cached.is_usable(now, self.refresh_threshold):
                logger.debug(
                    "credential cache hit: expires_in=%ds",
                    int((cached.expires_at - now).total_seconds()),
                )
                return cached

            inflight = self._inflight
            if inflight is None:
                inflight = Future()
                self._inflight = inflight
                owner = True
            else:
                owner = False

        if not owner:
            # 其他线程正在续期，等待它的结果
            return inflight.result()

        try:
            credential = self._renew()
        except BaseException as e:
            with self._lock:
                self._inflight = None
            inflight.set_exception(e)
            raise

        with self._lock:
            self._credential = credential
            self._inflight = None
        inflight.set_result(credential)
        return credential

    def invalidate(self) -> None:
        with self._lock:
            if self._credential is not None:
                logger.info("credential invalidated: expires_at=%s", self._credential.expires_at.isoformat())
            self._credential = None

    def _renew(self) -> Credential:
        logger.info("refreshing credential")
        try:
            token = self.provider.fetch_token()
        except CredentialError as e:
            logger.error("credential refresh failed: status=%s body=%r", e.status, e.body_prefix(200))
            raise

        issued_at = self.clock()
        credential = Credential(token=token, issued_at=issued_at, expires_at=issued_at + self.validity)
        logger.info(
            "credential refreshed: token=%s expires_at=%s",
            credential.token_preview(),
            credential.expires_at.isoformat(),
        )
        return credential
