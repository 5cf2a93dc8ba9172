from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from typing import Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .auth.athena import AthenaCredentialProvider
from .auth.cache import CredentialCache
from .config import AppConfig
from .errors import ConfigError, CredentialError, ForwardError, UpstreamError
from .http_utils import HttpClient
from .models import CycleResult, SchedulerState, SchedulerStats, utc_now
from .normalize.normalizer import EventNormalizer
from .sink.base import Forwarder
from .sink.http import HttpSinkForwarder
from .state.memory_store import MemoryCursorStore
from .state.sqlite_store import SqliteCursorStore
from .state.store import CursorStore
from .upstream.athena import AthenaChangeFetcher, AthenaSubscriptionManager
from .upstream.base import ChangeFetcher, SubscriptionManager


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PollScheduler:
    """
    单个 practice 的轮询调度器，负责一轮内的完整闭环：
    credential -> fetch -> normalize -> forward -> cursor advance

    状态机：idle -> starting -> running -> stopping -> stopped

    约定：
    - 一个实例只有一个轮询线程；凭据与 cursor 都只归该实例所有
    - 轮与轮之间不重叠：上一轮未结束时到来的 tick 直接跳过（不排队）
    - cursor 只在投递成功后推进；任何可恢复错误都在轮次边界被捕获并记录，本轮跳过
    - stop() 不打断正在执行的一轮，等它结束后才报告 stopped
    """

    practice_id: str
    credentials: CredentialCache
    fetcher: ChangeFetcher
    normalizer: EventNormalizer
    forwarder: Forwarder
    store: CursorStore
    subscriptions: SubscriptionManager | None = None
    poll_interval_seconds: float = 60.0
    max_consecutive_failures: int = 0

    _state: SchedulerState = field(default=SchedulerState.IDLE, init=False)
    _state_lock: threading.Lock = field(default_factory=threading.Lock, init=False)
    _cycle_lock: threading.Lock = field(default_factory=threading.Lock, init=False)
    _stop_event: threading.Event | None = field(default=None, init=False)
    _thread: threading.Thread | None = field(default=None, init=False)
    _stop_requested: bool = field(default=False, init=False)
    _poll_count: int = field(default=0, init=False)
    _last_poll_at: datetime | None = field(default=None, init=False)
    _total_events_processed: int = field(default=0, init=False)
    _cycles_failed: int = field(default=0, init=False)
    _consecutive_failures: int = field(default=0, init=False)
    _ticks_skipped: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        if not self.practice_id:
            raise ConfigError("practice_id is required")
        if self.poll_interval_seconds <= 0:
            raise ConfigError(f"poll interval must be positive, got {self.poll_interval_seconds}")
        if self.max_consecutive_failures < 0:
            raise ConfigError(f"max_consecutive_failures must be >= 0, got {self.max_consecutive_failures}")

    @property
    def cursor_key(self) -> str:
        return self.fetcher.key()

    @property
    def state(self) -> SchedulerState:
        with self._state_lock:
            return self._state

    def bootstrap(self) -> None:
        """
        启动前准备：拿到首个凭据，并确保上游存在变更订阅。失败直接抛出。
        """
        self.store.ensure_schema()
        credential = self.credentials.get_valid_credential()
        logger.info(
            "bootstrap: practice=%s token=%s expires_at=%s",
            self.practice_id,
            credential.token_preview(),
            credential.expires_at.isoformat(),
        )
        if self.subscriptions is not None:
            created = self.subscriptions.ensure_subscription(credential)
            logger.info("bootstrap: practice=%s subscription_created=%s", self.practice_id, created)

    def start(self) -> None:
        with self._state_lock:
            if self._state in (SchedulerState.STARTING, SchedulerState.RUNNING, SchedulerState.STOPPING):
                logger.info("scheduler already active: practice=%s state=%s", self.practice_id, self._state.value)
                return
            self._state = SchedulerState.STARTING
            self._stop_requested = False

        try:
            self.bootstrap()
        except Exception:
            with self._state_lock:
                self._state = SchedulerState.IDLE
                self._stop_requested = False
            logger.exception("scheduler start failed: practice=%s", self.practice_id)
            raise

        stop_event = threading.Event()
        thread = threading.Thread(
            target=self._loop,
            args=(stop_event,),
            name=f"acp-poller-{self.practice_id}",
            daemon=True,
        )
        with self._state_lock:
            if self._stop_requested:
                # 启动期间收到 stop：不再拉起轮询线程
                self._stop_requested = False
                self._state = SchedulerState.STOPPED
                logger.info("scheduler stopped before first poll: practice=%s", self.practice_id)
                return
            self._stop_event = stop_event
            self._thread = thread
            self._state = SchedulerState.RUNNING
        thread.start()
        logger.info(
            "scheduler started: practice=%s poll_interval_ms=%d cursor=%r",
            self.practice_id,
            int(self.poll_interval_seconds * 1000),
            self.store.get_cursor(self.cursor_key),
        )

    def stop(self) -> None:
        """
        停止轮询。

        - running：等待正在执行的一轮结束后进入 stopped
        - starting：记录停止请求，start() 完成 bootstrap 后直接进入 stopped，不启动轮询线程
        - 其他状态：无操作
        """
        with self._state_lock:
            if self._state is SchedulerState.STARTING:
                self._stop_requested = True
                logger.info("stop requested during start: practice=%s", self.practice_id)
                return
            if self._state is not SchedulerState.RUNNING:
                logger.info("scheduler not running: practice=%s state=%s", self.practice_id, self._state.value)
                return
            self._state = SchedulerState.STOPPING
            stop_event = self._stop_event
            thread = self._thread

        if stop_event is not None:
            stop_event.set()
        # 正在执行的一轮允许跑完，避免 cursor 半推进
        if thread is not None and thread is not threading.current_thread():
            thread.join()

        with self._state_lock:
            self._state = SchedulerState.STOPPED
            self._thread = None
            self._stop_event = None
        logger.info("scheduler stopped: practice=%s polls=%d", self.practice_id, self._poll_count)

    def stats(self) -> SchedulerStats:
        cursor = self.store.get_cursor(self.cursor_key)
        with self._state_lock:
            return SchedulerStats(
                practice_id=self.practice_id,
                state=self._state,
                poll_count=self._poll_count,
                last_poll_at=self._last_poll_at,
                total_events_processed=self._total_events_processed,
                cycles_failed=self._cycles_failed,
                consecutive_failures=self._consecutive_failures,
                ticks_skipped=self._ticks_skipped,
                cursor=cursor,
            )

    def _loop(self, stop_event: threading.Event) -> None:
        interval = self.poll_interval_seconds
        next_at = time.monotonic() + interval
        while not stop_event.wait(max(0.0, next_at - time.monotonic())):
            try:
                self.run_cycle()
            except Exception:  # noqa: BLE001
                logger.exception("cycle crashed: practice=%s", self.practice_id)

            next_at += interval
            now = time.monotonic()
            if next_at <= now:
                missed = int((now - next_at) // interval) + 1
                next_at += missed * interval
                with self._state_lock:
                    self._ticks_skipped += missed
                logger.warning(
                    "cycle overran poll interval: practice=%s skipped_ticks=%d",
                    self.practice_id,
                    missed,
                )

    def run_cycle(self) -> CycleResult:
        """
        执行一轮轮询。

        若另一轮仍在进行，本次调用直接返回 skipped=True 的结果，不做任何网络请求。
        """
        if not self._cycle_lock.acquire(blocking=False):
            with self._state_lock:
                self._ticks_skipped += 1
                poll_number = self._poll_count
            logger.warning("cycle in progress, tick skipped: practice=%s poll=%d", self.practice_id, poll_number)
            return CycleResult(poll_number=poll_number, started_at=utc_now(), cursor_before=None, skipped=True)
        try:
            return self._run_cycle_locked()
        finally:
            self._cycle_lock.release()

    def _run_cycle_locked(self) -> CycleResult:
        start_t = time.monotonic()
        started_at = utc_now()
        with self._state_lock:
            self._poll_count += 1
            poll_number = self._poll_count
            self._last_poll_at = started_at

        source_key = self.cursor_key
        result = CycleResult(poll_number=poll_number, started_at=started_at, cursor_before=None)

        try:
            self.store.ensure_schema()
            cursor = self.store.get_cursor(source_key)
            result.cursor_before = cursor
            result.cursor_after = cursor
            logger.debug("poll start: practice=%s poll=%d cursor=%r", self.practice_id, poll_number, cursor)
            self._execute(result, source_key, cursor)
        except CredentialError as e:
            result.error = f"CredentialError: {e}"
            logger.error(
                "credential unavailable, cycle skipped: practice=%s poll=%d cursor=%r status=%s body=%r",
                self.practice_id,
                poll_number,
                result.cursor_before,
                e.status,
                e.body_prefix(200),
            )
        except UpstreamError as e:
            result.error = f"UpstreamError: {e}"
            if e.status == 401:
                self.credentials.invalidate()
            logger.error(
                "fetch failed, cycle skipped: practice=%s poll=%d cursor=%r status=%s body=%r",
                self.practice_id,
                poll_number,
                result.cursor_before,
                e.status,
                e.body_prefix(200),
            )
        except ForwardError as e:
            result.error = f"ForwardError: {e}"
            logger.error(
                "forward failed, cursor withheld: practice=%s poll=%d cursor=%r events=%d kind=%s status=%s body=%r",
                self.practice_id,
                poll_number,
                result.cursor_before,
                result.events_normalized,
                e.kind,
                e.status,
                e.body_prefix(200),
            )
        except Exception as e:  # noqa: BLE001
            result.error = f"{type(e).__name__}: {e}"
            logger.exception(
                "cycle failed: practice=%s poll=%d cursor=%r",
                self.practice_id,
                poll_number,
                result.cursor_before,
            )

        result.duration_ms = int((time.monotonic() - start_t) * 1000)
        self._record(result)
        return result

    def _execute(self, result: CycleResult, source_key: str, cursor: str | None) -> None:
        credential = self.credentials.get_valid_credential()

        page = self.fetcher.fetch_changes(credential, cursor)
        result.events_seen = len(page)

        report = self.normalizer.normalize_with_report(page.records)
        result.events_normalized = len(report.events)
        result.events_dropped = report.dropped

        if report.events:
            try:
                self.forwarder.forward(report.events)
            except ForwardError as e:
                self.store.record_forward_failure(
                    source_key=source_key,
                    cursor=cursor,
                    events=len(report.events),
                    error=f"{type(e).__name__}: {e}",
                )
                raise
            result.events_forwarded = len(report.events)
        elif page.records:
            logger.info(
                "no deliverable events in page: practice=%s records=%d dropped=%d",
                self.practice_id,
                len(page),
                report.dropped,
            )

        if page.last_event_id is not None and page.last_event_id != cursor:
            self.store.set_cursor(source_key, page.last_event_id)
            result.cursor_after = page.last_event_id
            result.cursor_advanced = True
            logger.info("cursor advanced: practice=%s %r -> %r", self.practice_id, cursor, page.last_event_id)

    def _record(self, result: CycleResult) -> None:
        with self._state_lock:
            if result.failed:
                self._cycles_failed += 1
                self._consecutive_failures += 1
            else:
                self._consecutive_failures = 0
                self._total_events_processed += result.events_forwarded
            consecutive = self._consecutive_failures
            total = self._total_events_processed

        logger.info(
            "cycle done: practice=%s poll=%d duration_ms=%d seen=%d normalized=%d dropped=%d forwarded=%d cursor=%r->%r advanced=%s total_processed=%d error=%s",
            self.practice_id,
            result.poll_number,
            result.duration_ms,
            result.events_seen,
            result.events_normalized,
            result.events_dropped,
            result.events_forwarded,
            result.cursor_before,
            result.cursor_after,
            result.cursor_advanced,
            total,
            result.error or "-",
        )
        if result.failed and self.max_consecutive_failures > 0 and consecutive >= self.max_consecutive_failures:
            logger.error(
                "consecutive failure threshold reached: practice=%s consecutive_failures=%d threshold=%d",
                self.practice_id,
                consecutive,
                self.max_consecutive_failures,
            )


def _resolve_timezone(name: str | None) -> tzinfo | None:
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigError(f"unknown timezone: {name!r}") from e


def build_schedulers(config: AppConfig, environ: Mapping[str, str] | None = None) -> tuple[PollScheduler, ...]:
    """
    根据配置构建调度器（每个 practice 一个实例）。

    - 统一在这里做“配置 -> 实例”的装配，PollScheduler 内只关注流程编排
    - client id/secret 与下游地址只通过环境变量读取，避免落盘
    - 必填项缺失抛 ConfigError
    """
    env = os.environ if environ is None else environ

    client_id = config.resolve_env(config.athena.client_id_env, env)
    client_secret = config.resolve_env(config.athena.client_secret_env, env)
    sink_url = config.resolve_env(config.sink.url_env, env)
    missing = [
        name
        for name, value in (
            (config.athena.client_id_env, client_id),
            (config.athena.client_secret_env, client_secret),
            (config.sink.url_env, sink_url),
        )
        if not value
    ]
    if missing:
        raise ConfigError(f"missing required configuration: {', '.join(missing)}")

    practices = config.resolve_practices(env)
    if not practices:
        raise ConfigError("no practices configured")

    poll_interval_ms = config.resolve_poll_interval_ms(env)
    if poll_interval_ms <= 0:
        raise ConfigError(f"poll interval must be positive, got {poll_interval_ms}ms")

    validity = timedelta(seconds=config.credential.validity_seconds)
    refresh_threshold = timedelta(seconds=config.credential.refresh_threshold_seconds)
    if refresh_threshold < timedelta(0) or validity <= refresh_threshold:
        raise ConfigError(
            f"credential validity ({config.credential.validity_seconds}s) must exceed refresh threshold "
            f"({config.credential.refresh_threshold_seconds}s)"
        )

    normalizer = EventNormalizer(tz=_resolve_timezone(config.timezone))
    http = HttpClient(timeout_seconds=config.http_timeout_seconds)
    store: CursorStore = SqliteCursorStore(config.sqlite_path) if config.sqlite_path else MemoryCursorStore()
    forwarder = HttpSinkForwarder(url=sink_url or "", http=http, headers=dict(config.sink.headers or {}))

    schedulers: list[PollScheduler] = []
    for practice_id in practices:
        provider = AthenaCredentialProvider(
            client_id=client_id or "",
            client_secret=client_secret or "",
            http=http,
            token_url=config.athena.token_url,
            scope=config.athena.scope,
        )
        schedulers.append(
            PollScheduler(
                practice_id=practice_id,
                credentials=CredentialCache(provider=provider, validity=validity, refresh_threshold=refresh_threshold),
                fetcher=AthenaChangeFetcher(practice_id=practice_id, http=http, api_base=config.athena.api_base),
                normalizer=normalizer,
                forwarder=forwarder,
                store=store,
                subscriptions=AthenaSubscriptionManager(
                    practice_id=practice_id,
                    http=http,
                    api_base=config.athena.api_base,
                    event_name=config.athena.subscription_event,
                ),
                poll_interval_seconds=poll_interval_ms / 1000.0,
                max_consecutive_failures=config.max_consecutive_failures,
            )
        )
    return tuple(schedulers)
