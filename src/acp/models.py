from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Mapping


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True, slots=True)
class Credential:
    """
    短期 bearer 凭据。

    - 只由 CredentialCache 持有，不落盘
    - 续期时整体替换，不原地修改
    - 不变量：expires_at > issued_at
    """

    token: str
    issued_at: datetime
    expires_at: datetime

    def __post_init__(self) -> None:
        if self.expires_at <= self.issued_at:
            raise ValueError(
                f"Credential expires_at must be after issued_at: {self.issued_at.isoformat()} >= {self.expires_at.isoformat()}"
            )

    def is_usable(self, now: datetime, refresh_threshold: timedelta) -> bool:
        return now < self.expires_at - refresh_threshold

    def token_preview(self) -> str:
        return self.token[:8] + "…" if len(self.token) > 8 else "***"


class AppointmentStatus(str, enum.Enum):
    BOOKED = "booked"
    CANCELLED = "cancelled"
    FILLED = "filled"
    OTHER = "other"

    @classmethod
    def from_code(cls, code: object) -> "AppointmentStatus":
        if not isinstance(code, str):
            return cls.OTHER
        return _STATUS_CODES.get(code.strip().lower(), cls.OTHER)


# 上游 appointmentstatus 单字母代码 -> 内部状态
_STATUS_CODES: dict[str, AppointmentStatus] = {
    "o": AppointmentStatus.BOOKED,
    "x": AppointmentStatus.CANCELLED,
    "f": AppointmentStatus.FILLED,
}

RECOGNIZED_STATUSES: frozenset[AppointmentStatus] = frozenset(_STATUS_CODES.values())


@dataclass(frozen=True, slots=True)
class ChangePage:
    """
    一次 fetch 的结果：按上游顺序排列的原始变更记录 + 本页最后一个 eventid。
    """

    records: tuple[Mapping[str, Any], ...]
    last_event_id: str | None
    total_count: int | None = None

    def __len__(self) -> int:
        return len(self.records)


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """
    归一化后的预约变更事件。

    只在一次轮询周期内存在：由 Normalizer 创建、被 Forwarder 消费后丢弃。
    """

    appointment_id: int
    status: AppointmentStatus
    status_code: str
    start_time: datetime
    event_id: str | None = None
    patient_id: str | None = None
    appointment_type: str | None = None
    appointment_type_id: str | None = None
    provider_id: str | None = None
    department_id: str | None = None

    def to_json_dict(self) -> dict[str, Any]:
        """
        下游 payload 中的单条事件（startTimeISO 统一为 UTC ISO8601）。
        """
        return {
            "appointmentId": self.appointment_id,
            "status": self.status.value,
            "statusCode": self.status_code,
            "startTimeISO": self.start_time.astimezone(UTC).isoformat().replace("+00:00", "Z"),
            "eventId": self.event_id,
            "patientId": self.patient_id,
            "appointmentType": self.appointment_type,
            "appointmentTypeId": self.appointment_type_id,
            "providerId": self.provider_id,
            "departmentId": self.department_id,
        }


@dataclass(frozen=True, slots=True)
class ForwardResult:
    status: int
    events: int


@dataclass(slots=True)
class CycleResult:
    """
    单轮轮询的执行报告，仅用于日志与统计，不持久化。
    """

    poll_number: int
    started_at: datetime
    cursor_before: str | None
    cursor_after: str | None = None
    events_seen: int = 0
    events_normalized: int = 0
    events_dropped: int = 0
    events_forwarded: int = 0
    cursor_advanced: bool = False
    skipped: bool = False
    error: str | None = None
    duration_ms: int = 0

    @property
    def failed(self) -> bool:
        return self.error is not None


class SchedulerState(str, enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class SchedulerStats:
    practice_id: str
    state: SchedulerState
    poll_count: int
    last_poll_at: datetime | None
    total_events_processed: int
    cycles_failed: int
    consecutive_failures: int
    ticks_skipped: int
    cursor: str | None

    @property
    def running(self) -> bool:
        return self.state is SchedulerState.RUNNING

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "practice_id": self.practice_id,
            "state": self.state.value,
            "running": self.running,
            "poll_count": self.poll_count,
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
            "total_events_processed": self.total_events_processed,
            "cycles_failed": self.cycles_failed,
            "consecutive_failures": self.consecutive_failures,
            "ticks_skipped": self.ticks_skipped,
            "cursor": self.cursor,
        }
