from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Any, Iterable, Mapping

from ..models import RECOGNIZED_STATUSES, AppointmentStatus, ChangeEvent


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class NormalizeReport:
    events: tuple[ChangeEvent, ...]
    dropped: int


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def parse_start_time(date_s: str, time_s: str, tz: tzinfo | None = None) -> datetime:
    """
    将 "MM/DD/YYYY" + "HH:MM" 组合为带时区的绝对时间。

    tz 为空时使用服务器本地时区。格式不合法抛 ValueError。
    """
    month, day, year = (int(p) for p in date_s.strip().split("/"))
    hour_s, minute_s = time_s.strip().split(":")
    naive = datetime(year, month, day, int(hour_s), int(minute_s))
    if tz is None:
        return naive.astimezone()
    return naive.replace(tzinfo=tz)


@dataclass(frozen=True, slots=True)
class EventNormalizer:
    """
    原始变更记录 -> ChangeEvent。

    规则：
    - appointmentid 非空且为整数，appointmentstatus 属于可识别集合（o/x/f），否则丢弃
    - date + starttime 解析失败只丢弃该条
    - 丢弃只记日志，不抛异常；输出顺序与输入一致
    """

    tz: tzinfo | None = None

    def normalize(self, records: Iterable[Mapping[str, Any]]) -> tuple[ChangeEvent, ...]:
        return self.normalize_with_report(records).events

    def normalize_with_report(self, records: Iterable[Mapping[str, Any]]) -> NormalizeReport:
        events: list[ChangeEvent] = []
        dropped = 0
        for index, record in enumerate(records):
            event, reason = self._normalize_one(record)
            if event is None:
                dropped += 1
                logger.info(
                    "change record dropped: index=%d reason=%s appointmentid=%r eventid=%r",
                    index,
                    reason,
                    record.get("appointmentid") if isinstance(record, Mapping) else None,
                    record.get("eventid") if isinstance(record, Mapping) else None,
                )
                continue
            events.append(event)
        return NormalizeReport(events=tuple(events), dropped=dropped)

    def _normalize_one(self, record: Any) -> tuple[ChangeEvent | None, str]:
        if not isinstance(record, Mapping):
            return None, "not_an_object"

        raw_id = _optional_str(record.get("appointmentid"))
        if raw_id is None:
            return None, "missing_appointment_id"
        try:
            appointment_id = int(raw_id)
        except ValueError:
            return None, "invalid_appointment_id"

        status_code = _optional_str(record.get("appointmentstatus")) or ""
        status = AppointmentStatus.from_code(status_code)
        if status not in RECOGNIZED_STATUSES:
            return None, f"unrecognized_status:{status_code or '-'}"

        date_s = record.get("date")
        time_s = record.get("starttime")
        if not isinstance(date_s, str) or not isinstance(time_s, str):
            return None, "missing_date_or_time"
        try:
            start_time = parse_start_time(date_s, time_s, self.tz)
        except ValueError:
            return None, "malformed_date_or_time"

        return (
            ChangeEvent(
                appointment_id=appointment_id,
                status=status,
                status_code=status_code,
                start_time=start_time,
                event_id=_optional_str(record.get("eventid")),
                patient_id=_optional_str(record.get("patientid")),
                appointment_type=_optional_str(record.get("appointmenttype")),
                appointment_type_id=_optional_str(record.get("appointmenttypeid")),
                provider_id=_optional_str(record.get("providerid")),
                department_id=_optional_str(record.get("departmentid")),
            ),
            "",
        )
