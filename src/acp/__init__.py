"""
Appointment Change Poller (acp)

定时从上游排班系统（athenahealth appointments/changed）拉取“自 cursor 以来”的预约变更，
归一化后整批投递到下游；cursor 只在投递成功后推进（at-least-once）。
"""

from .models import ChangeEvent, CycleResult, SchedulerStats
from .scheduler import PollScheduler, build_schedulers

__all__ = [
    "ChangeEvent",
    "CycleResult",
    "PollScheduler",
    "SchedulerStats",
    "build_schedulers",
]
