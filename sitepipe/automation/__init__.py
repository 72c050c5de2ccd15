"""Scheduled automation tasks and pipeline triggers."""

from .actions import ACTION_TYPES, ActionExecutor, TaskActionError
from .schedule import SCHEDULE_TYPES, Schedule, SchedulingError
from .scheduler import AutomationScheduler, TaskNotification, TaskRunResult

__all__ = [
    "ACTION_TYPES",
    "ActionExecutor",
    "AutomationScheduler",
    "SCHEDULE_TYPES",
    "Schedule",
    "SchedulingError",
    "TaskActionError",
    "TaskNotification",
    "TaskRunResult",
]
