"""
Recurring job scheduler.

Usage:
    from outbox_relay.core.scheduler import Scheduler

    scheduler = Scheduler()
    scheduler.register(my_job)
    scheduler.start()
    ...
    await scheduler.shutdown(timeout=30)
"""

from .job import Job, JobContext
from .schedule import (
    CronSchedule,
    IntervalSchedule,
    InvalidScheduleError,
    Schedule,
    parse_duration,
    parse_schedule,
)
from .scheduler import (
    DuplicateJobError,
    JobError,
    Scheduler,
    SchedulerError,
    SchedulerShutdownError,
)

__all__ = [
    "Job",
    "JobContext",
    "JobError",
    "Schedule",
    "CronSchedule",
    "IntervalSchedule",
    "InvalidScheduleError",
    "parse_duration",
    "parse_schedule",
    "Scheduler",
    "SchedulerError",
    "DuplicateJobError",
    "SchedulerShutdownError",
]
