"""
Schedule Parsing

Supported forms:
    "*/5 * * * *"      standard 5-field cron
    "@every 1m30s"     fixed interval, Go-style duration (ns, us, ms, s, m, h)
    "@daily"           shorthand (@yearly, @annually, @monthly, @weekly,
                       @daily, @midnight, @hourly)
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from datetime import datetime, timedelta

from croniter import croniter


class InvalidScheduleError(ValueError):
    """The schedule expression cannot be parsed."""


SHORTHANDS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")


def parse_duration(text: str) -> timedelta:
    """
    Parse a Go-style duration such as "5s", "1m30s" or "1.5h".

    Raises:
        InvalidScheduleError: empty, malformed or non-positive duration
    """
    text = text.strip()
    if not text:
        raise InvalidScheduleError("empty duration")

    pos = 0
    seconds = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if pos != len(text):
        raise InvalidScheduleError(f"invalid duration: {text!r}")
    if seconds <= 0:
        raise InvalidScheduleError(f"duration must be positive: {text!r}")

    return timedelta(seconds=seconds)


class Schedule(ABC):
    """Computes fire times."""

    def __init__(self, expression: str):
        self.expression = expression

    @abstractmethod
    def next_after(self, moment: datetime) -> datetime:
        """First fire time strictly after `moment`."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.expression!r})"


class IntervalSchedule(Schedule):
    def __init__(self, expression: str, interval: timedelta):
        super().__init__(expression)
        self.interval = interval

    def next_after(self, moment: datetime) -> datetime:
        return moment + self.interval


class CronSchedule(Schedule):
    def __init__(self, expression: str, cron: str):
        super().__init__(expression)
        self.cron = cron

    def next_after(self, moment: datetime) -> datetime:
        return croniter(self.cron, moment).get_next(datetime)


def parse_schedule(expression: str) -> Schedule:
    """
    Parse a schedule expression.

    Raises:
        InvalidScheduleError: unknown shorthand, bad duration or bad cron
    """
    if not isinstance(expression, str) or not expression.strip():
        raise InvalidScheduleError("empty schedule expression")

    expr = expression.strip()

    if expr.startswith("@every"):
        return IntervalSchedule(expression, parse_duration(expr[len("@every"):]))

    if expr.startswith("@"):
        cron = SHORTHANDS.get(expr.lower())
        if cron is None:
            raise InvalidScheduleError(f"unknown schedule shorthand: {expr!r}")
        return CronSchedule(expression, cron)

    if len(expr.split()) != 5 or not croniter.is_valid(expr):
        raise InvalidScheduleError(f"invalid cron expression: {expr!r}")

    return CronSchedule(expression, expr)
