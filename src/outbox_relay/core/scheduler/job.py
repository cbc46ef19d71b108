"""
Job Contract

A job is a named unit of recurring work with a schedule. The scheduler
passes each run a JobContext carrying the run's deadline and the shared
shutdown signal; long-running jobs should check `ctx.cancelled` between
units of work.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class JobContext:
    """Cooperative cancellation handle for one job run."""

    job_name: str
    deadline: Optional[float] = None  # time.monotonic() value
    shutdown: asyncio.Event = field(default_factory=asyncio.Event)

    @classmethod
    def with_timeout(
        cls,
        job_name: str,
        timeout: Optional[float],
        shutdown: Optional[asyncio.Event] = None,
    ) -> "JobContext":
        deadline = time.monotonic() + timeout if timeout is not None else None
        return cls(job_name=job_name, deadline=deadline, shutdown=shutdown or asyncio.Event())

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None when unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    @property
    def cancelled(self) -> bool:
        """True once the scheduler is shutting down or the deadline passed."""
        if self.shutdown.is_set():
            return True
        remaining = self.remaining()
        return remaining is not None and remaining <= 0


class Job(ABC):
    """Recurring work the Scheduler can run."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier, used in logs and the concurrency map."""

    @property
    @abstractmethod
    def schedule(self) -> str:
        """Cron expression ("0 2 * * *") or shorthand ("@every 5s", "@daily")."""

    @abstractmethod
    async def run(self, ctx: JobContext) -> None:
        """Do the work. Raise to report a failed run."""
