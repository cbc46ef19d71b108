"""
Job Scheduler

Triggers registered jobs on their schedules inside the running event loop.

Each triggered run is wrapped so that it:
- is skipped once shutdown has begun
- is skipped when the job already has `max_concurrent_runs` runs in flight
- is bounded by the configured per-run timeout, and sees a cooperative
  deadline `stop_grace` seconds before it
- never takes the process down: exceptions are logged with their traceback
- logs start, outcome and duration

Usage:
    scheduler = Scheduler(JobConfig.from_env())
    scheduler.register(DispatcherJob(dispatcher))
    scheduler.start()
    ...
    await scheduler.shutdown(timeout=30)
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from ..config import JobConfig
from ..observability.metrics import record_counter, record_histogram
from .job import Job, JobContext
from .schedule import InvalidScheduleError, Schedule, parse_schedule

logger = logging.getLogger(__name__)


class SchedulerError(Exception):
    """Base class for scheduler failures."""


class DuplicateJobError(SchedulerError):
    """A job with the same name is already registered."""


class SchedulerShutdownError(SchedulerError):
    """In-flight runs did not finish before the shutdown deadline."""

    def __init__(self, running: int):
        self.running = running
        super().__init__(f"shutdown timeout exceeded with {running} jobs still running")


class JobError(Exception):
    """
    Expected failure reported by a job (as opposed to a crash).

    Logged without a traceback; anything else escaping run() is treated as a
    crash and logged with one.
    """


@dataclass
class _Entry:
    job: Job
    schedule: Schedule


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Scheduler:
    """Cron-style scheduler with graceful shutdown and per-job concurrency caps."""

    def __init__(self, config: Optional[JobConfig] = None):
        self.config = config or JobConfig()
        self._entries: Dict[str, _Entry] = {}

        # job name -> runs in flight; only used for the concurrency cap
        self._running: Dict[str, int] = {}
        self._running_lock = threading.Lock()

        self._shutdown = asyncio.Event()
        self._trigger_tasks: List[asyncio.Task] = []
        self._runs: Set[asyncio.Task] = set()
        self._started = False

    @property
    def jobs(self) -> List[Job]:
        return [entry.job for entry in self._entries.values()]

    @property
    def is_running(self) -> bool:
        return self._started and not self._shutdown.is_set()

    def register(self, job: Job) -> None:
        """
        Register a job under its schedule.

        Raises:
            InvalidScheduleError: the job's schedule cannot be parsed
            DuplicateJobError: a job with this name is already registered
        """
        if job.name in self._entries:
            raise DuplicateJobError(f"job already registered: {job.name}")

        try:
            schedule = parse_schedule(job.schedule)
        except InvalidScheduleError as e:
            raise InvalidScheduleError(f"failed to register job {job.name}: {e}") from e

        self._entries[job.name] = _Entry(job=job, schedule=schedule)

        if self._started and not self._shutdown.is_set():
            self._spawn_trigger_loop(self._entries[job.name])

        logger.info(
            f"job registered: {job.name}",
            extra={"job": job.name, "schedule": job.schedule},
        )

    def start(self) -> None:
        """Begin triggering jobs. Returns immediately; needs a running loop."""
        if self._started:
            return

        self._started = True
        for entry in self._entries.values():
            self._spawn_trigger_loop(entry)

        logger.info(
            "starting scheduler",
            extra={
                "jobs_count": len(self._entries),
                "default_timeout_seconds": self.config.timeout,
                "max_concurrent_runs": self.config.max_concurrent_runs,
            },
        )

    def _spawn_trigger_loop(self, entry: _Entry) -> None:
        task = asyncio.get_running_loop().create_task(
            self._trigger_loop(entry),
            name=f"scheduler:{entry.job.name}",
        )
        self._trigger_tasks.append(task)

    async def _trigger_loop(self, entry: _Entry) -> None:
        next_fire = entry.schedule.next_after(_utcnow())

        while not self._shutdown.is_set():
            delay = (next_fire - _utcnow()).total_seconds()
            if delay > 0:
                try:
                    await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
                    break
                except asyncio.TimeoutError:
                    pass

            self.trigger(entry.job.name)
            # fire times missed while the loop was busy are skipped
            next_fire = entry.schedule.next_after(max(next_fire, _utcnow()))

    def trigger(self, job_name: str) -> Optional[asyncio.Task]:
        """
        Start one run of a registered job now, outside its schedule.

        Returns the run task, or None when shutdown has begun.
        """
        entry = self._entries[job_name]

        if self._shutdown.is_set():
            logger.info(
                "skipping job execution (scheduler shutting down)",
                extra={"job": job_name},
            )
            return None

        task = asyncio.get_running_loop().create_task(
            self._execute(entry.job),
            name=f"job:{job_name}",
        )
        self._runs.add(task)
        task.add_done_callback(self._runs.discard)
        return task

    def running_count(self, job_name: Optional[str] = None) -> int:
        """Runs in flight for one job, or for all jobs."""
        with self._running_lock:
            if job_name is not None:
                return self._running.get(job_name, 0)
            return sum(self._running.values())

    def _acquire_slot(self, job_name: str) -> bool:
        cap = self.config.max_concurrent_runs
        with self._running_lock:
            current = self._running.get(job_name, 0)
            if cap > 0 and current >= cap:
                return False
            self._running[job_name] = current + 1
            return True

    def _release_slot(self, job_name: str) -> None:
        with self._running_lock:
            remaining = self._running.get(job_name, 0) - 1
            if remaining > 0:
                self._running[job_name] = remaining
            else:
                self._running.pop(job_name, None)

    def _cooperative_timeout(self, timeout: Optional[float]) -> Optional[float]:
        """Deadline handed to the job; earlier than the hard cancel."""
        if timeout is None:
            return None
        grace = min(max(self.config.stop_grace, 0.0), timeout / 2)
        return timeout - grace

    async def _execute(self, job: Job) -> None:
        job_name = job.name

        if self._shutdown.is_set():
            logger.info(
                "skipping job execution (scheduler shutting down)",
                extra={"job": job_name},
            )
            return

        if not self._acquire_slot(job_name):
            logger.warning(
                "job skipped (max concurrent executions reached)",
                extra={"job": job_name, "max_concurrent": self.config.max_concurrent_runs},
            )
            record_counter("scheduler_job_runs_total", attributes={"job": job_name, "outcome": "skipped"})
            return

        timeout = self.config.timeout if self.config.timeout and self.config.timeout > 0 else None
        ctx = JobContext.with_timeout(job_name, self._cooperative_timeout(timeout), self._shutdown)
        outcome = "completed"
        start = time.monotonic()

        logger.info("job started", extra={"job": job_name})

        try:
            await asyncio.wait_for(job.run(ctx), timeout=timeout)
        except asyncio.TimeoutError:
            outcome = "timeout"
            logger.error(
                "job timed out",
                extra={"job": job_name, "timeout_seconds": timeout},
            )
        except JobError as e:
            outcome = "failed"
            logger.error(
                "job failed",
                extra={"job": job_name, "error": str(e)},
            )
        except Exception as e:
            outcome = "crashed"
            logger.error(
                "job crashed, recovered",
                exc_info=True,
                extra={"job": job_name, "error": repr(e)},
            )
        finally:
            self._release_slot(job_name)
            duration = time.monotonic() - start
            record_counter("scheduler_job_runs_total", attributes={"job": job_name, "outcome": outcome})
            record_histogram("scheduler_job_duration_seconds", duration, {"job": job_name})

        if outcome == "completed":
            logger.info(
                "job completed successfully",
                extra={"job": job_name, "duration_ms": int(duration * 1000)},
            )
        else:
            logger.info(
                "job finished",
                extra={"job": job_name, "outcome": outcome, "duration_ms": int(duration * 1000)},
            )

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Stop triggering and wait for in-flight runs.

        Runs are not cancelled; they see `ctx.cancelled` and are expected to
        wind down on their own.

        Raises:
            SchedulerShutdownError: runs were still executing at the deadline
        """
        timeout = self.config.shutdown_timeout if timeout is None else timeout
        logger.info("shutting down scheduler...")

        self._shutdown.set()

        for task in self._trigger_tasks:
            task.cancel()
        await asyncio.gather(*self._trigger_tasks, return_exceptions=True)
        self._trigger_tasks.clear()

        in_flight = set(self._runs)
        if in_flight:
            _, pending = await asyncio.wait(in_flight, timeout=timeout)
            if pending:
                running = self.running_count() or len(pending)
                logger.warning(
                    "shutdown timeout exceeded with jobs still running",
                    extra={"running_jobs": running},
                )
                raise SchedulerShutdownError(running)

        logger.info("all running jobs completed")
