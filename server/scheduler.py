import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from observability import structured_logger, metrics, pass_name_var

RETRY_COMMANDS_INTERVAL = 120
RETRY_COMMANDS_DEBUG_INTERVAL = 20
UNCONFIGURED_DEVICES_INTERVAL = 30
SCHEDULED_CHECKIN_INTERVAL = 30 * 60
SCHEDULED_CHECKIN_DEBUG_INTERVAL = 20


@dataclass
class ScheduledJob:
    name: str
    interval_seconds: float
    func: Callable[[], Awaitable[object]]


def default_jobs(director, debug: bool = False) -> List[ScheduledJob]:
    return [
        ScheduledJob(
            "retry_commands",
            RETRY_COMMANDS_DEBUG_INTERVAL if debug else RETRY_COMMANDS_INTERVAL,
            director.retry_commands,
        ),
        ScheduledJob(
            "unconfigured_devices",
            UNCONFIGURED_DEVICES_INTERVAL,
            director.process_unconfigured_devices,
        ),
        ScheduledJob(
            "scheduled_checkin",
            SCHEDULED_CHECKIN_DEBUG_INTERVAL if debug else SCHEDULED_CHECKIN_INTERVAL,
            director.process_scheduled_checkin,
        ),
    ]


class DirectorScheduler:
    """
    Runs each job on its own timer until stop() is called.

    A job runs once immediately and then every interval. Errors are logged
    and never end the loop or affect the other jobs.
    """

    def __init__(
        self,
        jobs: List[ScheduledJob],
        startup: Optional[Callable[[], Awaitable[object]]] = None,
        shutdown_grace_seconds: float = 10.0
    ):
        self.jobs = jobs
        self.startup = startup
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.tasks: List[asyncio.Task] = []
        self.running = False
        self._stop_event: Optional[asyncio.Event] = None

    @classmethod
    def for_director(cls, director, debug: bool = False) -> "DirectorScheduler":
        # Initial inventory import runs once at startup
        return cls(default_jobs(director, debug), startup=director.fetch_devices)

    async def run_job_once(self, job: ScheduledJob) -> bool:
        start = time.monotonic()
        try:
            await job.func()
        except Exception as e:
            metrics.inc_counter("scheduler_job_runs_total", {"job": job.name, "status": "error"})
            structured_logger.log_event(
                "scheduler.job.error",
                level="ERROR",
                job=job.name,
                error=str(e),
                error_type=type(e).__name__
            )
            return False

        latency_ms = (time.monotonic() - start) * 1000
        metrics.inc_counter("scheduler_job_runs_total", {"job": job.name, "status": "success"})
        metrics.observe_histogram("scheduler_job_duration_ms", latency_ms, {"job": job.name})
        structured_logger.log_event(
            "scheduler.job.tick",
            level="DEBUG",
            job=job.name,
            latency_ms=round(latency_ms, 2)
        )
        return True

    async def _run_loop(self, job: ScheduledJob):
        pass_name_var.set(job.name)
        while not self._stop_event.is_set():
            await self.run_job_once(job)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=job.interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def _run_startup(self):
        pass_name_var.set("startup")
        await self.run_job_once(ScheduledJob("fetch_devices", 0, self.startup))

    async def start(self):
        if self.running:
            structured_logger.log_event("scheduler.already_running", level="WARN")
            return

        self.running = True
        self._stop_event = asyncio.Event()

        if self.startup is not None:
            self.tasks.append(asyncio.create_task(self._run_startup()))
        for job in self.jobs:
            self.tasks.append(asyncio.create_task(self._run_loop(job), name=f"director-{job.name}"))

        structured_logger.log_event(
            "scheduler.started",
            jobs={job.name: job.interval_seconds for job in self.jobs}
        )

    async def stop(self):
        if not self.running:
            return

        self.running = False
        self._stop_event.set()

        pending = set()
        if self.tasks:
            _, pending = await asyncio.wait(self.tasks, timeout=self.shutdown_grace_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self.tasks = []

        structured_logger.log_event("scheduler.stopped", cancelled=len(pending))
