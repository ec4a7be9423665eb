"""
Tests for the periodic job scheduler.
"""
import asyncio

from observability import metrics
from scheduler import (
    DirectorScheduler,
    ScheduledJob,
    default_jobs,
)


class StubDirector:
    async def retry_commands(self):
        pass

    async def process_unconfigured_devices(self):
        pass

    async def process_scheduled_checkin(self):
        pass

    async def fetch_devices(self):
        pass


def _intervals(jobs):
    return {job.name: job.interval_seconds for job in jobs}


class TestDefaultJobs:

    def test_production_intervals(self):
        assert _intervals(default_jobs(StubDirector(), debug=False)) == {
            "retry_commands": 120,
            "unconfigured_devices": 30,
            "scheduled_checkin": 1800,
        }

    def test_debug_intervals(self):
        assert _intervals(default_jobs(StubDirector(), debug=True)) == {
            "retry_commands": 20,
            "unconfigured_devices": 30,
            "scheduled_checkin": 20,
        }


class TestDirectorScheduler:

    def test_job_runs_immediately_then_on_each_tick(self):
        calls = []

        async def job():
            calls.append(asyncio.get_running_loop().time())

        async def run():
            scheduler = DirectorScheduler([ScheduledJob("tick", 0.02, job)])
            await scheduler.start()
            await asyncio.sleep(0.09)
            await scheduler.stop()

        asyncio.run(run())

        assert len(calls) >= 3

    def test_first_run_is_not_delayed_by_interval(self):
        calls = []

        async def job():
            calls.append(1)

        async def run():
            scheduler = DirectorScheduler([ScheduledJob("slow", 3600, job)])
            await scheduler.start()
            await asyncio.sleep(0.01)
            await scheduler.stop()

        asyncio.run(run())

        assert calls == [1]

    def test_failing_job_keeps_ticking_and_others_unaffected(self, capture_logs):
        healthy_calls = []
        failing_calls = []

        async def failing():
            failing_calls.append(1)
            raise RuntimeError("database is locked")

        async def healthy():
            healthy_calls.append(1)

        async def run():
            scheduler = DirectorScheduler([
                ScheduledJob("failing", 0.01, failing),
                ScheduledJob("healthy", 0.01, healthy),
            ])
            await scheduler.start()
            await asyncio.sleep(0.06)
            await scheduler.stop()

        asyncio.run(run())

        assert len(failing_calls) >= 2
        assert len(healthy_calls) >= 2
        errors = [log for log in capture_logs if log["event"] == "scheduler.job.error"]
        assert errors and errors[0]["job"] == "failing"
        assert metrics.get_counter("scheduler_job_runs_total", {"job": "failing", "status": "error"}) >= 2

    def test_stop_ends_loops(self):
        async def run():
            scheduler = DirectorScheduler([ScheduledJob("idle", 3600, StubDirector().retry_commands)])
            await scheduler.start()
            assert scheduler.running
            await scheduler.stop()
            return scheduler

        scheduler = asyncio.run(run())

        assert scheduler.running is False
        assert scheduler.tasks == []

    def test_stuck_job_cancelled_after_grace_period(self, capture_logs):
        async def stuck():
            await asyncio.sleep(3600)

        async def run():
            scheduler = DirectorScheduler([ScheduledJob("stuck", 1, stuck)], shutdown_grace_seconds=0.01)
            await scheduler.start()
            await asyncio.sleep(0)
            await scheduler.stop()

        asyncio.run(run())

        [stopped] = [log for log in capture_logs if log["event"] == "scheduler.stopped"]
        assert stopped["cancelled"] == 1

    def test_startup_import_runs_once(self):
        calls = []

        async def startup():
            calls.append(1)

        async def run():
            scheduler = DirectorScheduler([], startup=startup)
            await scheduler.start()
            await asyncio.sleep(0.01)
            await scheduler.stop()

        asyncio.run(run())

        assert calls == [1]

    def test_for_director_wires_default_jobs(self):
        scheduler = DirectorScheduler.for_director(StubDirector(), debug=True)

        assert [job.name for job in scheduler.jobs] == [
            "retry_commands", "unconfigured_devices", "scheduled_checkin"
        ]
        assert scheduler.startup is not None

    def test_start_twice_is_ignored(self, capture_logs):
        async def run():
            scheduler = DirectorScheduler([ScheduledJob("idle", 3600, StubDirector().retry_commands)])
            await scheduler.start()
            await scheduler.start()
            task_count = len(scheduler.tasks)
            await scheduler.stop()
            return task_count

        assert asyncio.run(run()) == 1
        assert any(log["event"] == "scheduler.already_running" for log in capture_logs)
