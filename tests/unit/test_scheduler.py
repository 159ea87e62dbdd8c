"""
Unit tests for the periodic job scheduler.
"""

import asyncio

import pytest

from vigil.pipeline.scheduler import PeriodicTask, Scheduler, build_scheduler


class TestPeriodicTask:
    """Tests for a single job."""

    @pytest.mark.asyncio
    async def test_skip_if_running(self):
        release = asyncio.Event()

        async def job():
            await release.wait()

        task = PeriodicTask("slow", 60, job)
        first = asyncio.create_task(task.run_once())
        await asyncio.sleep(0)

        assert task.running is True
        assert await task.run_once() is False
        assert task.skipped == 1

        release.set()
        assert await first is True
        assert task.runs == 1
        assert task.running is False

    @pytest.mark.asyncio
    async def test_failure_is_recorded(self):
        async def job():
            raise RuntimeError("store unavailable")

        task = PeriodicTask("broken", 60, job)

        assert await task.run_once() is True
        assert task.failures == 1
        assert task.runs == 0
        assert task.last_error == "store unavailable"
        assert task.status()["last_run"] is not None

    @pytest.mark.asyncio
    async def test_ticks_repeatedly(self):
        calls = []

        async def job():
            calls.append(1)

        task = PeriodicTask("fast", 0.01, job, run_immediately=True)
        task.start()
        await asyncio.sleep(0.05)
        await task.stop(timeout=1)

        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_stop_waits_for_inflight_run(self):
        finished = []

        async def job():
            await asyncio.sleep(0.05)
            finished.append(True)

        task = PeriodicTask("flush", 60, job, run_immediately=True)
        task.start()
        await asyncio.sleep(0.01)
        await task.stop(timeout=1)

        assert finished == [True]

    @pytest.mark.asyncio
    async def test_stop_cancels_after_timeout(self):
        async def job():
            await asyncio.sleep(10)

        task = PeriodicTask("stuck", 60, job, run_immediately=True)
        task.start()
        await asyncio.sleep(0.01)
        await task.stop(timeout=0.01)
        await asyncio.sleep(0)

        assert task.runs == 0


class TestScheduler:
    """Tests for job registration and triggering."""

    @pytest.mark.asyncio
    async def test_trigger_runs_job(self):
        calls = []

        async def job():
            calls.append(1)

        scheduler = Scheduler()
        scheduler.add("report", 3600, job)

        assert await scheduler.trigger("report") is True
        assert calls == [1]
        assert scheduler.status()["report"]["runs"] == 1

    def test_duplicate_name_rejected(self):
        async def job():
            return None

        scheduler = Scheduler()
        scheduler.add("cleanup", 60, job)

        with pytest.raises(ValueError):
            scheduler.add("cleanup", 60, job)

    @pytest.mark.asyncio
    async def test_jobs_do_not_block_each_other(self):
        release = asyncio.Event()
        calls = []

        async def slow():
            await release.wait()

        async def fast():
            calls.append(1)

        scheduler = Scheduler()
        scheduler.add("slow", 60, slow)
        scheduler.add("fast", 60, fast)

        pending = asyncio.create_task(scheduler.trigger("slow"))
        await asyncio.sleep(0)
        assert await scheduler.trigger("fast") is True
        assert calls == [1]

        release.set()
        await pending

    def test_build_scheduler_registers_pipeline_jobs(self, pipeline, test_settings):
        scheduler = build_scheduler(pipeline, test_settings)

        assert {t.name for t in scheduler.tasks} == {
            "audit_flush",
            "metrics",
            "anomaly_detection",
            "security_scan",
            "daily_report",
            "integrity_check",
            "cleanup",
        }
        assert scheduler.get("audit_flush").interval == test_settings.audit_flush_interval_seconds
        assert scheduler.get("metrics").run_immediately is True
