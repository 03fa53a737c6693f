"""Tests for the scan scheduler."""
import asyncio

import pytest

from cybershield_agent.services.scheduler import SCAN_JOB_ID, SchedulerService
from cybershield_agent.services.task_runner import TaskRunner

from conftest import FakeScanners


@pytest.fixture
async def scheduler(state, store, tmp_path):
    notifications = []

    async def notify(message_type, payload):
        notifications.append((message_type, payload))

    gate = asyncio.Event()
    runner = TaskRunner(state, store, str(tmp_path / "reports"), scanners=FakeScanners(gate=gate), notify=notify)
    service = SchedulerService(runner, store)
    service.gate = gate
    service.notifications = notifications
    service.start()
    yield service
    gate.set()
    await runner.wait_idle()
    service.stop()


@pytest.mark.parametrize("expression", ["", "every hour", "* * * *", "61 * * * *"])
def test_invalid_expressions_rejected(expression):
    with pytest.raises(ValueError):
        SchedulerService.parse(expression)


async def test_reschedule_replaces_job_and_persists(scheduler, store):
    await scheduler.reschedule("*/5 * * * *")
    await scheduler.reschedule("0 3 * * *")

    jobs = scheduler.scheduler.get_jobs()
    assert [job.id for job in jobs] == [SCAN_JOB_ID]
    assert "hour='3'" in str(jobs[0].trigger)
    assert await store.get("scanInterval") == "0 3 * * *"


async def test_invalid_reschedule_keeps_current_schedule(scheduler, store):
    await scheduler.reschedule("*/5 * * * *")
    trigger_before = str(scheduler.scheduler.get_job(SCAN_JOB_ID).trigger)

    with pytest.raises(ValueError):
        await scheduler.reschedule("not a cron")

    assert str(scheduler.scheduler.get_job(SCAN_JOB_ID).trigger) == trigger_before
    assert await store.get("scanInterval") == "*/5 * * * *"


async def test_restore_uses_stored_schedule(scheduler, store):
    await store.set("scanInterval", "15 * * * *")
    await scheduler.restore()
    assert scheduler.cron_expression == "15 * * * *"
    assert scheduler.scheduler.get_job(SCAN_JOB_ID) is not None


async def test_fire_while_running_is_skipped(scheduler):
    first = await scheduler.fire()
    assert first is not None

    assert await scheduler.fire() is None

    scheduler.gate.set()
    await scheduler.runner.wait_idle()
    completes = [p for t, p in scheduler.notifications if t == "scan_complete"]
    assert len(completes) == 1
    assert completes[0]["scanId"] == first.id

    # Once the previous scan finished the next fire runs again
    second = await scheduler.fire()
    assert second is not None and second.id != first.id


async def test_fire_skipped_when_runner_busy_with_manual_scan(scheduler):
    manual = scheduler.runner.submit("quick", "manual")
    assert await scheduler.fire() is None
    assert scheduler.runner.active is manual
