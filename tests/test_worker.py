import asyncio
from typing import Any

import pytest

from conclave.session import Coordinator
from conclave.tasks import Task, TaskStatus
from conclave.workers import TaskWorker


class EchoWorker(TaskWorker):
    async def process(self, task: Task) -> Any:
        if task.params.get("explode"):
            raise RuntimeError("boom")
        return {"echo": task.params.get("msg")}


class StuckWorker(TaskWorker):
    """Stalls until its claim is lost."""

    def __init__(self, *args, clock, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.clock = clock

    async def process(self, task: Task) -> Any:
        self.clock.advance(61)
        await asyncio.Event().wait()


@pytest.mark.asyncio
async def test_worker_completes_tasks(coordinator: Coordinator) -> None:
    lead = await coordinator.join("lead")
    task_id = await lead.create_task("echo", {"msg": "hello"})
    worker = EchoWorker(coordinator, agent_id="w1", session_id=lead.session_id, idle_sleep=0.01)

    assert await worker.run_once()
    assert not await worker.run_once()

    task = await coordinator.tasks.get(task_id)
    assert task.status == TaskStatus.COMPLETED
    assert task.result == {"echo": "hello"}
    assert worker.handle.stats["tasks_completed"] == 1


@pytest.mark.asyncio
async def test_worker_reports_failures(coordinator: Coordinator) -> None:
    lead = await coordinator.join("lead")
    task_id = await lead.create_task("echo", {"explode": True}, max_retries=0)
    worker = EchoWorker(coordinator, agent_id="w1", session_id=lead.session_id)

    assert await worker.run_once()

    task = await coordinator.tasks.get(task_id)
    assert task.status == TaskStatus.FAILED
    assert task.last_error == "RuntimeError: boom"


@pytest.mark.asyncio
async def test_worker_only_claims_its_types(coordinator: Coordinator) -> None:
    lead = await coordinator.join("lead")
    await lead.create_task("other")
    worker = EchoWorker(coordinator, agent_id="w1", session_id=lead.session_id, types=["echo"])

    assert not await worker.run_once()


@pytest.mark.asyncio
async def test_lost_claim_cancels_processing(coordinator: Coordinator, clock) -> None:
    lead = await coordinator.join("lead")
    task_id = await lead.create_task("slow")
    worker = StuckWorker(
        coordinator, agent_id="w1", session_id=lead.session_id, heartbeat_interval=0.01, clock=clock
    )

    assert await asyncio.wait_for(worker.run_once(), timeout=2)

    task = await coordinator.tasks.get(task_id)
    assert task.status == TaskStatus.PENDING
    assert task.expired_claims == ["w1"]


@pytest.mark.asyncio
async def test_run_forever_stops_on_shutdown(coordinator: Coordinator, monkeypatch) -> None:
    lead = await coordinator.join("lead")
    for i in range(2):
        await lead.create_task("echo", {"msg": i})

    class OneShot(EchoWorker):
        async def process(self, task: Task) -> Any:
            self.shutdown_requested = True
            return await super().process(task)

    worker = OneShot(coordinator, agent_id="w1", session_id=lead.session_id)
    monkeypatch.setattr(worker, "_install_signal_handlers", lambda: None)
    await asyncio.wait_for(worker.run_forever(), timeout=2)

    statuses = sorted(t.status.value for t in await lead.tasks())
    assert statuses == ["completed", "pending"]
