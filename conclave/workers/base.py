"""Long-running task worker base class."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Sequence
from typing import Any

from ..session import Coordinator, SessionHandle
from ..tasks import ClaimState, Task

logger = logging.getLogger(__name__)


class TaskWorker:
    """Claims tasks from one session and runs ``process`` on each.

    While ``process`` runs, a background loop heartbeats the claim. If the
    claim is lost the processing task is cancelled and its result dropped;
    the queue has already put the task back to ``pending``.
    """

    def __init__(
        self,
        coordinator: Coordinator,
        *,
        agent_id: str,
        session_id: str | None = None,
        types: Sequence[str] | None = None,
        idle_sleep: float = 1.0,
        heartbeat_interval: float | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.agent_id = agent_id
        self.session_id = session_id
        self.types = list(types) if types is not None else None
        self.idle_sleep = idle_sleep
        self.heartbeat_interval = (
            heartbeat_interval
            if heartbeat_interval is not None
            else coordinator.tasks.claim_ttl / 3
        )
        self.handle: SessionHandle | None = None
        self.shutdown_requested = False

    async def setup(self) -> SessionHandle:
        if self.handle is None:
            self.handle = await self.coordinator.join(self.agent_id, self.session_id)
            self.session_id = self.handle.session_id
        return self.handle

    def _install_signal_handlers(self) -> None:
        def _handle_signal(signum: int, frame: object) -> None:
            self.shutdown_requested = True

        signal.signal(signal.SIGTERM, _handle_signal)
        signal.signal(signal.SIGINT, _handle_signal)

    async def process(self, task: Task) -> Any:
        """Override in subclasses to execute a task. The return value is the result."""
        raise NotImplementedError

    async def _heartbeat(self, task: Task, work: asyncio.Task[Any]) -> None:
        assert self.handle is not None
        while not work.done():
            await asyncio.sleep(self.heartbeat_interval)
            if work.done():
                return
            if await self.handle.heartbeat(task.id) == ClaimState.LOST:
                logger.warning("%s lost its claim on task %s", self.agent_id, task.id)
                work.cancel()
                return

    async def run_once(self) -> bool:
        """Claim and run one task. Returns False when nothing was claimable."""
        handle = await self.setup()
        task = await handle.claim(self.types)
        if task is None:
            return False
        if await handle.start(task.id) == ClaimState.LOST:
            return True

        work = asyncio.create_task(self.process(task))
        beat = asyncio.create_task(self._heartbeat(task, work))
        try:
            result = await work
        except asyncio.CancelledError:
            if beat.done() and not beat.cancelled() and beat.exception() is None:
                # Cancelled by the heartbeat loop after losing the claim.
                return True
            raise
        except Exception as exc:
            logger.exception("Task %s failed in %s", task.id, self.agent_id)
            await handle.fail(task.id, f"{type(exc).__name__}: {exc}")
            return True
        finally:
            beat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await beat

        if await handle.complete(task.id, result) == ClaimState.LOST:
            logger.warning("Result of task %s dropped: claim expired first", task.id)
        return True

    async def run_forever(self) -> None:
        await self.setup()
        self._install_signal_handlers()

        while not self.shutdown_requested:
            if not await self.run_once():
                await asyncio.sleep(self.idle_sleep)

        logger.info("%s shutting down", self.agent_id)
