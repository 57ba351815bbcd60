"""
Basic Session Example

Runs a lead and two workers through one in-memory session: the lead queues
tasks, the workers claim and finish them, and everyone votes on the result.

Usage:
    python examples/basic_session.py
"""

import asyncio
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from conclave import Coordinator, FindingCategory, QuorumRule, VoteChoice
from conclave.tasks import Task
from conclave.workers import TaskWorker

console = Console()


class LineCounter(TaskWorker):
    """Pretends to count lines in a file and posts what it saw."""

    async def process(self, task: Task) -> Any:
        path = task.params["path"]
        lines = len(path) * 10
        await self.handle.post_finding(
            FindingCategory.OBSERVATION, f"{path} has {lines} lines", 0.9, [path]
        )
        return {"path": path, "lines": lines}


async def display_tasks(coordinator: Coordinator, session_id: str) -> None:
    table = Table(title="Tasks")

    table.add_column("Type", style="cyan")
    table.add_column("Status", style="magenta")
    table.add_column("Worker")
    table.add_column("Result")

    for task in await coordinator.tasks.list(session_id):
        table.add_row(task.type, task.status.value, task.assigned_to or "-", str(task.result))

    console.print("\n")
    console.print(table)


async def main():
    console.print(
        Panel.fit(
            "[bold]Basic Session Example[/bold]\nTasks, findings and a vote in one session",
            border_style="blue",
        )
    )

    coordinator = Coordinator.in_memory()
    lead = await coordinator.join("lead", context={"goal": "size the repo"})
    console.print(f"[green]✓ Started session {lead.session_id}[/green]")

    for path in ("api/app.py", "api/models.py", "README.md"):
        await lead.create_task("count", {"path": path})

    workers = [
        LineCounter(coordinator, agent_id=name, session_id=lead.session_id, types=["count"])
        for name in ("w1", "w2")
    ]
    while any(await asyncio.gather(*(w.run_once() for w in workers))):
        pass

    await display_tasks(coordinator, lead.session_id)

    for finding in await lead.findings():
        console.print(f"  [dim]{finding.worker_id}[/dim] {finding.content}")

    proposal_id = await lead.open_proposal("Counts look right?", QuorumRule.at_least(0.7))
    await lead.vote(proposal_id, VoteChoice.YES, 0.8)
    for worker in workers:
        await worker.handle.vote(proposal_id, VoteChoice.YES, 0.9, evidence_count=1)
    decision = await lead.resolve(proposal_id)

    console.print(
        f"\nDecision: [bold]{decision.outcome.value}[/bold] "
        f"(confidence {decision.aggregate_confidence:.2f})"
    )
    await lead.leave()


if __name__ == "__main__":
    asyncio.run(main())
