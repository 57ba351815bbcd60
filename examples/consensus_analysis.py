"""
Consensus Analysis Example

Shows how the same votes play out under each quorum rule, and how evidence
and expertise move the aggregate confidence.

Usage:
    python examples/consensus_analysis.py
"""

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from conclave.consensus import QuorumRule, Vote, VoteChoice, aggregate_confidence, evaluate

console = Console()

ROSTER = ["gemini", "claude", "codex"]

RULES = {
    "majority": QuorumRule.majority(),
    "unanimous": QuorumRule.unanimous(),
    "threshold 0.7": QuorumRule.at_least(0.7),
}

SCENARIOS = {
    "High agreement": [
        Vote("gemini", VoteChoice.YES, 0.9, evidence_count=3),
        Vote("claude", VoteChoice.YES, 0.6),
        Vote("codex", VoteChoice.YES, 0.8, evidence_count=1),
    ],
    "Split": [
        Vote("gemini", VoteChoice.YES, 0.9),
        Vote("claude", VoteChoice.NO, 0.7, evidence_count=4),
    ],
    "One abstains": [
        Vote("gemini", VoteChoice.YES, 0.8),
        Vote("claude", VoteChoice.YES, 0.8),
        Vote("codex", VoteChoice.ABSTAIN, 0.5),
    ],
}


def display_scenario(name: str, votes: list[Vote]) -> None:
    table = Table(title=name)
    table.add_column("Rule", style="cyan")
    table.add_column("Outcome", style="magenta")

    for label, rule in RULES.items():
        table.add_row(label, evaluate(rule, votes, ROSTER).value)

    console.print(table)
    console.print(f"  aggregate confidence: [bold]{aggregate_confidence(votes):.3f}[/bold]")
    # Trusting claude twice as much on the split.
    weighted = aggregate_confidence(votes, {"claude": 2.0})
    console.print(f"  with claude weighted x2: [bold]{weighted:.3f}[/bold]\n")


def main():
    console.print(
        Panel.fit(
            "[bold]Consensus Analysis Example[/bold]\nOne vote set, three quorum rules",
            border_style="blue",
        )
    )
    for name, votes in SCENARIOS.items():
        display_scenario(name, votes)


if __name__ == "__main__":
    main()
