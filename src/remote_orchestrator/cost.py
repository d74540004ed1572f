"""Cost tracking for one run of the driving process.

Sub-agent costs arrive first, as each subtask completes; the process
reports its own total at the end of the run. The orchestration total
only ever grows by the part of that report not already counted.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class CostEntry:
    source: str  # "subtask" | "process"
    cost_usd: float
    description: str


class CostTracker:
    """Accumulates USD cost entries for a single process run."""

    def __init__(self) -> None:
        self._entries: list[CostEntry] = []

    def record_subtask(self, subtask_id: str, cost_usd: float) -> float:
        """Record a sub-agent cost. Returns the amount added to the total."""
        if cost_usd <= 0:
            return 0.0
        self._entries.append(CostEntry("subtask", cost_usd, subtask_id))
        return cost_usd

    def record_reported_total(self, reported_usd: float) -> float:
        """Record the run total reported by the process.

        Returns the amount not already covered by recorded entries.
        """
        delta = max(0.0, reported_usd - self.total_usd)
        if delta > 0:
            self._entries.append(CostEntry("process", delta, "reported run total"))
        return delta

    @property
    def total_usd(self) -> float:
        return sum(e.cost_usd for e in self._entries)

    @property
    def subtask_usd(self) -> float:
        return sum(e.cost_usd for e in self._entries if e.source == "subtask")

    def breakdown(self) -> dict[str, float]:
        """Per-source cost breakdown."""
        result: dict[str, float] = {}
        for e in self._entries:
            result[e.source] = result.get(e.source, 0.0) + e.cost_usd
        return result

    def summary(self) -> str:
        lines = ["Cost Summary:"]
        for source, cost in self.breakdown().items():
            lines.append(f"  {source}: ${cost:.4f}")
        lines.append(f"  Total: ${self.total_usd:.4f}")
        return "\n".join(lines)
