from __future__ import annotations

import statistics
from dataclasses import dataclass
from datetime import datetime

"""Processing result models for the catalog spreadsheet sync tool.

ImportSummary aggregates one reconciliation run (or one bulk delete) and is the
only thing surfaced to the user afterwards. WriteStatsAccumulator collects the
per-write latency used for the timing fields of the summary.
"""


@dataclass(frozen=True)
class ImportSummary:
    """Aggregated outcome of one run. Immutable after construction."""
    resource: str
    attempted: int
    succeeded: int
    failed: int
    created: int = 0
    updated: int = 0
    errors: tuple[str, ...] = ()  # ordered by root sheet row
    orphaned_child_rows: int = 0  # informational, not counted as failures
    warnings: tuple[str, ...] = ()
    fatal_error: str | None = None  # set only for aborted runs
    start_time: datetime | None = None
    end_time: datetime | None = None
    elapsed_seconds: float = 0.0
    avg_write_seconds: float = 0.0
    p95_write_seconds: float = 0.0

    @property
    def aborted(self) -> bool:
        return self.fatal_error is not None

    @property
    def partial_failure(self) -> bool:
        return self.failed > 0


class WriteStatsAccumulator:
    """Helper class to accumulate per-write timing statistics.

    Collects individual write durations and calculates summary statistics.
    """

    def __init__(self) -> None:
        self.write_times: list[float] = []

    def add_write_time(self, elapsed_seconds: float) -> None:
        """Add a write timing measurement."""
        self.write_times.append(elapsed_seconds)

    def get_stats(self) -> tuple[int, float, float]:
        """Calculate write statistics.

        Returns:
            tuple: (total_writes, avg_write_seconds, p95_write_seconds)
        """
        if not self.write_times:
            return (0, 0.0, 0.0)

        total = len(self.write_times)
        avg = statistics.mean(self.write_times)

        if total == 1:
            p95 = self.write_times[0]
        else:
            # 95th percentile (19th out of 20 quantiles, 0-indexed)
            p95 = statistics.quantiles(self.write_times, n=20, method="inclusive")[18]

        return (total, avg, p95)
