from __future__ import annotations

import sys
from typing import Any

from tqdm import tqdm
from tqdm.std import tqdm as TqdmType

"""Write progress with tqdm (TTY only).

The tracker owns the processed / total counter of one run. The counter only
moves forward and is updated from the driver thread as each write settles.
In non-TTY environments (CI, piped output) no bar is drawn, but ``ratio`` is
still maintained.
"""

__all__ = [
    "ProgressTracker",
    "is_tty_enabled",
]


def is_tty_enabled() -> bool:
    """True when stdout is a TTY and a progress bar should be drawn."""
    return sys.stdout.isatty()


class ProgressTracker:
    """processed / total tracker for the writes of one reconciliation run."""

    def __init__(self, total: int, *, description: str = "Writing records", unit: str = "record") -> None:
        """Initialize progress tracker.

        Args:
            total: Number of writes the run will attempt
            description: Description for the progress bar
            unit: tqdm unit label
        """
        self.total = total
        self.description = description
        self.processed = 0
        self.failed = 0

        self.enabled = is_tty_enabled()
        self.pbar: TqdmType[Any] | None
        if self.enabled:
            self.pbar = tqdm(
                total=total,
                desc=description,
                unit=unit,
                disable=False,
                leave=True,
                position=0,
                ncols=80,
                ascii=True,
            )
        else:
            self.pbar = None

    @property
    def ratio(self) -> float:
        """processed / total in [0, 1]; an empty run counts as complete."""
        if self.total <= 0:
            return 1.0
        return min(self.processed / self.total, 1.0)

    def advance(self, success: bool = True) -> float:
        """Record one settled write and return the new ratio."""
        if self.processed < self.total:
            self.processed += 1
            if self.enabled and self.pbar is not None:
                self.pbar.update(1)
            if not success:
                self.failed += 1
                self.set_postfix(failed=self.failed)
        return self.ratio

    def set_postfix(self, **kwargs: Any) -> None:
        if self.enabled and self.pbar is not None:
            self.pbar.set_postfix(**kwargs)

    def close(self) -> None:
        if self.enabled and self.pbar is not None:
            self.pbar.close()
            self.pbar = None

    def __enter__(self) -> ProgressTracker:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
