from __future__ import annotations

from dataclasses import dataclass, field

from .config_models import SheetSchema
from .row_data import MappedRow

"""MappedSheet model for the catalog spreadsheet sync tool.

MappedSheet is the processing unit for a single sheet once every row went
through the Field Mapper: rows that mapped cleanly plus the per-row failures.
"""

__all__ = [
    "MappedSheet",
    "RowFailure",
]


@dataclass(frozen=True)
class RowFailure:
    """A row that could not be mapped (or resolved) and will not be written."""
    sheet_name: str
    row_number: int
    key: str | None  # natural key if readable, used to find the owning record
    error_type: str  # UPPER_SNAKE
    message: str


@dataclass(frozen=True)
class MappedSheet:
    """Processing unit for a single sheet."""
    sheet_name: str
    schema: SheetSchema
    rows: list[MappedRow] = field(default_factory=list)
    failures: list[RowFailure] = field(default_factory=list)

    @property
    def failed_keys(self) -> set[str]:
        return {f.key for f in self.failures if f.key}
