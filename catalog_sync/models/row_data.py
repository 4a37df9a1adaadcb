from __future__ import annotations

from dataclasses import dataclass
from typing import Any

"""MappedRow model for the catalog spreadsheet sync tool.

MappedRow represents a single sheet row after the Field Mapper has turned its
cells into payload values.
"""

__all__ = [
    "MappedRow",
]


@dataclass(frozen=True)
class MappedRow:
    """Logical representation of a single row after column -> field mapping.

    The row_number refers to the original spreadsheet row number (header row is
    1, so the first data row is 2).
    """
    row_number: int
    values: dict[str, Any]  # payload field path -> coerced value
    identifier: str | None = None  # explicit ID column value (never sent in body)
    key: str | None = None  # natural key, trimmed
