"""Domain models for the catalog spreadsheet sync tool.

This package contains the domain model classes used throughout the
application: resource schemas and runtime settings, mapped rows and sheets,
reconciliation records and the run summary.
"""

from .config_models import (
    ApiConfig,
    AppConfig,
    ColumnSpec,
    ImportSettings,
    ReferenceSpec,
    ResourceSchema,
    SheetSchema,
)
from .mapped_sheet import MappedSheet, RowFailure
from .processing_result import ImportSummary, WriteStatsAccumulator
from .reconciliation import OrphanedChildRow, ReconciliationRecord, Resolution, RunState
from .row_data import MappedRow

__all__ = [
    # Configuration models
    "ApiConfig",
    "AppConfig",
    "ImportSettings",
    "ColumnSpec",
    "ReferenceSpec",
    "SheetSchema",
    "ResourceSchema",
    # Processing models
    "MappedRow",
    "MappedSheet",
    "RowFailure",
    "RunState",
    "Resolution",
    "ReconciliationRecord",
    "OrphanedChildRow",
    "ImportSummary",
    "WriteStatsAccumulator",
]
