from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

"""Config dataclasses for the catalog spreadsheet sync tool.

Two families live here:
- runtime settings (API endpoint, write fan-out, leniency policies) loaded
  from config/import.yml
- declarative resource schemas (sheets, columns, natural keys) loaded from
  resources.yml

Both are produced by catalog_sync.config.loader and are treated as read-only
afterwards.
"""

COLUMN_KINDS = ("string", "int", "float", "enum", "status", "list", "steps")


@dataclass(frozen=True)
class ApiConfig:
    """Connection settings for the catalog REST API.

    Environment variables (CATALOG_API_BASE_URL / CATALOG_API_TOKEN) take
    precedence over these values.
    """
    base_url: str
    timeout_seconds: float = 30.0
    token: str | None = None
    page_size: int = 10  # list refresh after a run (UI table page)
    snapshot_limit: int = 1000  # "全件" 近似用の limit


@dataclass(frozen=True)
class ImportSettings:
    """Per-run behaviour of the reconciliation driver."""
    max_workers: int = 1  # 1 = sequential writes
    write_mode: str = "upsert"  # upsert | create
    category_fallback: str = "first"  # first | reject
    null_sentinels: frozenset[str] = frozenset()  # 大文字化済想定


@dataclass(frozen=True)
class AppConfig:
    """Root configuration object."""
    api: ApiConfig
    settings: ImportSettings
    resources_file: str | None = None


@dataclass(frozen=True)
class ReferenceSpec:
    """Lookup of a human readable name in another resource's snapshot.

    ``options`` / ``parent_field`` describe a nested lookup: the value is
    matched against ``entity[options]`` of the entity already resolved for the
    sibling field ``parent_field`` (attribute option values).
    """
    resource: str
    name_fields: tuple[str, ...] = ("name",)
    fallback: str | None = None  # "first" -> category style fallback
    options: str | None = None
    parent_field: str | None = None


@dataclass(frozen=True)
class ColumnSpec:
    """One FieldMapping entry: spreadsheet header -> payload field path."""
    header: str
    field: str
    kind: str = "string"
    required: bool = False
    default: Any = None
    choices: tuple[str, ...] = ()
    truthy: str = "active"
    falsy: str = "inactive"
    identifier: bool = False
    reference: ReferenceSpec | None = None
    width: int = 15
    examples: tuple[Any, ...] = ()

    @property
    def effective_default(self) -> Any:
        """Declared default, or the empty value of the column kind."""
        if self.default is not None:
            return self.default
        if self.kind in ("int", "float"):
            return 0
        if self.kind in ("list", "steps"):
            return []
        if self.kind == "status":
            return self.falsy
        if self.identifier or self.reference is not None:
            return None
        return ""


@dataclass(frozen=True)
class SheetSchema:
    """Configuration for one sheet of a resource workbook.

    The root sheet has ``role=None``. Child sheets name the payload field they
    fill (``role``), the natural-key column correlating them to root rows and
    how their rows are assembled (``list`` of sub-objects or a ``mapping``).
    """
    sheet_name: str
    columns: tuple[ColumnSpec, ...]
    role: str | None = None
    key_column: str | None = None
    assemble: str = "list"
    key_field: str | None = None
    value_field: str | None = None

    @property
    def is_child(self) -> bool:
        return self.role is not None

    @property
    def headers(self) -> list[str]:
        return [c.header for c in self.columns]

    @property
    def required_columns(self) -> set[str]:
        """Columns that must exist in the sheet header."""
        required = {c.header for c in self.columns if c.required}
        if self.key_column:
            required.add(self.key_column)
        return required

    @property
    def widths(self) -> dict[str, int]:
        return {c.header: c.width for c in self.columns}

    def column(self, header: str) -> ColumnSpec | None:
        for c in self.columns:
            if c.header == header:
                return c
        return None

    def column_by_field(self, field_path: str) -> ColumnSpec | None:
        for c in self.columns:
            if c.field == field_path:
                return c
        return None


@dataclass(frozen=True)
class ResourceSchema:
    """Declarative description of one importable resource."""
    name: str
    path: str  # API collection path (e.g. "products")
    root_sheet: str
    natural_key: str  # root sheet header
    sheets: tuple[SheetSchema, ...]
    id_field: str = "id"
    accept_first_sheet: bool = False
    instructions: tuple[str, ...] = field(default_factory=tuple)

    @property
    def root(self) -> SheetSchema:
        for s in self.sheets:
            if s.sheet_name == self.root_sheet:
                return s
        raise KeyError(self.root_sheet)

    @property
    def children(self) -> list[SheetSchema]:
        return [s for s in self.sheets if s.is_child]

    @property
    def key_field(self) -> str:
        """Payload field holding the natural key."""
        spec = self.root.column(self.natural_key)
        if spec is None:
            raise KeyError(self.natural_key)
        return spec.field

    @property
    def referenced_resources(self) -> set[str]:
        found = set()
        for sheet in self.sheets:
            for c in sheet.columns:
                if c.reference is not None:
                    found.add(c.reference.resource)
        return found
