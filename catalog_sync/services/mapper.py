from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable
from datetime import date, datetime
from typing import Any

from ..excel.codec import SheetData
from ..models.config_models import ColumnSpec, SheetSchema
from ..models.mapped_sheet import MappedSheet, RowFailure
from ..models.row_data import MappedRow

"""Field mapper: spreadsheet cells <-> API payload fields.

Coercion policy (kept lenient on purpose, see DESIGN.md):
- int / float : parseInt / parseFloat prefix semantics, failure -> default
- enum        : case-insensitive; unknown value -> InvalidEnumValue (row rejected)
- list        : "a, b,,c" -> [{name, sortOrder}] (sortOrder = index after filtering)
- steps       : "Title|Desc|30, ..." -> [{stepTitle, stepDescription, duration}]
- status      : equals truthy literal (case-insensitive) else falsy literal
- blank optional cell -> declared default; blank required cell -> MissingValueError
"""

__all__ = [
    "MissingColumnError",
    "RowMappingError",
    "InvalidEnumValue",
    "MissingValueError",
    "check_columns",
    "map_row",
    "map_sheet",
    "unmap_entity",
    "parse_int_lenient",
    "parse_float_lenient",
    "get_path",
    "set_path",
]

logger = logging.getLogger(__name__)

_INT_RE = re.compile(r"^\s*([+-]?\d+)")
_FLOAT_RE = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")


class MissingColumnError(Exception):
    """Raised when required columns are missing in a sheet header."""

    def __init__(self, sheet_name: str, columns: list[str]) -> None:
        self.sheet_name = sheet_name
        self.columns = columns
        self.column = columns[0]
        super().__init__(f"sheet '{sheet_name}' missing columns: {columns}")


class RowMappingError(Exception):
    """Row-level failure: the row is skipped, the run continues."""
    error_type = "ROW_MAPPING_ERROR"

    def __init__(self, column: str, message: str) -> None:
        self.column = column
        super().__init__(message)


class InvalidEnumValue(RowMappingError):
    error_type = "INVALID_ENUM_VALUE"

    def __init__(self, column: str, value: Any, choices: tuple[str, ...]) -> None:
        self.value = value
        super().__init__(
            column,
            f"invalid value '{value}' for column '{column}' (allowed: {', '.join(choices)})",
        )


class MissingValueError(RowMappingError):
    error_type = "MISSING_VALUE"

    def __init__(self, column: str) -> None:
        super().__init__(column, f"required column '{column}' is empty")


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def parse_int_lenient(value: Any, default: int = 0) -> int:
    """parseInt semantics: leading integer prefix, otherwise ``default``."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else default
    m = _INT_RE.match(str(value))
    return int(m.group(1)) if m else default


def parse_float_lenient(value: Any, default: float = 0) -> float:
    """parseFloat semantics: leading decimal prefix, otherwise ``default``."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else default
    m = _FLOAT_RE.match(str(value))
    return float(m.group(1)) if m else default


def cell_text(value: Any) -> str | None:
    """Trimmed text of a cell; numbers typed into code columns lose their '.0'."""
    if _is_blank(value):
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value).strip()


def split_names(value: Any) -> list[dict[str, Any]]:
    if _is_blank(value):
        return []
    tokens = [t.strip() for t in str(value).split(",")]
    return [{"name": name, "sortOrder": index} for index, name in enumerate(t for t in tokens if t)]


def split_steps(value: Any) -> list[dict[str, Any]]:
    if _is_blank(value):
        return []
    steps = []
    for chunk in str(value).split(","):
        parts = [p.strip() for p in chunk.strip().split("|")]
        title = parts[0] if parts else ""
        if not title:
            continue
        steps.append(
            {
                "stepTitle": title,
                "stepDescription": parts[1] if len(parts) > 1 else "",
                "duration": parse_int_lenient(parts[2] if len(parts) > 2 else "0"),
            }
        )
    return steps


def coerce_value(spec: ColumnSpec, raw: Any) -> Any:
    """Apply the column kind's coercion to one raw cell value."""
    kind = spec.kind
    if kind == "int":
        return parse_int_lenient(raw, spec.effective_default)
    if kind == "float":
        return parse_float_lenient(raw, spec.effective_default)
    if kind == "list":
        return split_names(raw)
    if kind == "steps":
        return split_steps(raw)
    if kind == "status":
        if _is_blank(raw):
            return spec.effective_default
        return spec.truthy if str(raw).strip().lower() == spec.truthy.lower() else spec.falsy
    if kind == "enum":
        if _is_blank(raw):
            return spec.effective_default
        normalized = str(raw).strip().lower()
        if normalized not in {c.lower() for c in spec.choices}:
            raise InvalidEnumValue(spec.header, raw, spec.choices)
        return normalized
    text = cell_text(raw)
    return spec.effective_default if text is None else text


def get_path(obj: dict[str, Any], path: str) -> Any:
    cur: Any = obj
    for part in path.split("."):
        if not isinstance(cur, dict):
            return None
        cur = cur.get(part)
    return cur


def set_path(obj: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cur = obj
    for part in parts[:-1]:
        cur = cur.setdefault(part, {})
    cur[parts[-1]] = value


def check_columns(sheet: SheetData, schema: SheetSchema, key_column: str | None = None) -> None:
    """Reject the whole sheet when a required header is absent."""
    required = set(schema.required_columns)
    if key_column:
        required.add(key_column)
    present = set(sheet.columns)
    ordered = schema.headers + sorted(required - set(schema.headers))
    missing = [c for c in ordered if c in required and c not in present]
    if missing:
        raise MissingColumnError(sheet.sheet_name, missing)


def map_row(
    sheet_name: str,
    raw_row: dict[str, Any],
    schema: SheetSchema,
    row_number: int,
    key_column: str | None = None,
) -> MappedRow:
    """Map one raw row to payload values.

    Raises a RowMappingError subclass when the row cannot be written.
    """
    key_column = key_column or schema.key_column
    key = cell_text(raw_row.get(key_column)) if key_column else None
    values: dict[str, Any] = {}
    identifier: str | None = None
    for spec in schema.columns:
        raw = raw_row.get(spec.header)
        if spec.required and _is_blank(raw):
            raise MissingValueError(spec.header)
        if schema.is_child and spec.header == schema.key_column:
            continue  # 子シートのキー列は payload に含めない
        value = coerce_value(spec, raw)
        if spec.identifier:
            identifier = value or None
            continue
        set_path(values, spec.field, value)
    return MappedRow(
        row_number=row_number,
        values=values,
        identifier=identifier,
        key=key,
    )


def map_sheet(sheet: SheetData, schema: SheetSchema, key_column: str | None = None) -> MappedSheet:
    """Check headers, then map every row collecting per-row failures.

    Raises MissingColumnError before any row is processed.
    """
    key_column = key_column or schema.key_column
    check_columns(sheet, schema, key_column)
    rows: list[MappedRow] = []
    failures: list[RowFailure] = []
    for index, raw in enumerate(sheet.rows):
        number = sheet.row_number(index)
        try:
            rows.append(map_row(sheet.sheet_name, raw, schema, number, key_column))
        except RowMappingError as e:
            failures.append(
                RowFailure(
                    sheet_name=sheet.sheet_name,
                    row_number=number,
                    key=cell_text(raw.get(key_column)) if key_column else None,
                    error_type=e.error_type,
                    message=str(e),
                )
            )
    return MappedSheet(sheet_name=sheet.sheet_name, schema=schema, rows=rows, failures=failures)


ReverseReference = Callable[[ColumnSpec, Any, dict[str, Any]], Any]


def _warn_delimiters(spec: ColumnSpec, texts: list[str], delimiters: str) -> None:
    # 区切り文字を含む値は再インポート時に分割される
    for text in texts:
        if any(d in text for d in delimiters):
            logger.warning(
                f"column '{spec.header}': value '{text}' contains a delimiter ({delimiters}) "
                f"and will not re-import unchanged"
            )


def unmap_value(spec: ColumnSpec, value: Any) -> Any:
    """Payload value -> cell value (inverse of coerce_value, references excluded)."""
    if spec.kind == "list":
        names = [str(item.get("name", "")) for item in value or [] if isinstance(item, dict)]
        _warn_delimiters(spec, names, ",")
        return ", ".join(n for n in names if n) or None
    if spec.kind == "steps":
        steps = [s for s in value or [] if isinstance(s, dict)]
        _warn_delimiters(
            spec, [str(s.get(k, "")) for s in steps for k in ("stepTitle", "stepDescription")], ",|"
        )
        chunks = [f"{s.get('stepTitle', '')}|{s.get('stepDescription', '')}|{s.get('duration', 0)}" for s in steps]
        return ", ".join(chunks) or None
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return None
    if isinstance(value, (dict, list)):
        return str(value)
    return value


def unmap_entity(
    entity: dict[str, Any],
    schema: SheetSchema,
    id_field: str = "id",
    key_value: Any = None,
    reverse_reference: ReverseReference | None = None,
) -> dict[str, Any]:
    """Build one export row from an API entity (or a child item)."""
    row: dict[str, Any] = {}
    for spec in schema.columns:
        if spec.identifier:
            row[spec.header] = entity.get(id_field)
        elif schema.is_child and spec.header == schema.key_column:
            row[spec.header] = key_value
        elif spec.reference is not None and reverse_reference is not None:
            row[spec.header] = reverse_reference(spec, get_path(entity, spec.field), entity)
        else:
            row[spec.header] = unmap_value(spec, get_path(entity, spec.field))
    return row
