from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from ..models.config_models import ColumnSpec, ResourceSchema, SheetSchema
from ..models.reconciliation import ReconciliationRecord, Resolution
from .joiner import assemble
from .mapper import get_path, set_path

"""Natural-key resolver.

Create / update 判定の優先順位 (固定):
  1. identifier 列の値が既存 entity の id と完全一致 -> update
  2. natural key が trim + 大文字小文字無視で一致 -> update
  3. それ以外 -> create
identifier と名前が食い違う場合は identifier が勝つ。

Reference columns (category, BOM material, process, attribute / option value)
are resolved against snapshots with the same exact-then-normalized matching.
A reference declared with ``fallback: first`` falls back to the first entity of
its snapshot when nothing matches and the policy is ``first`` (warning only).
"""

__all__ = [
    "UnresolvedReferenceError",
    "Snapshots",
    "normalize",
    "resolve",
    "match_reference",
    "resolve_references",
    "reference_name",
]

logger = logging.getLogger(__name__)

Snapshots = Mapping[str, Sequence[dict[str, Any]]]

FALLBACK_WARNING = "CategoryResolutionFallback"


class UnresolvedReferenceError(Exception):
    """A referenced name matched nothing in its snapshot; the row is not written."""
    error_type = "UNRESOLVED_REFERENCE"

    def __init__(self, column: str, value: Any, resource: str) -> None:
        self.column = column
        self.value = value
        self.resource = resource
        super().__init__(f"{column} '{value}' not found in {resource}")


def normalize(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip().lower()


def resolve(
    record: ReconciliationRecord,
    existing: Iterable[dict[str, Any]],
    id_field: str = "id",
    key_field: str = "name",
) -> Resolution:
    existing = list(existing)
    if record.identifier:
        wanted = str(record.identifier).strip()
        for entity in existing:
            if entity.get(id_field) is not None and str(entity.get(id_field)) == wanted:
                return Resolution.update(entity[id_field])
    key = normalize(record.key)
    if key:
        for entity in existing:
            if normalize(get_path(entity, key_field)) == key:
                return Resolution.update(entity.get(id_field))
    return Resolution.create()


def _names(entity: dict[str, Any], name_fields: Sequence[str]) -> list[str]:
    found = []
    for f in name_fields:
        v = get_path(entity, f)
        if v is not None and str(v) != "":
            found.append(str(v))
    return found


def match_reference(
    value: Any,
    entities: Iterable[dict[str, Any]],
    name_fields: Sequence[str] = ("name",),
    id_field: str = "id",
) -> dict[str, Any] | None:
    """Exact id / name match first, then trimmed case-insensitive name match."""
    if value is None or str(value).strip() == "":
        return None
    entities = list(entities)
    text = str(value).strip()
    for entity in entities:
        if entity.get(id_field) is not None and str(entity.get(id_field)) == text:
            return entity
        if text in _names(entity, name_fields):
            return entity
    wanted = normalize(text)
    for entity in entities:
        if any(normalize(n) == wanted for n in _names(entity, name_fields)):
            return entity
    return None


def _entity_id(entity: dict[str, Any], spec: ColumnSpec, id_field: str) -> Any:
    ident = entity.get(id_field)
    if ident is None and spec.reference is not None:
        names = _names(entity, spec.reference.name_fields)
        return names[0] if names else None
    return ident


def _resolve_item(
    item: dict[str, Any],
    sheet: SheetSchema,
    snapshots: Snapshots,
    category_fallback: str,
    label: str,
    warnings: list[str],
    id_field: str,
) -> None:
    # 同一行内で解決済みの entity (option value の親 attribute 参照用)
    resolved: dict[str, dict[str, Any]] = {}
    for spec in sheet.columns:
        ref = spec.reference
        if ref is None:
            continue
        raw = get_path(item, spec.field)
        if ref.options:
            parent = resolved.get(ref.parent_field or "")
            pool = parent.get(ref.options) or [] if parent is not None else []
        else:
            pool = snapshots.get(ref.resource, [])
        match = match_reference(raw, pool, ref.name_fields, id_field)
        if match is None and ref.fallback == "first" and category_fallback == "first" and pool:
            match = pool[0]
            shown = _names(match, ref.name_fields)
            message = (
                f"{FALLBACK_WARNING}: {label}: {spec.header} '{raw if raw is not None else ''}' "
                f"not found, using '{shown[0] if shown else match.get(id_field)}'"
            )
            logger.warning(message)
            warnings.append(message)
        if match is None:
            if raw is None or str(raw).strip() == "":
                if ref.fallback is None:
                    continue  # 任意参照の空欄はそのまま
            raise UnresolvedReferenceError(spec.header, raw if raw is not None else "", ref.resource)
        resolved[spec.field] = match
        set_path(item, spec.field, _entity_id(match, spec, id_field))


def resolve_references(
    record: ReconciliationRecord,
    schema: ResourceSchema,
    snapshots: Snapshots,
    category_fallback: str = "first",
) -> list[str]:
    """Replace referenced names by ids in the record payload (in place).

    Returns fallback warnings. Raises UnresolvedReferenceError on the first
    reference that cannot be resolved.
    """
    warnings: list[str] = []
    _resolve_item(record.payload, schema.root, snapshots, category_fallback, record.label, warnings, "id")
    for child in schema.children:
        role = child.role or child.sheet_name
        if role not in record.children:
            continue
        items = record.children[role]
        for item in items:
            _resolve_item(item, child, snapshots, category_fallback, record.label, warnings, "id")
        set_path(record.payload, role, assemble(items, child))
    return warnings


def reference_name(
    spec: ColumnSpec,
    value: Any,
    item: dict[str, Any],
    snapshots: Snapshots,
    id_field: str = "id",
) -> Any:
    """Render a stored reference (id or embedded object) as its human name."""
    ref = spec.reference
    if ref is None or value is None or value == "":
        return None if value == "" else value
    if isinstance(value, dict):
        names = _names(value, ref.name_fields)
        if names:
            return names[0]
        value = value.get(id_field)
        if value is None:
            return None
    if ref.options:
        parent_id = get_path(item, ref.parent_field or "")
        if isinstance(parent_id, dict):
            parent_id = parent_id.get(id_field)
        parent = match_reference(parent_id, snapshots.get(ref.resource, []), (), id_field)
        pool = parent.get(ref.options) or [] if parent is not None else []
    else:
        pool = snapshots.get(ref.resource, [])
    match = match_reference(value, pool, (), id_field)
    if match is None:
        return value
    names = _names(match, ref.name_fields)
    return names[0] if names else value
