from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from ..models.config_models import SheetSchema
from ..models.mapped_sheet import MappedSheet
from ..models.reconciliation import OrphanedChildRow, ReconciliationRecord
from ..models.row_data import MappedRow
from .mapper import get_path, set_path

"""Cross-sheet joiner.

Child sheets (BOM / Processes / Attributes ...) are attached to root rows by
natural key. 照合は trim 後の完全一致 (大文字小文字を区別する)。

- root row ごとに全 child role の配列を必ず持つ (一致なしは空配列)
- どの root にも一致しない child row は OrphanedChildRow (警告のみ)
- mapping 失敗した root row の key に属する child row は黙って捨てる
- child row の mapping 失敗は所属 root record を失敗にする
"""

__all__ = [
    "JoinResult",
    "join",
    "assemble",
]

logger = logging.getLogger(__name__)


@dataclass
class JoinResult:
    records: list[ReconciliationRecord] = field(default_factory=list)
    orphans: list[OrphanedChildRow] = field(default_factory=list)


def _key(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def assemble(items: Iterable[dict[str, Any]], schema: SheetSchema) -> Any:
    """Turn the child items of one role into the payload shape of that role."""
    if schema.assemble == "mapping":
        result: dict[str, Any] = {}
        for item in items:
            k = get_path(item, schema.key_field or "")
            if k is None or k == "":
                continue
            result[str(k)] = get_path(item, schema.value_field or "")
        return result
    return [dict(item) for item in items]


def join(
    root: MappedSheet,
    children: Iterable[MappedSheet],
    skipped_keys: Iterable[str] = (),
) -> JoinResult:
    """Build one ReconciliationRecord per mapped root row, children attached.

    Records are returned in root sheet row order (failed root rows excluded;
    the driver accounts for them from ``root.failures``).
    """
    skipped = {k for k in (_key(s) for s in skipped_keys) if k}
    children = list(children)

    records: list[ReconciliationRecord] = []
    by_key: dict[str, list[ReconciliationRecord]] = {}
    for row in root.rows:
        record = ReconciliationRecord(
            row_number=row.row_number,
            key=_key(row.key),
            payload=dict(row.values),
            identifier=row.identifier,
        )
        records.append(record)
        if record.key is not None:
            by_key.setdefault(record.key, []).append(record)

    orphans: list[OrphanedChildRow] = []
    for child in children:
        role = child.schema.role or child.sheet_name
        grouped: dict[str, list[MappedRow]] = {}
        for row in child.rows:
            k = _key(row.key)
            if k is not None and k in by_key:
                grouped.setdefault(k, []).append(row)
            elif k is not None and k in skipped:
                continue
            else:
                orphans.append(OrphanedChildRow(child.sheet_name, row.row_number, k))

        for failure in child.failures:
            k = _key(failure.key)
            if k is not None and k in by_key:
                for record in by_key[k]:
                    record.fail(
                        failure.error_type,
                        f"{failure.sheet_name} row {failure.row_number}: {failure.message}",
                    )
            elif k is None or k not in skipped:
                orphans.append(OrphanedChildRow(child.sheet_name, failure.row_number, k))

        for record in records:
            rows = grouped.get(record.key, []) if record.key is not None else []
            record.children[role] = [dict(r.values) for r in rows]
            set_path(record.payload, role, assemble(record.children[role], child.schema))

    if orphans:
        logger.warning("orphaned child rows: %d", len(orphans))
    return JoinResult(records=records, orphans=orphans)
