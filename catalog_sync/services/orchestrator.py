from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import UTC, datetime
from typing import Any, Protocol, TypeVar

from ..api.client import ApiError, Page
from ..excel.codec import MissingSheetError, ParseError, SheetData, Workbook, build_template, decode, encode, schema_widths
from ..logging.error_log import ErrorLogBuffer, ErrorRecord
from ..models.config_models import ImportSettings, ResourceSchema
from ..models.mapped_sheet import MappedSheet
from ..models.processing_result import ImportSummary, WriteStatsAccumulator
from ..models.reconciliation import ReconciliationRecord, Resolution, RunState
from .joiner import join
from .mapper import MissingColumnError, get_path, map_sheet, unmap_entity
from .progress import ProgressTracker
from .resolver import Snapshots, UnresolvedReferenceError, reference_name, resolve, resolve_references

"""Reconciliation driver: one import / export / delete run against the API.

Import state machine:

    IDLE -> DECODING -> MAPPING -> JOINING -> RESOLVING -> WRITING -> SUMMARIZING

ABORTED is entered from DECODING / MAPPING (unreadable file, missing sheet or
column) and from RESOLVING when the existing-entity snapshots cannot be
fetched. An aborted run issues no writes and reports one fatal message.

Writes: every resolved record is written exactly once (POST or PATCH), either
sequentially (max_workers == 1) or through a bounded thread pool. A failed
write never stops the others and the summary is built only after all writes
have settled. The first page of the resource list is re-fetched afterwards
regardless of the outcome (``last_page``).
"""

__all__ = [
    "ProcessingError",
    "ApiCollaborator",
    "ReconciliationDriver",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")

# error_type (UPPER_SNAKE) for ErrorRecord
PARSE_ERROR = "PARSE_ERROR"
MISSING_SHEET = "MISSING_SHEET"
MISSING_COLUMN = "MISSING_COLUMN"
SNAPSHOT_FETCH_FAILURE = "SNAPSHOT_FETCH_FAILURE"
WRITE_FAILURE = "WRITE_FAILURE"
ORPHANED_CHILD_ROW = "ORPHANED_CHILD_ROW"
DELETE_FAILURE = "DELETE_FAILURE"


class ProcessingError(Exception):
    """Run could not be started or export could not be produced."""
    pass


class ApiCollaborator(Protocol):
    def list_page(self, path: str, page: int = 1, limit: int = 10, search: str | None = None) -> Page: ...

    def list_all(self, path: str, limit: int = 1000) -> list[dict[str, Any]]: ...

    def create(self, path: str, payload: dict[str, Any]) -> dict[str, Any]: ...

    def update(self, path: str, ident: Any, payload: dict[str, Any]) -> dict[str, Any]: ...

    def delete(self, path: str, ident: Any) -> None: ...


def _row_label(row_number: int, key: str | None) -> str:
    return f"Row {row_number} ({key})" if key else f"Row {row_number}"


class ReconciliationDriver:
    """Runs imports, exports, templates and bulk deletes for configured resources.

    One driver serves one caller at a time; ``state``, ``progress`` and
    ``last_page`` describe the most recent run.
    """

    def __init__(
        self,
        client: ApiCollaborator,
        resources: Mapping[str, ResourceSchema],
        settings: ImportSettings | None = None,
        *,
        page_size: int = 10,
        snapshot_limit: int = 1000,
        error_log: ErrorLogBuffer | None = None,
    ) -> None:
        self.client = client
        self.resources = dict(resources)
        self.settings = settings or ImportSettings()
        self.page_size = page_size
        self.snapshot_limit = snapshot_limit
        self.error_log = error_log
        self.state = RunState.IDLE
        self.history: list[RunState] = []
        self.progress: ProgressTracker | None = None
        self.last_page: Page | None = None
        self.write_stats = WriteStatsAccumulator()
        self._file_name = "<upload>"

    # ------------------------------------------------------------------ helpers
    def schema(self, resource: str) -> ResourceSchema:
        try:
            return self.resources[resource]
        except KeyError:
            raise ProcessingError(
                f"unknown resource '{resource}' (known: {', '.join(sorted(self.resources))})"
            ) from None

    def _enter(self, state: RunState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug("state -> %s", state.value)

    def _record_error(self, sheet: str, row: int, error_type: str, message: str) -> None:
        if self.error_log is not None:
            self.error_log.append(ErrorRecord.create(self._file_name, sheet, row, error_type, message))

    def _flush_errors(self) -> None:
        if self.error_log is None:
            return
        try:
            path = self.error_log.flush()
        except OSError as e:
            logger.warning(f"error log flush failed: {e}")
            return
        if path is not None:
            logger.info(f"error log written: {path}")

    def _snapshots(self, schema: ResourceSchema) -> dict[str, list[dict[str, Any]]]:
        """Existing entities of the resource itself and of every referenced resource."""
        names = [schema.name] + sorted(schema.referenced_resources - {schema.name})
        snapshots: dict[str, list[dict[str, Any]]] = {}
        for name in names:
            path = self.resources[name].path if name in self.resources else name
            snapshots[name] = self.client.list_all(path, limit=self.snapshot_limit)
            logger.debug(f"snapshot {name}: {len(snapshots[name])} entities")
        return snapshots

    def _refresh(self, schema: ResourceSchema) -> None:
        # 結果に関わらず常に一覧 1 ページ目を再取得
        try:
            self.last_page = self.client.list_page(schema.path, page=1, limit=self.page_size)
        except ApiError as e:
            self.last_page = None
            logger.warning(f"list refresh failed for {schema.path}: {e}")

    def _timed(self, action: Callable[[T], Any], item: T) -> tuple[str | None, float]:
        started = time.perf_counter()
        try:
            action(item)
            error = None
        except ApiError as e:
            error = str(e)
        except Exception as e:
            # 1件の失敗で残りの書き込みを止めない
            logger.exception(f"unexpected write error: {e}")
            error = f"{type(e).__name__}: {e}"
        return error, time.perf_counter() - started

    def _settle_all(self, items: Sequence[T], action: Callable[[T], Any], description: str) -> list[str | None]:
        """Apply ``action`` to every item; returns the error message per item (None = success).

        Progress is advanced from this thread only, as each call settles.
        """
        results: list[str | None] = [None] * len(items)
        workers = max(1, self.settings.max_workers)
        with ProgressTracker(len(items), description=description) as progress:
            self.progress = progress
            if workers == 1 or len(items) <= 1:
                for index, item in enumerate(items):
                    error, elapsed = self._timed(action, item)
                    results[index] = error
                    self.write_stats.add_write_time(elapsed)
                    progress.advance(error is None)
            else:
                with ThreadPoolExecutor(max_workers=workers) as executor:
                    future_to_index = {
                        executor.submit(self._timed, action, item): index for index, item in enumerate(items)
                    }
                    for future in as_completed(future_to_index):
                        error, elapsed = future.result()
                        results[future_to_index[future]] = error
                        self.write_stats.add_write_time(elapsed)
                        progress.advance(error is None)
        return results

    def _begin(self, file_name: str) -> tuple[datetime, float]:
        self._file_name = file_name
        self.state = RunState.IDLE
        self.history = [RunState.IDLE]
        self.progress = None
        self.last_page = None
        self.write_stats = WriteStatsAccumulator()
        return datetime.now(UTC), time.perf_counter()

    def _abort(
        self, schema: ResourceSchema, started: datetime, t0: float, sheet: str, error_type: str, message: str
    ) -> ImportSummary:
        self._enter(RunState.ABORTED)
        logger.error(message)
        self._record_error(sheet, -1, error_type, message)
        self._flush_errors()
        return ImportSummary(
            resource=schema.name,
            attempted=0,
            succeeded=0,
            failed=0,
            fatal_error=message,
            start_time=started,
            end_time=datetime.now(UTC),
            elapsed_seconds=time.perf_counter() - t0,
        )

    # ------------------------------------------------------------------ import
    def _decode(self, schema: ResourceSchema, data: bytes) -> Workbook:
        required = () if schema.accept_first_sheet else (schema.root_sheet,)
        workbook = decode(data, required_sheets=required, null_sentinels=self.settings.null_sentinels)
        if schema.root_sheet not in workbook:
            if not workbook:
                raise MissingSheetError(schema.root_sheet)
            # 単一シート系リソースは先頭シートを採用
            first = next(iter(workbook.values()))
            logger.info(f"sheet '{schema.root_sheet}' not found, using first sheet '{first.sheet_name}'")
            workbook = {schema.root_sheet: first, **workbook}
        return workbook

    def _map(self, schema: ResourceSchema, workbook: Workbook) -> tuple[MappedSheet, list[MappedSheet]]:
        root = map_sheet(workbook[schema.root_sheet], schema.root, schema.natural_key)
        children = []
        for child in schema.children:
            sheet: SheetData | None = workbook.get(child.sheet_name)
            if sheet is None:
                logger.debug(f"optional sheet '{child.sheet_name}' not present")
                continue
            children.append(map_sheet(sheet, child))
        return root, children

    def _write_record(self, schema: ResourceSchema, record: ReconciliationRecord) -> None:
        resolution = record.resolution or Resolution.create()
        if resolution.mode == "update":
            self.client.update(schema.path, resolution.target_id, record.payload)
        else:
            self.client.create(schema.path, record.payload)

    def run_import(self, resource: str, data: bytes, file_name: str = "<upload>") -> ImportSummary:
        """Reconcile one uploaded workbook against the API.

        Row-level failures are aggregated into the summary; fatal failures
        return an aborted summary (``fatal_error`` set) without any write.
        """
        schema = self.schema(resource)
        started, t0 = self._begin(file_name)
        logger.info(f"import {schema.name} from {file_name}")

        try:
            self._enter(RunState.DECODING)
            workbook = self._decode(schema, data)
            self._enter(RunState.MAPPING)
            root, children = self._map(schema, workbook)
        except MissingSheetError as e:
            return self._abort(schema, started, t0, e.sheet_name, MISSING_SHEET, str(e))
        except ParseError as e:
            return self._abort(schema, started, t0, "<FILE_LEVEL>", PARSE_ERROR, str(e))
        except MissingColumnError as e:
            return self._abort(schema, started, t0, e.sheet_name, MISSING_COLUMN, str(e))

        self._enter(RunState.JOINING)
        joined = join(root, children, skipped_keys=root.failed_keys)
        for orphan in joined.orphans:
            self._record_error(
                orphan.sheet_name,
                orphan.row_number,
                ORPHANED_CHILD_ROW,
                f"no {schema.natural_key} '{orphan.key or ''}' in {schema.root_sheet}",
            )
        records = joined.records

        self._enter(RunState.RESOLVING)
        try:
            snapshots = self._snapshots(schema)
        except ApiError as e:
            return self._abort(
                schema, started, t0, "<FILE_LEVEL>", SNAPSHOT_FETCH_FAILURE,
                f"could not load existing {schema.name}: {e}",
            )
        warnings: list[str] = []
        for record in records:
            if record.failed:
                continue
            try:
                warnings.extend(
                    resolve_references(record, schema, snapshots, self.settings.category_fallback)
                )
            except UnresolvedReferenceError as e:
                record.fail(e.error_type, str(e))
                continue
            if self.settings.write_mode == "create":
                record.resolution = Resolution.create()
            else:
                record.resolution = resolve(record, snapshots[schema.name], schema.id_field, schema.key_field)
            logger.debug(f"{record.label}: {record.resolution}")

        self._enter(RunState.WRITING)
        pending = [r for r in records if not r.failed]
        outcomes = self._settle_all(
            pending, lambda r: self._write_record(schema, r), description=f"Importing {schema.name}"
        )
        for record, error in zip(pending, outcomes, strict=True):
            if error is None:
                record.succeeded = True
            else:
                record.fail(WRITE_FAILURE, error)

        self._enter(RunState.SUMMARIZING)
        summary = self._summarize(schema, root, records, len(joined.orphans), warnings, started, t0)
        self._refresh(schema)
        self._flush_errors()
        return summary

    def _summarize(
        self,
        schema: ResourceSchema,
        root: MappedSheet,
        records: Iterable[ReconciliationRecord],
        orphan_count: int,
        warnings: list[str],
        started: datetime,
        t0: float,
    ) -> ImportSummary:
        records = list(records)
        failures: list[tuple[int, str]] = []
        for f in root.failures:
            message = f"{_row_label(f.row_number, f.key)}: {f.message}"
            failures.append((f.row_number, message))
            self._record_error(f.sheet_name, f.row_number, f.error_type, f.message)
        for r in records:
            if r.failed:
                failures.append((r.row_number, f"{r.label}: {r.error}"))
                self._record_error(schema.root_sheet, r.row_number, r.error_type or WRITE_FAILURE, r.error or "")
        failures.sort(key=lambda t: t[0])
        for _, message in failures:
            logger.error(message)

        succeeded = [r for r in records if r.succeeded]
        created = sum(1 for r in succeeded if r.resolution is not None and r.resolution.mode == "create")
        attempted = len(records) + len(root.failures)
        _, avg, p95 = self.write_stats.get_stats()
        return ImportSummary(
            resource=schema.name,
            attempted=attempted,
            succeeded=len(succeeded),
            failed=attempted - len(succeeded),
            created=created,
            updated=len(succeeded) - created,
            errors=tuple(message for _, message in failures),
            orphaned_child_rows=orphan_count,
            warnings=tuple(warnings),
            start_time=started,
            end_time=datetime.now(UTC),
            elapsed_seconds=time.perf_counter() - t0,
            avg_write_seconds=avg,
            p95_write_seconds=p95,
        )

    # ------------------------------------------------------------------ export / template
    def run_export(self, resource: str) -> bytes:
        """Current API state as a workbook laid out exactly like the import file."""
        schema = self.schema(resource)
        try:
            snapshots = self._snapshots(schema)
        except ApiError as e:
            raise ProcessingError(f"export {schema.name} failed: {e}") from e
        entities = snapshots[schema.name]
        logger.info(f"export {schema.name}: {len(entities)} entities")
        return encode(self.export_workbook(schema, entities, snapshots), schema_widths(schema))

    def export_workbook(
        self, schema: ResourceSchema, entities: Sequence[dict[str, Any]], snapshots: Snapshots
    ) -> Workbook:
        def reverse(spec: Any, value: Any, item: dict[str, Any]) -> Any:
            return reference_name(spec, value, item, snapshots)

        workbook: Workbook = {}
        root_rows = [unmap_entity(e, schema.root, schema.id_field, reverse_reference=reverse) for e in entities]
        workbook[schema.root_sheet] = SheetData(schema.root_sheet, schema.root.headers, root_rows)
        for child in schema.children:
            role = child.role or child.sheet_name
            rows = []
            for entity in entities:
                key_value = get_path(entity, schema.key_field)
                value = get_path(entity, role)
                if child.assemble == "mapping":
                    items = [
                        {child.key_field or "key": k, child.value_field or "value": v}
                        for k, v in (value or {}).items()
                    ] if isinstance(value, dict) else []
                else:
                    items = [i for i in value or [] if isinstance(i, dict)]
                rows.extend(
                    unmap_entity(item, child, key_value=key_value, reverse_reference=reverse) for item in items
                )
            workbook[child.sheet_name] = SheetData(child.sheet_name, child.headers, rows)
        return workbook

    def template_bytes(self, resource: str) -> bytes:
        schema = self.schema(resource)
        return encode(build_template(schema), schema_widths(schema))

    # ------------------------------------------------------------------ bulk delete
    def run_bulk_delete(self, resource: str, ids: Iterable[Any]) -> ImportSummary:
        """Delete every id; failures are collected, never abort the others."""
        schema = self.schema(resource)
        ids = [i for i in ids if i is not None and str(i).strip() != ""]
        started, t0 = self._begin(f"<delete:{schema.name}>")
        logger.info(f"delete {len(ids)} {schema.name}")

        self._enter(RunState.WRITING)
        outcomes = self._settle_all(
            ids, lambda ident: self.client.delete(schema.path, ident), description=f"Deleting {schema.name}"
        )

        self._enter(RunState.SUMMARIZING)
        errors = []
        for ident, error in zip(ids, outcomes, strict=True):
            if error is not None:
                message = f"ID {ident}: {error}"
                errors.append(message)
                logger.error(message)
                self._record_error(schema.name, -1, DELETE_FAILURE, message)
        succeeded = len(ids) - len(errors)
        _, avg, p95 = self.write_stats.get_stats()
        summary = ImportSummary(
            resource=schema.name,
            attempted=len(ids),
            succeeded=succeeded,
            failed=len(errors),
            errors=tuple(errors),
            start_time=started,
            end_time=datetime.now(UTC),
            elapsed_seconds=time.perf_counter() - t0,
            avg_write_seconds=avg,
            p95_write_seconds=p95,
        )
        self._refresh(schema)
        self._flush_errors()
        return summary
