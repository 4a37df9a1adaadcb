from __future__ import annotations

import io
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd
from openpyxl.utils import get_column_letter

from ..models.config_models import ResourceSchema

"""Tabular codec: spreadsheet bytes <-> in-memory Workbook.

- 1行目をヘッダ行、2行目以降をデータ行として扱う (import / export / template 共通)
- 全セル空の行はスキップ
- 空セル / 空白のみのセル / null_sentinels に一致する文字列は None
- pandas 既定の NA 文字列変換 ("NA", "null" 等) は無効化する

No filesystem or network access here: callers pass bytes in and get bytes out.
"""

__all__ = [
    "ParseError",
    "MissingSheetError",
    "SheetData",
    "Workbook",
    "decode",
    "encode",
    "build_template",
    "schema_widths",
    "INSTRUCTIONS_SHEET",
]

INSTRUCTIONS_SHEET = "Instructions"
DEFAULT_WIDTH = 15
INSTRUCTIONS_WIDTH = 100


class ParseError(Exception):
    """Raised when the byte stream is not a readable spreadsheet container."""


class MissingSheetError(ParseError):
    """Raised when a mandatory sheet is entirely absent from the workbook."""

    def __init__(self, sheet_name: str) -> None:
        self.sheet_name = sheet_name
        super().__init__(f"required sheet '{sheet_name}' not found in workbook")


@dataclass
class SheetData:
    sheet_name: str
    columns: list[str]  # declared / header order
    rows: list[dict[str, Any]]  # 正規化済 (列名→値)
    row_numbers: list[int] = field(default_factory=list, compare=False, repr=False)

    def row_number(self, index: int) -> int:
        """Spreadsheet row number of ``rows[index]`` (header is row 1)."""
        if index < len(self.row_numbers):
            return self.row_numbers[index]
        return index + 2


Workbook = dict[str, SheetData]


def _clean_cell(val: Any, null_sentinels: set[str] | None) -> Any:
    if isinstance(val, np.generic):
        val = val.item()
    if val is None:
        return None
    if not isinstance(val, str):
        return None if pd.isna(val) else val
    stripped = val.strip()
    if stripped == "":
        return None
    # NULL サニタイズ
    if null_sentinels and stripped.upper() in null_sentinels:
        return None
    return val


def _header_name(val: Any) -> str:
    if isinstance(val, np.generic):
        val = val.item()
    if val is None or (not isinstance(val, str) and pd.isna(val)):
        return ""
    if isinstance(val, float) and val.is_integer():
        return str(int(val))
    return str(val).strip()


def _normalize_frame(df: pd.DataFrame, sheet_name: str, null_sentinels: set[str] | None) -> SheetData:
    """Turn a raw header-less DataFrame into SheetData using the first non-blank row as header."""
    # 先頭の空行は飛ばし、最初の非空行をヘッダとする
    start = 0
    while start < df.shape[0] and all(_clean_cell(v, None) is None for v in df.iloc[start].tolist()):
        start += 1
    if start == df.shape[0]:
        return SheetData(sheet_name=sheet_name, columns=[], rows=[])
    header = [_header_name(v) for v in df.iloc[start].tolist()]
    columns = [h for h in header if h]
    rows: list[dict[str, Any]] = []
    numbers: list[int] = []
    for offset, raw in enumerate(df.iloc[start + 1:].itertuples(index=False, name=None)):
        row: dict[str, Any] = {}
        for col, val in zip(header, raw, strict=False):
            if not col:
                continue
            row[col] = _clean_cell(val, null_sentinels)
        if all(v is None for v in row.values()):
            continue
        rows.append(row)
        numbers.append(start + offset + 2)
    return SheetData(sheet_name=sheet_name, columns=columns, rows=rows, row_numbers=numbers)


def decode(
    data: bytes,
    required_sheets: Iterable[str] = (),
    null_sentinels: set[str] | frozenset[str] | None = None,
) -> Workbook:
    """Read spreadsheet bytes into a Workbook (sheet order preserved).

    Parameters
    ----------
    data: ファイル内容 (.xlsx / .xls)
    required_sheets: 存在必須のシート名。欠落時は MissingSheetError
    null_sentinels: None として扱う文字列 (大文字化済想定)
    """
    try:
        xls = pd.ExcelFile(io.BytesIO(data))
    except Exception as e:
        raise ParseError(f"file is not a recognized spreadsheet: {e}") from e

    sentinels = set(null_sentinels) if null_sentinels else None
    with xls:
        names = [str(n) for n in xls.sheet_names]
        for required in required_sheets:
            if required not in names:
                raise MissingSheetError(required)
        workbook: Workbook = {}
        for name in names:
            try:
                # ヘッダなしで生読み + NA 変換抑止 (後で1行目をヘッダとして適用)
                df = xls.parse(name, header=None, dtype=object, keep_default_na=False)
            except Exception as e:
                raise ParseError(f"sheet '{name}' could not be read: {e}") from e
            workbook[name] = _normalize_frame(df, name, sentinels)
    return workbook


def _to_cell(val: Any) -> Any:
    if isinstance(val, str) and val.strip() == "":
        return None
    return val


def encode(workbook: Mapping[str, SheetData], widths: Mapping[str, Mapping[str, int]] | None = None) -> bytes:
    """Write a Workbook to .xlsx bytes.

    Column order always follows ``SheetData.columns``; keys of the row dicts
    that are not declared columns are not written.
    """
    if not workbook:
        raise ValueError("workbook has no sheets")
    buf = io.BytesIO()
    with pd.ExcelWriter(buf, engine="openpyxl") as writer:
        for name, sheet in workbook.items():
            data = [[_to_cell(row.get(col)) for col in sheet.columns] for row in sheet.rows]
            frame = pd.DataFrame(data, columns=sheet.columns, dtype=object)
            frame.to_excel(writer, sheet_name=name, index=False)
            ws = writer.sheets[name]
            # "=" で始まる文字列は数式ではなく文字列として保存
            for ws_row in ws.iter_rows():
                for cell in ws_row:
                    if isinstance(cell.value, str) and cell.value.startswith("="):
                        cell.data_type = "s"
            sheet_widths = (widths or {}).get(name, {})
            for idx, col in enumerate(sheet.columns, start=1):
                ws.column_dimensions[get_column_letter(idx)].width = sheet_widths.get(col, DEFAULT_WIDTH)
    return buf.getvalue()


def build_template(schema: ResourceSchema) -> Workbook:
    """Header rows plus the declared example rows for every sheet of a resource.

    Uses the same headers as import, so the result decodes and maps unchanged.
    An ``Instructions`` sheet is appended when the resource declares guidance.
    """
    workbook: Workbook = {}
    for sheet in schema.sheets:
        count = max((len(c.examples) for c in sheet.columns), default=0)
        rows = [
            {c.header: (c.examples[i] if i < len(c.examples) else None) for c in sheet.columns}
            for i in range(count)
        ]
        workbook[sheet.sheet_name] = SheetData(
            sheet_name=sheet.sheet_name,
            columns=sheet.headers,
            rows=rows,
            row_numbers=list(range(2, count + 2)),
        )
    if schema.instructions:
        workbook[INSTRUCTIONS_SHEET] = SheetData(
            sheet_name=INSTRUCTIONS_SHEET,
            columns=[INSTRUCTIONS_SHEET],
            rows=[{INSTRUCTIONS_SHEET: line} for line in schema.instructions],
        )
    return workbook


def schema_widths(schema: ResourceSchema) -> dict[str, dict[str, int]]:
    """Fixed column widths per sheet, as declared by the resource schema."""
    widths = {sheet.sheet_name: sheet.widths for sheet in schema.sheets}
    widths[INSTRUCTIONS_SHEET] = {INSTRUCTIONS_SHEET: INSTRUCTIONS_WIDTH}
    return widths
