# Shared pytest fixtures
from __future__ import annotations

import io
import struct
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable

import pandas as pd
import pytest

from catalog_sync.api.client import ApiError, Page
from catalog_sync.config.loader import load_resources
from catalog_sync.logging.init import reset_logging


class FakeApiClient:
    """In-memory stand-in for ApiClient.

    ``store`` maps a collection path to its entities. ``fail`` may return an
    error message for (method, path, ident, payload) to simulate API failures.
    """

    def __init__(self, store: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self.store: dict[str, list[dict[str, Any]]] = {k: [dict(e) for e in v] for k, v in (store or {}).items()}
        self.calls: list[tuple[str, str, Any, Any]] = []
        self.fail: Callable[[str, str, Any, Any], str | None] | None = None
        self.fail_list: set[str] = set()
        self.closed = False
        self._next_id = 1000
        self._lock = threading.Lock()

    def _check(self, method: str, path: str, ident: Any = None, payload: Any = None) -> None:
        with self._lock:
            self.calls.append((method, path, ident, payload))
        if self.fail is not None:
            message = self.fail(method, path, ident, payload)
            if message:
                raise ApiError(message, 400)

    def list_page(self, path: str, page: int = 1, limit: int = 10, search: str | None = None) -> Page:
        if path in self.fail_list:
            raise ApiError("Service unavailable", 503)
        self._check("GET", path, None, {"page": page, "limit": limit})
        items = self.store.get(path, [])
        total_pages = max(1, -(-len(items) // limit))
        start = (page - 1) * limit
        return Page(
            results=[dict(e) for e in items[start:start + limit]],
            page=page,
            limit=limit,
            total_pages=total_pages,
            total_results=len(items),
        )

    def list_all(self, path: str, limit: int = 1000) -> list[dict[str, Any]]:
        first = self.list_page(path, 1, limit)
        found = list(first.results)
        for page in range(2, first.total_pages + 1):
            found.extend(self.list_page(path, page, limit).results)
        return found

    def create(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        self._check("POST", path, None, payload)
        with self._lock:
            self._next_id += 1
            entity = {**payload, "id": str(self._next_id)}
            self.store.setdefault(path, []).append(entity)
        return entity

    def update(self, path: str, ident: Any, payload: dict[str, Any]) -> dict[str, Any]:
        self._check("PATCH", path, ident, payload)
        with self._lock:
            for entity in self.store.get(path, []):
                if str(entity.get("id")) == str(ident):
                    entity.update(payload)
                    return entity
        raise ApiError("Not found", 404)

    def delete(self, path: str, ident: Any) -> None:
        self._check("DELETE", path, ident, None)
        with self._lock:
            items = self.store.get(path, [])
            for i, entity in enumerate(items):
                if str(entity.get("id")) == str(ident):
                    del items[i]
                    return
        raise ApiError("Not found", 404)

    def close(self) -> None:
        self.closed = True

    def writes(self) -> list[tuple[str, str, Any, Any]]:
        return [c for c in self.calls if c[0] in ("POST", "PATCH", "DELETE")]


def make_xlsx(sheets: dict[str, list[list[object]]]) -> bytes:
    """Build .xlsx bytes; the first row of every sheet is its header row."""
    buf = io.BytesIO()
    with pd.ExcelWriter(buf, engine="openpyxl") as writer:
        for sheet_name, rows in sheets.items():
            pd.DataFrame(rows).to_excel(writer, sheet_name=sheet_name, header=False, index=False)
    return buf.getvalue()


_OLE2_SIGNATURE = b"\xD0\xCF\x11\xE0\xA1\xB1\x1A\xE1"
_SECTOR = 512


def _biff(opcode: int, data: bytes = b"") -> bytes:
    return struct.pack("<HH", opcode, len(data)) + data


def _bof(stream_type: int) -> bytes:
    # BIFF8 BOF: version 0x0600, 0x0005 = workbook globals, 0x0010 = worksheet
    return _biff(0x0809, struct.pack("<HHHHII", 0x0600, stream_type, 0x0DBB, 0x07CC, 0, 0x06))


def _boundsheet(offset: int, name: str) -> bytes:
    raw = name.encode("latin-1")
    return _biff(0x0085, struct.pack("<iBBBB", offset, 0, 0, len(raw), 0) + raw)


def _label(row: int, col: int, text: str) -> bytes:
    raw = text.encode("latin-1")
    return _biff(0x0204, struct.pack("<HHHHB", row, col, 0, len(raw), 0) + raw)


def _dirent(name: str, etype: int, child: int, first_sid: int, size: int) -> bytes:
    raw = name.encode("utf-16-le") + b"\0\0" if name else b""
    return (
        raw.ljust(64, b"\0")
        + struct.pack("<HBBiii", len(raw), etype, 1, -1, -1, child)
        + b"\0" * 36
        + struct.pack("<iiI", first_sid, size, 0)
    )


def make_xls(sheets: dict[str, list[list[object]]]) -> bytes:
    """Build legacy .xls (BIFF8 in an OLE2 container) bytes with text cells only."""
    codepage = _biff(0x0042, struct.pack("<H", 1200))
    globals_len = len(_bof(0x0005)) + len(codepage) + len(_biff(0x000A))
    globals_len += sum(len(_boundsheet(0, name)) for name in sheets)

    bodies = []
    for rows in sheets.values():
        cells = b"".join(
            _label(r, c, str(value))
            for r, row in enumerate(rows)
            for c, value in enumerate(row)
            if value is not None
        )
        bodies.append(_bof(0x0010) + cells + _biff(0x000A))

    offset = globals_len
    boundsheets = b""
    for name, body in zip(sheets, bodies):
        boundsheets += _boundsheet(offset, name)
        offset += len(body)
    stream = _bof(0x0005) + codepage + boundsheets + _biff(0x000A) + b"".join(bodies)
    # 4096 バイト未満は mini stream 扱いになるため標準 stream サイズまで埋める
    size = max(4096, -(-len(stream) // _SECTOR) * _SECTOR)
    stream = stream.ljust(size, b"\0")

    n = size // _SECTOR
    fat = [-3, -2] + [3 + i for i in range(n - 1)] + [-2]
    fat += [-1] * (_SECTOR // 4 - len(fat))
    header = (
        _OLE2_SIGNATURE
        + b"\0" * 16
        + struct.pack("<HHHHH", 0x003E, 3, 0xFFFE, 9, 6)
        + b"\0" * 6
        + struct.pack("<iiiiiiiii", 0, 1, 1, 0, 4096, -2, 0, -2, 0)
        + struct.pack("<109i", 0, *([-1] * 108))
    )
    directory = (
        _dirent("Root Entry", 5, 1, -2, 0)
        + _dirent("Workbook", 2, -1, 2, size)
        + _dirent("", 0, -1, -1, 0) * 2
    )
    return header + struct.pack(f"<{_SECTOR // 4}i", *fat) + directory + stream


@pytest.fixture(autouse=True)
def _reset_logging():
    reset_logging()
    yield
    reset_logging()


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "data").mkdir()
        monkeypatch.chdir(p)
        yield p


@pytest.fixture()
def sample_config_yaml() -> str:
    return """api:
  base_url: http://localhost:3001/v1
  timeout_seconds: 5
  page_size: 10
  snapshot_limit: 1000
import:
  max_workers: 1
  write_mode: upsert
  category_fallback: first
  null_sentinels: ["NULL"]
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "import.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    return cfg


@pytest.fixture(scope="session")
def resources():
    return load_resources()


@pytest.fixture()
def catalog_store() -> dict[str, list[dict[str, Any]]]:
    """Existing reference data shared by product imports."""
    return {
        "categories": [
            {"id": "c1", "name": "Shirts", "status": "active"},
            {"id": "c2", "name": "Trousers", "status": "active"},
        ],
        "raw-materials": [
            {"id": "m1", "itemName": "Cotton Fabric", "unit": "m"},
            {"id": "m2", "itemName": "Metal Button", "unit": "pcs"},
        ],
        "processes": [
            {"id": "p1", "name": "Cutting", "status": "active", "steps": []},
            {"id": "p2", "name": "Stitching", "status": "active", "steps": []},
        ],
        "product-attributes": [
            {
                "id": "a1",
                "name": "Size",
                "type": "select",
                "optionValues": [{"id": "o1", "name": "M"}, {"id": "o2", "name": "L"}],
            },
        ],
        "products": [],
    }


@pytest.fixture()
def fake_client(catalog_store) -> FakeApiClient:
    return FakeApiClient(catalog_store)


@pytest.fixture()
def xlsx() -> Callable[[dict[str, list[list[object]]]], bytes]:
    return make_xlsx
