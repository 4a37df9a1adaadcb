from __future__ import annotations

import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

from ..models.config_models import (
    ApiConfig,
    AppConfig,
    ColumnSpec,
    ImportSettings,
    ReferenceSpec,
    ResourceSchema,
    SheetSchema,
)

"""Config loader.

Responsibilities:
- Load YAML config/import.yml and validate it against config_schema.json
- Apply defaults (timeout 30s, page size 10, sequential writes, upsert ...)
- Environment (CATALOG_API_BASE_URL / CATALOG_API_TOKEN) wins over the YAML api section
- Load resource definitions (bundled resources.yml unless resources_file is set)
  and validate them against resources_schema.json plus cross-field checks
"""

_CONFIG_DIR = Path(__file__).parent
SCHEMA_PATH = _CONFIG_DIR / "config_schema.json"
RESOURCES_SCHEMA_PATH = _CONFIG_DIR / "resources_schema.json"
DEFAULT_RESOURCES_PATH = _CONFIG_DIR / "resources.yml"

ENV_BASE_URL = "CATALOG_API_BASE_URL"
ENV_TOKEN = "CATALOG_API_TOKEN"


class ConfigError(Exception):
    pass


def _read_yaml(path: Path, label: str) -> Any:
    if not path.exists():
        raise ConfigError(f"{label} file not found: {path}")
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e


def _validate(data: Any, schema_path: Path, label: str) -> None:
    """Validate data against a bundled JSON schema.

    Raises:
        ConfigError: schema file missing / not JSON, or data violates it
    """
    if not schema_path.exists():
        raise ConfigError(f"{label} schema not found: {schema_path}")
    try:
        schema = json.loads(schema_path.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        where = "/".join(str(p) for p in e.absolute_path)
        raise ConfigError(f"{label} validation failed{f' at {where}' if where else ''}: {e.message}") from e


def load_config(path: Path, env: Mapping[str, str] | None = None) -> AppConfig:
    env = os.environ if env is None else env
    data = _read_yaml(path, "config")
    _validate(data, SCHEMA_PATH, "config")

    api_raw = data.get("api") or {}
    base_url = env.get(ENV_BASE_URL) or api_raw.get("base_url")
    if not base_url:
        raise ConfigError(f"api.base_url is not set (config or {ENV_BASE_URL})")
    api = ApiConfig(
        base_url=base_url,
        timeout_seconds=float(api_raw.get("timeout_seconds", 30.0)),
        token=env.get(ENV_TOKEN) or api_raw.get("token"),
        page_size=int(api_raw.get("page_size", 10)),
        snapshot_limit=int(api_raw.get("snapshot_limit", 1000)),
    )

    imp = data.get("import") or {}
    settings = ImportSettings(
        max_workers=int(imp.get("max_workers", 1)),
        write_mode=imp.get("write_mode", "upsert"),
        category_fallback=imp.get("category_fallback", "first"),
        null_sentinels=frozenset(s.strip().upper() for s in imp.get("null_sentinels", []) if s.strip()),
    )

    resources_file = data.get("resources_file")
    if resources_file and not Path(resources_file).is_absolute():
        # 相対パスは設定ファイル基準
        resources_file = str(path.parent / resources_file)
    return AppConfig(api=api, settings=settings, resources_file=resources_file)


def _build_column(raw: dict[str, Any]) -> ColumnSpec:
    ref_raw = raw.get("reference")
    reference = None
    if ref_raw:
        reference = ReferenceSpec(
            resource=ref_raw["resource"],
            name_fields=tuple(ref_raw.get("name_fields", ["name"])),
            fallback=ref_raw.get("fallback"),
            options=ref_raw.get("options"),
            parent_field=ref_raw.get("parent_field"),
        )
    return ColumnSpec(
        header=raw["header"],
        field=raw["field"],
        kind=raw.get("kind", "string"),
        required=bool(raw.get("required", False)),
        default=raw.get("default"),
        choices=tuple(raw.get("choices", ())),
        truthy=raw.get("truthy", "active"),
        falsy=raw.get("falsy", "inactive"),
        identifier=bool(raw.get("identifier", False)),
        reference=reference,
        width=int(raw.get("width", 15)),
        examples=tuple(raw.get("examples", ())),
    )


def _build_resource(name: str, raw: dict[str, Any]) -> ResourceSchema:
    sheets = []
    for s in raw["sheets"]:
        sheets.append(
            SheetSchema(
                sheet_name=s["name"],
                columns=tuple(_build_column(c) for c in s["columns"]),
                role=s.get("role"),
                key_column=s.get("key_column"),
                assemble=s.get("assemble", "list"),
                key_field=s.get("key_field"),
                value_field=s.get("value_field"),
            )
        )
    return ResourceSchema(
        name=name,
        path=raw["path"],
        root_sheet=raw["root_sheet"],
        natural_key=raw["natural_key"],
        sheets=tuple(sheets),
        id_field=raw.get("id_field", "id"),
        accept_first_sheet=bool(raw.get("accept_first_sheet", False)),
        instructions=tuple(raw.get("instructions", ())),
    )


def _check_resource(schema: ResourceSchema, known: set[str]) -> None:
    """Cross-field checks the JSON schema cannot express."""
    names = [s.sheet_name for s in schema.sheets]
    if len(set(names)) != len(names):
        raise ConfigError(f"resource '{schema.name}': duplicate sheet names {names}")
    try:
        root = schema.root
    except KeyError:
        raise ConfigError(f"resource '{schema.name}': root sheet '{schema.root_sheet}' is not declared") from None
    if root.is_child:
        raise ConfigError(f"resource '{schema.name}': root sheet must not declare a role")
    if root.column(schema.natural_key) is None:
        raise ConfigError(f"resource '{schema.name}': natural key '{schema.natural_key}' is not a root column")
    for sheet in schema.sheets:
        if sheet is not root and not sheet.is_child:
            raise ConfigError(f"resource '{schema.name}': sheet '{sheet.sheet_name}' needs a role")
        if sheet.is_child:
            if not sheet.key_column or sheet.column(sheet.key_column) is None:
                raise ConfigError(
                    f"resource '{schema.name}': sheet '{sheet.sheet_name}' key_column must be one of its columns"
                )
            if sheet.assemble == "mapping" and not (sheet.key_field and sheet.value_field):
                raise ConfigError(
                    f"resource '{schema.name}': sheet '{sheet.sheet_name}' mapping needs key_field and value_field"
                )
        for col in sheet.columns:
            if col.kind == "enum" and not col.choices:
                raise ConfigError(f"resource '{schema.name}': enum column '{col.header}' has no choices")
            ref = col.reference
            if ref is not None:
                if ref.resource not in known:
                    raise ConfigError(
                        f"resource '{schema.name}': column '{col.header}' references unknown resource '{ref.resource}'"
                    )
                if ref.options and sheet.column_by_field(ref.parent_field or "") is None:
                    raise ConfigError(
                        f"resource '{schema.name}': column '{col.header}' parent_field must be a column of the sheet"
                    )


def load_resources(path: Path | None = None) -> dict[str, ResourceSchema]:
    path = path or DEFAULT_RESOURCES_PATH
    data = _read_yaml(path, "resources")
    _validate(data, RESOURCES_SCHEMA_PATH, "resources")
    resources = {name: _build_resource(name, raw) for name, raw in data["resources"].items()}
    for schema in resources.values():
        _check_resource(schema, set(resources))
    return resources
