from __future__ import annotations

import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv

from ..api.client import ApiClient
from ..config.loader import ConfigError, load_config, load_resources
from ..logging.error_log import ErrorLogBuffer
from ..logging.init import log_summary, set_debug, setup_logging
from ..models.processing_result import ImportSummary
from ..services.orchestrator import ProcessingError, ReconciliationDriver
from ..services.summary import render_summary_line

"""CLI entrypoint.

    python -m catalog_sync.cli import   <resource> <file.xlsx>
    python -m catalog_sync.cli export   <resource> <out.xlsx>
    python -m catalog_sync.cli template <resource> <out.xlsx>
    python -m catalog_sync.cli delete   <resource> <id> [<id> ...]

Exit codes: 0 = every record succeeded, 2 = partial failure, 1 = fatal
(config error, unreadable file, missing sheet/column, API unreachable).
"""

EXIT_SUCCESS_ALL = 0
EXIT_PARTIAL_FAILURE = 2
EXIT_FATAL = 1

DEFAULT_CONFIG_PATH = Path("config/import.yml")


def _load_env_file(path: Path, override: bool = True) -> None:
    """Load .env using python-dotenv.

    override=True: .env の値で既存環境変数を上書き (API 接続先を最優先化)。
    """
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="catalog-sync", description="Catalog spreadsheet import / export")
    p.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Path to import.yml")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    imp = sub.add_parser("import", help="Import a workbook (create or update)")
    imp.add_argument("resource")
    imp.add_argument("file", type=Path)

    exp = sub.add_parser("export", help="Export current data as a workbook")
    exp.add_argument("resource")
    exp.add_argument("output", type=Path)

    tpl = sub.add_parser("template", help="Write an import template")
    tpl.add_argument("resource")
    tpl.add_argument("output", type=Path)

    dele = sub.add_parser("delete", help="Delete entities by id")
    dele.add_argument("resource")
    dele.add_argument("ids", nargs="+")
    return p.parse_args(argv)


def _exit_code(summary: ImportSummary) -> int:
    if summary.aborted:
        return EXIT_FATAL
    if summary.failed > 0:
        return EXIT_PARTIAL_FAILURE
    return EXIT_SUCCESS_ALL


def _report(summary: ImportSummary) -> int:
    logger = setup_logging()
    for warning in summary.warnings:
        logger.warning(warning)
    if summary.orphaned_child_rows:
        logger.warning(f"{summary.orphaned_child_rows} child rows had no matching root row")
    # log_summary が "SUMMARY " を付与するため除去
    log_summary(render_summary_line(summary)[len("SUMMARY "):])
    return _exit_code(summary)


def main(argv: list[str] | None = None) -> int:
    logger = setup_logging()

    # [] が渡された場合に sys.argv が混入しないよう None のときのみ読む
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    if args.debug:
        set_debug(logger)
        logger.debug("debug mode enabled")

    _load_env_file(Path(".env"), override=True)
    try:
        cfg = load_config(args.config)
        resources = load_resources(Path(cfg.resources_file) if cfg.resources_file else None)
    except ConfigError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL

    client = ApiClient(cfg.api)
    driver = ReconciliationDriver(
        client,
        resources,
        cfg.settings,
        page_size=cfg.api.page_size,
        snapshot_limit=cfg.api.snapshot_limit,
        error_log=ErrorLogBuffer(),
    )
    try:
        if args.command == "import":
            if not args.file.exists():
                logger.error(f"file not found: {args.file}")
                return EXIT_FATAL
            summary = driver.run_import(args.resource, args.file.read_bytes(), file_name=args.file.name)
            return _report(summary)
        if args.command == "delete":
            return _report(driver.run_bulk_delete(args.resource, args.ids))
        if args.command == "export":
            data = driver.run_export(args.resource)
        else:
            data = driver.template_bytes(args.resource)
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_bytes(data)
        logger.info(f"wrote {args.output} ({len(data)} bytes)")
        return EXIT_SUCCESS_ALL
    except ProcessingError as e:
        logger.error(f"processing: {e}")
        return EXIT_FATAL
    finally:
        client.close()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
