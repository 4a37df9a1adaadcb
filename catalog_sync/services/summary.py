from __future__ import annotations

from ..models.processing_result import ImportSummary

"""SUMMARY line rendering.

Format (one line, key=value pairs in fixed order):
SUMMARY resource={name} attempted={n} succeeded={n} failed={n} created={n}
updated={n} orphaned={n} warnings={n} elapsed_sec={sec}

Aborted runs render ``aborted=1`` plus zero counts; the fatal message itself
is logged separately with the ERROR label.
"""


def _format_seconds(value: float) -> str:
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if value < 0.01:
        # 指数表記を避ける
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return f"{value:.2f}".rstrip("0").rstrip(".")


def render_summary_line(summary: ImportSummary) -> str:
    """Render the SUMMARY line for one run.

    Examples:
        >>> s = ImportSummary(resource="products", attempted=2, succeeded=2, failed=0, created=2)
        >>> render_summary_line(s)
        'SUMMARY resource=products attempted=2 succeeded=2 failed=0 created=2 updated=0 orphaned=0 warnings=0 elapsed_sec=0'
    """
    line = (
        f"SUMMARY resource={summary.resource} "
        f"attempted={summary.attempted} "
        f"succeeded={summary.succeeded} "
        f"failed={summary.failed} "
        f"created={summary.created} "
        f"updated={summary.updated} "
        f"orphaned={summary.orphaned_child_rows} "
        f"warnings={len(summary.warnings)} "
        f"elapsed_sec={_format_seconds(summary.elapsed_seconds)}"
    )
    if summary.aborted:
        line += " aborted=1"
    return line
