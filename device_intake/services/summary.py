from __future__ import annotations

from ..models.processing_result import FileStat, ProcessingResult

"""SUMMARY line and per-file result rendering.

Contract (one line, space separated key=value):
SUMMARY files={n}/{n} success={s} failed={f} devices={d} valid={v}
invalid={i} duplicates={u} warnings={w} elapsed_sec={e}
"""

__all__ = [
    "format_seconds",
    "render_summary_line",
    "render_file_line",
]


def format_seconds(value: float) -> str:
    """Integers without decimals, tiny values without scientific notation."""
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if value < 0.01:
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return f"{value:.3f}".rstrip("0").rstrip(".")


def render_summary_line(total_files: int, result: ProcessingResult) -> str:
    """Render the SUMMARY line.

    >>> from datetime import datetime, timezone
    >>> t = datetime(2024, 1, 1, tzinfo=timezone.utc)
    >>> r = ProcessingResult(1, 0, 3, 2, 1, 0, 1, t, t, 2.0)
    >>> render_summary_line(1, r)
    'SUMMARY files=1/1 success=1 failed=0 devices=3 valid=2 invalid=1 duplicates=0 warnings=1 elapsed_sec=2'
    """
    return (
        f"SUMMARY files={total_files}/{total_files} "
        f"success={result.success_files} "
        f"failed={result.failed_files} "
        f"devices={result.total_devices} "
        f"valid={result.valid_devices} "
        f"invalid={result.invalid_devices} "
        f"duplicates={result.duplicate_devices} "
        f"warnings={result.warning_devices} "
        f"elapsed_sec={format_seconds(result.elapsed_seconds)}"
    )


def render_file_line(stat: FileStat) -> str:
    line = (
        f"file={stat.file_name} status={stat.status} devices={stat.devices} "
        f"valid={stat.valid} invalid={stat.invalid} duplicates={stat.duplicates} "
        f"warnings={stat.warnings}"
    )
    if stat.error:
        line += f" error={stat.error}"
    return line
