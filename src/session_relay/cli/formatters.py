from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional


def table(headers: List[str], rows: List[List[str]], max_widths: Optional[Dict[int, int]] = None) -> str:
    """Format data as ASCII table."""
    if not rows:
        return "No data"

    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            if i < len(widths):
                widths[i] = max(widths[i], len(str(cell)))

    if max_widths:
        for i, max_w in max_widths.items():
            if i < len(widths):
                widths[i] = min(widths[i], max_w)

    header_line = "  ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
    separator = "  ".join("-" * w for w in widths)
    row_lines = [
        "  ".join(str(cell)[: widths[i]].ljust(widths[i]) for i, cell in enumerate(row)) for row in rows
    ]
    return "\n".join([header_line, separator] + row_lines)


def human_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB"):
        if value < 1024:
            return f"{value:.0f}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}GB"


def format_recordings(sessions: List[Dict[str, Any]]) -> str:
    rows = [
        [
            item["sessionId"],
            datetime.fromtimestamp(item["updatedAt"] / 1000).strftime("%Y-%m-%d %H:%M:%S"),
            human_size(item["sizeBytes"]),
        ]
        for item in sessions
    ]
    return table(["SESSION", "UPDATED", "SIZE"], rows)


def format_runs(runs: List[Dict[str, Any]]) -> str:
    rows = []
    for run in runs:
        exit_label = run.get("signal") or ("" if run.get("exit_code") is None else str(run["exit_code"]))
        rows.append(
            [
                run["id"],
                run["strategy"],
                run["mode"],
                run["status"],
                exit_label,
                (run.get("created_at") or "")[:19],
                " ".join(run.get("prompt", "").split()),
            ]
        )
    return table(
        ["RUN", "STRATEGY", "MODE", "STATUS", "EXIT", "CREATED", "PROMPT"],
        rows,
        max_widths={6: 40},
    )
