"""
Reporting helpers (table or JSON) for reconcile results.

`print_results` produces a compact table for CLI usage, or JSON for machine
consumption. `summarize_counts` renders the per-status totals on one line.
"""
from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List

from .reconciler import ReconcileResult, ReconcileStatus

COLUMNS = ["mesh", "kind", "name", "scope", "status"]


def result_row(result: ReconcileResult) -> Dict[str, Any]:
    return {
        "mesh": result.mesh,
        "kind": result.kind.value,
        "name": result.name,
        "scope": result.scope,
        "status": result.status.value,
    }


def summarize_counts(counts: Dict[str, int]) -> str:
    # stable order for readability
    return " | ".join(f"{s.value}={counts.get(s.value, 0)}" for s in ReconcileStatus)


def print_results(results: Iterable[ReconcileResult], fmt: str = "table") -> None:
    """Render reconcile results as a table or JSON.

    Args:
        results: Reconcile results, in the order they were produced.
        fmt: Either ``"table"`` (default) or ``"json"``.
    """
    rows = [result_row(r) for r in results]

    if fmt == "json":
        print(json.dumps(rows, indent=2))
        return

    if not rows:
        print("(no App Mesh resources)")
        return

    def _fmt(v: Any) -> str:
        s = "" if v is None else str(v)
        return s or "—"

    widths = {c: len(c) for c in COLUMNS}
    for r in rows:
        for c in COLUMNS:
            widths[c] = max(widths[c], len(_fmt(r.get(c))))

    lines: List[str] = []
    lines.append("| " + " | ".join(c.ljust(widths[c]) for c in COLUMNS) + " |")
    lines.append("| " + " | ".join("-" * widths[c] for c in COLUMNS) + " |")
    for r in rows:
        lines.append("| " + " | ".join(_fmt(r.get(c)).ljust(widths[c]) for c in COLUMNS) + " |")
    print("\n".join(lines))
