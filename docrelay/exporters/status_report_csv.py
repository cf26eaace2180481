from __future__ import annotations

from pathlib import Path

import pandas as pd

REPORT_COLUMNS = ["document_type", "status", "total"]


def export_status_report(path: Path, summary: pd.DataFrame) -> Path:
    """Write a per-document-type status summary as CSV."""

    df = summary.reindex(columns=REPORT_COLUMNS)
    df["document_type"] = df["document_type"].fillna("(unmatched)")
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
    return path


def render_status_report(summary: pd.DataFrame) -> str:
    df = summary.reindex(columns=REPORT_COLUMNS)
    df["document_type"] = df["document_type"].fillna("(unmatched)")
    return df.to_csv(index=False)
