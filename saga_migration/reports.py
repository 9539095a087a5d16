"""Run reports written next to an export."""

import json
import logging
from pathlib import Path

from .models.migration import RunSummary

logger = logging.getLogger(__name__)


def save_report(summary: RunSummary, report_dir: str) -> Path:
    """Save a run summary as JSON and return the file path."""
    directory = Path(report_dir)
    directory.mkdir(parents=True, exist_ok=True)

    stamp = (summary.completed_at or summary.started_at).strftime("%Y%m%d_%H%M%S")
    filepath = directory / f"{summary.kind}_{summary.type_name}_{stamp}_{summary.id[:8]}.json"
    with open(filepath, "w", encoding="utf-8") as f:
        json.dump(summary.to_dict(), f, indent=2, default=str)

    logger.info(f"Saved {summary.kind} report to {filepath}")
    return filepath
