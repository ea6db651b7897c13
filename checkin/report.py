"""
Check-in Engine - Run Report

JSON report written at the end of every run: statistics, failed
requests, personnel usage and the configuration the run used.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from checkin.types import RunSummary

logger = logging.getLogger("checkin.report")


def build_report(
    summary: RunSummary,
    limits: dict[str, int] | None = None,
    item_indices: list[int] | None = None,
    personnel: dict[str, Any] | None = None,
    source: str = "",
) -> dict[str, Any]:
    report = summary.to_dict()
    report["type"] = "report"
    report["generated_at"] = datetime.now(timezone.utc).isoformat()
    report["personnel"] = personnel or {}
    report["config_snapshot"] = {
        "source": source,
        "personnel_limits": limits or {},
        "item_indices": list(item_indices or []),
    }
    return report


def export_report(report: dict[str, Any], report_dir: str | Path) -> Path | None:
    """
    Write report_<timestamp>.json under report_dir.

    Returns the path, or None if the write failed; a report failure is
    logged and never fails the run.
    """
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    directory = Path(report_dir)
    path = directory / f"report_{stamp}.json"
    tmp = path.with_suffix(".json.tmp")
    try:
        directory.mkdir(parents=True, exist_ok=True)
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(report, f, ensure_ascii=False, indent=2, default=str)
        os.replace(tmp, path)
    except OSError as e:
        logger.error("Report export failed (%s): %s", path, e)
        return None
    logger.info("Report written: %s", path)
    return path
