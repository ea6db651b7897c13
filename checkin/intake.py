"""
Check-in Engine - Request Intake

Turns spreadsheet-shaped rows into RegistrationRequests:

    (index, name, care-type label, tracheotomy flag)

Rows that cannot be used are counted and logged, never fatal.
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Sequence

from checkin.errors import IntakeError
from checkin.types import RegistrationRequest

logger = logging.getLogger("checkin.intake")

CARE_TYPE_CODES = {
    "家护（失能）": "05",
    "家护（门诊慢特病）": "06",
}

TRACHEOTOMY_YES = "是"


@dataclass
class RejectedRow:
    line: int
    reason: str
    row: list[str]


@dataclass
class IntakeResult:
    requests: list[RegistrationRequest] = field(default_factory=list)
    rejected: list[RejectedRow] = field(default_factory=list)
    duplicates: int = 0


def _cell(row: Sequence[Any], index: int) -> str:
    if index >= len(row) or row[index] is None:
        return ""
    return str(row[index]).strip()


def parse_rows(rows: Iterable[Sequence[Any]], start_line: int = 1) -> IntakeResult:
    """Build requests from data rows (no header). Duplicate names keep the first."""
    result = IntakeResult()
    seen: set[str] = set()

    for line, row in enumerate(rows, start=start_line):
        name = _cell(row, 1)
        if not name:
            if any(_cell(row, i) for i in range(len(row))):
                result.rejected.append(RejectedRow(line, "blank name", [str(c) for c in row]))
            continue

        label = _cell(row, 2)
        care_type = CARE_TYPE_CODES.get(label)
        if care_type is None:
            logger.warning("Row %d (%s): unknown care type %r", line, name, label)
            result.rejected.append(RejectedRow(line, f"unknown care type: {label}",
                                               [str(c) for c in row]))
            continue

        if name in seen:
            logger.info("Row %d: duplicate name %s ignored", line, name)
            result.duplicates += 1
            continue
        seen.add(name)

        result.requests.append(RegistrationRequest(
            name=name,
            care_type=care_type,
            medical_flag=_cell(row, 3) == TRACHEOTOMY_YES,
        ))

    logger.info("Intake: %d requests, %d rejected, %d duplicates",
                len(result.requests), len(result.rejected), result.duplicates)
    return result


DEFAULT_ENCODING = "utf-8-sig"


def read_csv(path: str | Path, encoding: str = DEFAULT_ENCODING) -> IntakeResult:
    """
    Read a CSV export of the request sheet. The header row is skipped.

    Excel exports of the sheet are often GBK; pass encoding="gbk" for those.
    Raises IntakeError when the file cannot be decoded, OSError when it
    cannot be opened.
    """
    try:
        with open(path, newline="", encoding=encoding) as f:
            reader = csv.reader(f)
            next(reader, None)
            return parse_rows(reader, start_line=2)
    except UnicodeDecodeError as e:
        raise IntakeError(
            f"cannot decode {path} as {encoding} (byte offset {e.start}); "
            "try another encoding, e.g. gbk",
            {"path": str(path), "encoding": encoding},
        ) from e
    except LookupError as e:
        raise IntakeError(f"unknown encoding: {encoding}", {"encoding": encoding}) from e
    except csv.Error as e:
        raise IntakeError(f"malformed CSV {path}: {e}", {"path": str(path)}) from e
