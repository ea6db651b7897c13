"""
Check-in Engine - API Models

Request/response dataclasses for the status API.
No FastAPI dependency: used by server, worker, and tests.
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from typing import Any

from checkin.intake import CARE_TYPE_CODES, parse_rows
from checkin.types import RegistrationRequest

_CARE_TYPE_VALUES = set(CARE_TYPE_CODES.values())


class RunState(str, enum.Enum):
    """Lifecycle of a run started through the API."""
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class RunSubmission:
    """
    POST /v1/runs request body.

    Exactly one source: `requests` (already-coded), `rows` (sheet-shaped
    [index, name, care-type label, tracheotomy]) or `csv_path`.
    `encoding` applies to `csv_path`.
    """
    requests: list[dict[str, Any]] = field(default_factory=list)
    rows: list[list[Any]] = field(default_factory=list)
    csv_path: str = ""
    encoding: str = ""      # csv_path only; defaults to intake.encoding

    @classmethod
    def from_body(cls, body: Any) -> RunSubmission:
        if not isinstance(body, dict):
            body = {}
        return cls(
            requests=body.get("requests") or [],
            rows=body.get("rows") or [],
            csv_path=body.get("csv_path") or "",
            encoding=body.get("encoding") or "",
        )

    def validate(self) -> list[str]:
        """Return list of validation errors (empty = valid)."""
        errors = []
        sources = sum(1 for s in (self.requests, self.rows, self.csv_path) if s)
        if sources != 1:
            errors.append("exactly one of requests, rows, csv_path is required")
        if not isinstance(self.requests, list):
            errors.append("requests must be a list")
            return errors
        for i, item in enumerate(self.requests):
            if not isinstance(item, dict) or not str(item.get("name") or "").strip():
                errors.append(f"requests[{i}].name is required")
            elif item.get("care_type") not in _CARE_TYPE_VALUES:
                errors.append(f"requests[{i}].care_type must be one of {sorted(_CARE_TYPE_VALUES)}")
        if not isinstance(self.rows, list) or not all(isinstance(r, list) for r in self.rows):
            errors.append("rows must be a list of lists")
        return errors

    def to_requests(self) -> list[RegistrationRequest]:
        """csv_path is resolved by the server, not here."""
        if self.rows:
            return parse_rows(self.rows).requests
        out: list[RegistrationRequest] = []
        seen: set[str] = set()
        for item in self.requests:
            name = str(item["name"]).strip()
            if name in seen:
                continue
            seen.add(name)
            out.append(RegistrationRequest(name, item["care_type"],
                                           bool(item.get("medical_flag", False))))
        return out


@dataclass
class RunResponse:
    """POST /v1/runs response, returned immediately on start."""
    run_id: str
    status: str
    total: int
    message: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RunRecord:
    """GET /v1/runs/current response."""
    run_id: str
    status: RunState
    total: int
    started_at: float
    finished_at: float = 0.0
    error: str = ""
    report_path: str | None = None
    progress: dict[str, Any] | None = None
    summary: dict[str, Any] | None = None

    @property
    def active(self) -> bool:
        return self.status == RunState.RUNNING

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d
