"""
Check-in Engine - Type Definitions

Data structures shared by the store, allocator, orchestrator and runner:
registration requests, personnel candidates, per-request outcomes,
run statistics and the progress events handed to dashboards.
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any

from checkin.errors import ErrorClass


# ─── Roles ──────────────────────────────────────────────────────────

class Role(str, enum.Enum):
    """Personnel roles every registration needs filled."""
    NURSE = "nurse"
    PHYSICIAN = "physician"
    CAREGIVER = "caregiver"


# Assignment order within a request
ROLES: tuple[Role, ...] = (Role.NURSE, Role.PHYSICIAN, Role.CAREGIVER)

# Roles the remote service reports capacity rejections for
REMOTE_CAPPED_ROLES = frozenset({Role.NURSE, Role.PHYSICIAN})


# ─── Requests & Candidates ──────────────────────────────────────────

@dataclass(frozen=True)
class RegistrationRequest:
    """
    One unit of work. The person's name is the idempotency key.
    """
    name: str
    care_type: str          # vendor care-type code, "05" or "06"
    medical_flag: bool = False  # tracheotomy

    @property
    def request_id(self) -> str:
        return self.name


@dataclass
class PersonnelCandidate:
    """A staff member eligible for one role, with a monotonic usage counter."""
    candidate_id: str
    usage_count: int = 0
    # First-seen order, used to break usage ties
    seq: int = 0

    def sort_key(self) -> tuple[int, int]:
        return (self.usage_count, self.seq)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.candidate_id, "usage_count": self.usage_count}


# ─── Remote Reference Data ──────────────────────────────────────────

@dataclass
class PersonRecord:
    person_id: Any
    id_number: str
    name: str


@dataclass
class CategoryRecord:
    category_id: Any
    checkin_type: Any


@dataclass
class ItemRecord:
    item_code: str


@dataclass
class PersonnelRecord:
    personnel_id: str
    role: Role | None
    display_name: str = ""


@dataclass
class SubmitResult:
    """What the remote service said about one submission."""
    accepted: bool
    message: str = ""
    status_code: int | None = None


@dataclass
class ReferenceData:
    """Everything resolved from the remote before personnel are assigned."""
    person: PersonRecord
    service_date: int       # YYYYMMDD
    category: CategoryRecord
    items: list[ItemRecord]


@dataclass
class RegistrationPayload:
    """Transport-neutral submission body. The remote client maps it to vendor fields."""
    person: PersonRecord
    service_date: int
    category: CategoryRecord
    items: list[ItemRecord]
    nurse_id: str
    physician_id: str
    caregiver_id: str
    care_type: str
    medical_flag: bool

    @staticmethod
    def build(
        request: RegistrationRequest,
        reference: ReferenceData,
        assignment: dict[Role, str],
    ) -> RegistrationPayload:
        return RegistrationPayload(
            person=reference.person,
            service_date=reference.service_date,
            category=reference.category,
            items=list(reference.items),
            nurse_id=assignment[Role.NURSE],
            physician_id=assignment[Role.PHYSICIAN],
            caregiver_id=assignment[Role.CAREGIVER],
            care_type=request.care_type,
            medical_flag=request.medical_flag,
        )


# ─── Outcomes ───────────────────────────────────────────────────────

class OutcomeStatus(str, enum.Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class Outcome:
    """Result of processing one request."""
    request_id: str
    status: OutcomeStatus
    reason: str = ""
    attempts: int = 0
    error_class: ErrorClass | None = None
    assigned: dict[Role, str] = field(default_factory=dict)

    @staticmethod
    def success(request_id: str, attempts: int, assigned: dict[Role, str]) -> Outcome:
        return Outcome(request_id, OutcomeStatus.SUCCESS, attempts=attempts,
                       assigned=dict(assigned))

    @staticmethod
    def skipped(request_id: str) -> Outcome:
        return Outcome(request_id, OutcomeStatus.SKIPPED, reason="already completed")

    @staticmethod
    def failed(
        request_id: str,
        reason: str,
        attempts: int = 0,
        error_class: ErrorClass | None = None,
    ) -> Outcome:
        return Outcome(request_id, OutcomeStatus.FAILED, reason=reason,
                       attempts=attempts, error_class=error_class)

    @property
    def ok(self) -> bool:
        return self.status != OutcomeStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "status": self.status.value,
            "reason": self.reason,
            "attempts": self.attempts,
            "error_class": self.error_class.value if self.error_class else None,
            "assigned": {role.value: cid for role, cid in self.assigned.items()},
        }


# ─── Run Statistics & Progress ──────────────────────────────────────

@dataclass
class FailureRecord:
    request_id: str
    reason: str


@dataclass
class RunStatistics:
    """Counters for one run. Rebuilt every run, never persisted."""
    total: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    failures: list[FailureRecord] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.succeeded + self.skipped + self.failed

    def record(self, outcome: Outcome) -> None:
        if outcome.status == OutcomeStatus.SUCCESS:
            self.succeeded += 1
        elif outcome.status == OutcomeStatus.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
            self.failures.append(FailureRecord(outcome.request_id, outcome.reason))

    def counts(self) -> dict[str, int]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
        }

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = self.counts()
        d["failures"] = [
            {"request_id": f.request_id, "reason": f.reason} for f in self.failures
        ]
        return d


@dataclass
class ProgressEvent:
    """Emitted after every processed request."""
    run_id: str
    processed_count: int
    total_count: int
    last_outcome: Outcome
    statistics: dict[str, int]
    emitted_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "progress",
            "run_id": self.run_id,
            "processed_count": self.processed_count,
            "total_count": self.total_count,
            "last_outcome": self.last_outcome.to_dict(),
            "statistics": dict(self.statistics),
            "emitted_at": self.emitted_at,
        }


@dataclass
class RunSummary:
    """Terminal event of a run."""
    run_id: str
    statistics: RunStatistics
    started_at: float
    finished_at: float
    cancelled: bool = False

    @property
    def failures(self) -> list[FailureRecord]:
        return self.statistics.failures

    @property
    def elapsed_seconds(self) -> float:
        return self.finished_at - self.started_at

    def to_dict(self) -> dict[str, Any]:
        stats = self.statistics.to_dict()
        failures = stats.pop("failures")
        return {
            "type": "summary",
            "run_id": self.run_id,
            "statistics": stats,
            "failures": failures,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "cancelled": self.cancelled,
        }
