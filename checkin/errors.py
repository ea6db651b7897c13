"""
Check-in Engine - Error Taxonomy

Every failure a request can hit is captured as a CheckinError carrying
an ErrorClass. The orchestrator decides retry/no-retry from the class
alone (see checkin.retry.next_action), never from message text.
"""

from __future__ import annotations

import enum
from typing import Any


class ErrorClass(str, enum.Enum):
    """Closed set of failure classes."""
    NOT_FOUND = "not_found"                         # reference data absent
    ROLE_CAPACITY_EXCEEDED = "role_capacity_exceeded"  # remote says candidate is full
    TRANSIENT = "transient"                         # network, timeout, unclassified server error
    PERSISTENCE_FAILURE = "persistence_failure"     # local durable write failed
    EXHAUSTION = "exhaustion"                       # no eligible candidate for a role
    OTHER = "other"                                 # explicit non-retryable rejection


class CheckinError(Exception):
    """Base exception for the check-in engine."""
    error_class: ErrorClass = ErrorClass.OTHER

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ReferenceDataMissing(CheckinError):
    """Person, category or care items not found on the remote."""
    error_class = ErrorClass.NOT_FOUND


class RoleCapacityExceeded(CheckinError):
    """Remote rejected a submission because the assigned candidate is full."""
    error_class = ErrorClass.ROLE_CAPACITY_EXCEEDED

    def __init__(self, role: Any, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, context)
        self.role = role


class TransientRemoteError(CheckinError):
    """Network failure, timeout, or a rejection we could not classify."""
    error_class = ErrorClass.TRANSIENT


class RemoteRejected(CheckinError):
    """Remote refused the call and retrying will not help."""
    error_class = ErrorClass.OTHER


class PersistenceFailure(CheckinError):
    """A checkpoint write failed. Escalated, never swallowed."""
    error_class = ErrorClass.PERSISTENCE_FAILURE


class PersonnelExhausted(CheckinError):
    """Every candidate for a role is exhausted or at capacity."""
    error_class = ErrorClass.EXHAUSTION

    def __init__(self, role: Any, context: dict[str, Any] | None = None):
        role_name = getattr(role, "value", role)
        super().__init__(f"no available personnel for role {role_name}", context)
        self.role = role


# ─── Fatal initialization errors ────────────────────────────────────

class CheckpointCorrupt(CheckinError):
    """Checkpoint store unreadable or corrupt. Aborts the run."""
    error_class = ErrorClass.PERSISTENCE_FAILURE


class ConfigError(CheckinError):
    """Configuration invalid. Aborts the run."""


class PreflightFailed(CheckinError):
    """Remote unreachable or a role has no eligible candidate before the batch."""

    def __init__(self, issues: list[str]):
        super().__init__("preflight failed: " + "; ".join(issues), {"issues": issues})
        self.issues = issues


class IntakeError(CheckinError):
    """Input file cannot be decoded or parsed. Aborts the run."""
