"""
Check-in Engine

Resumable batch registration against a remote registry: personnel
allocation with per-role capacity limits, bounded retries, and a
durable checkpoint so a re-run never submits a completed request twice.

Usage:
    from checkin.store import CheckpointStore
    from checkin.allocator import PersonnelAllocator
    from checkin.orchestrator import RegistrationOrchestrator
    from checkin.runner import BatchRunner

    store = CheckpointStore("checkpoint.db")
    allocator = PersonnelAllocator(store, settings.limits())
    orchestrator = RegistrationOrchestrator(registry, allocator, store)
    stats = BatchRunner(orchestrator).run(requests)
"""

from checkin.errors import (
    CheckinError, ErrorClass, CheckpointCorrupt, ConfigError,
    PersistenceFailure, PersonnelExhausted, PreflightFailed,
    ReferenceDataMissing, RoleCapacityExceeded, TransientRemoteError,
)
from checkin.types import (
    Role, ROLES, RegistrationRequest, PersonnelCandidate,
    Outcome, OutcomeStatus, RunStatistics, ProgressEvent, RunSummary,
)

__version__ = "0.1.0"
