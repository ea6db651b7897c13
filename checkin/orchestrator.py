"""
Check-in Engine - Registration Orchestrator

Drives one request through:

    skip-check -> resolve reference data -> assign personnel -> submit -> outcome

Outcome handling per attempt:
  accepted                   confirm all three assignments, append to ledger, SUCCESS
  role capacity (nurse/phys) mark candidate exhausted, re-select (no sleep, no re-resolve)
  transient / unclassified   fixed backoff, re-resolve reference data
  anything else              FAILED

A ledger write failure after acceptance escalates to FAILED so the
request is picked up again next run. The remote is assumed to reject a
duplicate submission for an already-registered person, which is what
makes that re-run safe.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Sequence

from checkin.allocator import PersonnelAllocator
from checkin.errors import (
    CheckinError,
    ErrorClass,
    PersistenceFailure,
    PersonnelExhausted,
    ReferenceDataMissing,
    TransientRemoteError,
)
from checkin.logging import RunLogger
from checkin.remote import RemoteRegistry, parse_server_date, rejection_error, select_items
from checkin.retry import DEFAULT_POLICY, RetryAction, RetryPolicy, backoff, next_action
from checkin.store import CheckpointStore
from checkin.types import (
    ROLES,
    Outcome,
    ReferenceData,
    RegistrationPayload,
    RegistrationRequest,
    Role,
)

logger = logging.getLogger("checkin.orchestrator")


def classify_exception(exc: Exception) -> ErrorClass:
    """ErrorClass for anything raised during an attempt."""
    if isinstance(exc, CheckinError):
        return exc.error_class
    # Unclassified errors from the client stack count as transient
    return ErrorClass.TRANSIENT


class RegistrationOrchestrator:
    """Processes one request at a time against the remote registry."""

    def __init__(
        self,
        registry: RemoteRegistry,
        allocator: PersonnelAllocator,
        store: CheckpointStore,
        checkin_type: str = "01",
        category_code: str = "04",
        item_indices: Sequence[int] = (),
        policy: RetryPolicy = DEFAULT_POLICY,
        sleep_fn: Callable[[float], None] = time.sleep,
        events: RunLogger | None = None,
    ):
        self.registry = registry
        self.allocator = allocator
        self.store = store
        self.checkin_type = checkin_type
        self.category_code = category_code
        self.item_indices = list(item_indices)
        self.policy = policy
        self.sleep_fn = sleep_fn
        self.events = events

    def process(self, request: RegistrationRequest) -> Outcome:
        rid = request.request_id
        try:
            if self.store.is_completed(rid):
                logger.debug("Skipping %s: already in ledger", rid)
                return Outcome.skipped(rid)
        except PersistenceFailure as e:
            return Outcome.failed(rid, str(e), 0, e.error_class)

        reference: ReferenceData | None = None
        attempt = 1
        while True:
            assignment: dict[Role, str] = {}
            failure: Exception | None = None
            try:
                if reference is None:
                    reference = self.resolve(request)
                assignment = self.assign()
                payload = RegistrationPayload.build(request, reference, assignment)
                result = self.registry.submit(payload)
                if not result.accepted:
                    raise rejection_error(result)
            except Exception as e:
                failure = e

            if failure is None:
                return self.finish(request, assignment, attempt)

            error_class = classify_exception(failure)
            reason = str(failure) or type(failure).__name__
            if not isinstance(failure, CheckinError):
                logger.warning("Unexpected error on %s attempt %d", rid, attempt,
                               exc_info=failure)

            action = next_action(error_class, attempt, self.policy)
            if self.events:
                self.events.on_attempt_failed(rid, attempt, error_class.value, action.value, reason)

            if action is RetryAction.FAIL:
                logger.warning("Request %s failed after %d attempt(s): %s", rid, attempt, reason)
                return Outcome.failed(rid, reason, attempt, error_class)

            if action is RetryAction.RESELECT:
                role = getattr(failure, "role", None)
                candidate_id = assignment.get(role) if role else None
                if candidate_id:
                    self.allocator.mark_exhausted(role, candidate_id)
                    if self.events:
                        self.events.on_candidate_exhausted(role.value, candidate_id)
            else:
                logger.info("Transient failure on %s attempt %d, retrying: %s", rid, attempt, reason)
                backoff(self.policy, self.sleep_fn)
                reference = None

            attempt += 1

    def finish(self, request: RegistrationRequest, assignment: dict[Role, str], attempt: int) -> Outcome:
        """Remote accepted: make it durable, or report the request as failed."""
        rid = request.request_id
        try:
            self.commit(request, assignment)
        except PersistenceFailure as e:
            logger.error("Accepted by remote but checkpoint write failed for %s: %s", rid, e)
            return Outcome.failed(rid, f"accepted but not recorded: {e}", attempt, e.error_class)
        logger.info("Registered %s (attempt %d): %s", rid, attempt,
                    {r.value: c for r, c in assignment.items()})
        return Outcome.success(rid, attempt, assignment)

    # ── Steps ────────────────────────────────────────────────

    def resolve(self, request: RegistrationRequest) -> ReferenceData:
        person = self.registry.lookup_person(request.name)
        if person is None:
            raise ReferenceDataMissing(f"person not found: {request.name}")

        raw_date = self.registry.get_server_date()
        try:
            service_date = parse_server_date(raw_date)
        except ValueError as e:
            raise TransientRemoteError(f"unparseable server date: {raw_date!r}") from e

        categories = self.registry.list_care_categories(self.checkin_type, self.category_code)
        if not categories:
            raise ReferenceDataMissing(
                f"no care category for type {self.checkin_type}/{self.category_code}")
        category = categories[0]

        all_items = self.registry.list_care_items(category.category_id)
        if not all_items:
            raise ReferenceDataMissing(f"no care items for category {category.category_id}")
        items = select_items(all_items, self.item_indices)
        if not items:
            raise ReferenceDataMissing(
                f"no care items selected from {len(all_items)} for category {category.category_id}")

        return ReferenceData(person, service_date, category, items)

    def assign(self) -> dict[Role, str]:
        assignment: dict[Role, str] = {}
        for role in ROLES:
            candidate_id = self.allocator.select_candidate(role)
            if candidate_id is None:
                raise PersonnelExhausted(role, {"stats": self.allocator.stats()[role.value]})
            assignment[role] = candidate_id
        return assignment

    def commit(self, request: RegistrationRequest, assignment: dict[Role, str]) -> None:
        """Confirm counters, then the ledger. Counters strictly first."""
        for role in ROLES:
            self.allocator.confirm_assignment(role, assignment[role], request.request_id)
        self.store.mark_completed(request.request_id)

