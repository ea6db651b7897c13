"""
Check-in Engine - Registration Orchestrator Tests

Tests:
  - skip-check makes zero remote calls
  - capacity rejection re-selects another nurse without sleeping
  - transient failure backs off and re-resolves reference data
  - not-found / exhaustion / other rejections fail without retry
  - attempt budget caps retries and keeps the last reason
  - ledger write failure after acceptance reports Failed
  - a crash between counter confirm and ledger write never double-counts
"""

import os
import shutil
import sys
import tempfile
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from checkin.allocator import PersonnelAllocator
from checkin.errors import ErrorClass, PersistenceFailure, TransientRemoteError
from checkin.orchestrator import RegistrationOrchestrator, classify_exception
from checkin.retry import RetryPolicy
from checkin.store import CheckpointStore
from checkin.types import OutcomeStatus, RegistrationRequest, Role, SubmitResult
from fixtures.registry import FixtureRegistry

LIMITS = {Role.NURSE: 50, Role.PHYSICIAN: 80, Role.CAREGIVER: 30}
ITEM_INDICES = [0, 1, 9, 11, 13, 14, 15, 22, 27, 28, 29, 58]


class RecordingEvents:
    """Stands in for RunLogger."""
    run_id = "run_test"

    def __init__(self):
        self.attempts = []
        self.exhausted = []

    def on_attempt_failed(self, request_id, attempt, error_class, action, reason):
        self.attempts.append((request_id, attempt, error_class, action))

    def on_candidate_exhausted(self, role, candidate_id):
        self.exhausted.append((role, candidate_id))


class OrchestratorTestCase(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.tmpdir, "checkpoint.db")
        self.store = CheckpointStore(self.db_path)
        self.registry = FixtureRegistry(people=["张三", "李四", "王五"])
        self.allocator = PersonnelAllocator(self.store, LIMITS)
        self.allocator.sync(Role.NURSE, ["N1", "N2"])
        self.allocator.sync(Role.PHYSICIAN, ["D1"])
        self.allocator.sync(Role.CAREGIVER, ["C1", "C2"])
        self.slept = []
        self.events = RecordingEvents()
        self.orch = self.make_orchestrator()

    def tearDown(self):
        self.store.close()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def make_orchestrator(self, max_attempts=3) -> RegistrationOrchestrator:
        return RegistrationOrchestrator(
            self.registry, self.allocator, self.store,
            item_indices=ITEM_INDICES,
            policy=RetryPolicy(max_attempts=max_attempts, delay_seconds=1.0),
            sleep_fn=self.slept.append,
            events=self.events,
        )

    def request(self, name="张三") -> RegistrationRequest:
        return RegistrationRequest(name, "05", False)


class TestHappyPath(OrchestratorTestCase):

    def test_success_confirms_and_records(self):
        outcome = self.orch.process(self.request())
        self.assertEqual(outcome.status, OutcomeStatus.SUCCESS)
        self.assertEqual(outcome.attempts, 1)
        self.assertEqual(outcome.assigned, {Role.NURSE: "N1", Role.PHYSICIAN: "D1",
                                            Role.CAREGIVER: "C1"})
        self.assertTrue(self.store.is_completed("张三"))
        self.assertEqual(self.allocator.usage(Role.NURSE, "N1"), 1)
        self.assertEqual(self.allocator.usage(Role.PHYSICIAN, "D1"), 1)
        self.assertEqual(self.allocator.usage(Role.CAREGIVER, "C1"), 1)
        self.assertEqual(self.slept, [])

    def test_payload_contents(self):
        self.orch.process(RegistrationRequest("张三", "06", True))
        payload = self.registry.submissions[-1]
        self.assertEqual(payload.service_date, 20250930)
        self.assertEqual(payload.care_type, "06")
        self.assertTrue(payload.medical_flag)
        self.assertEqual(payload.category.category_id, "C-04")
        self.assertEqual([i.item_code for i in payload.items],
                         [f"ITEM{i:03d}" for i in ITEM_INDICES])

    def test_consecutive_requests_rotate_candidates(self):
        self.orch.process(self.request("张三"))
        outcome = self.orch.process(self.request("李四"))
        self.assertEqual(outcome.assigned[Role.NURSE], "N2")
        self.assertEqual(outcome.assigned[Role.CAREGIVER], "C2")


class TestSkip(OrchestratorTestCase):

    def test_completed_request_makes_no_remote_calls(self):
        self.store.mark_completed("张三")
        outcome = self.orch.process(self.request())
        self.assertEqual(outcome.status, OutcomeStatus.SKIPPED)
        self.assertEqual(self.registry.calls, [])


class TestCapacityReselection(OrchestratorTestCase):

    def test_nurse_capacity_switches_nurse_without_sleep(self):
        self.registry.script_submit(SubmitResult(False, "该责任护士负责人数已达上限", 200))
        outcome = self.orch.process(self.request())

        self.assertEqual(outcome.status, OutcomeStatus.SUCCESS)
        self.assertEqual(outcome.attempts, 2)
        self.assertEqual(outcome.assigned[Role.NURSE], "N2")
        self.assertEqual(self.slept, [])
        self.assertTrue(self.allocator.is_exhausted(Role.NURSE, "N1"))
        self.assertEqual(self.allocator.usage(Role.NURSE, "N1"), 0)
        self.assertEqual(self.events.exhausted, [("nurse", "N1")])
        # reference data resolved once
        self.assertEqual(self.registry.call_count("lookup_person"), 1)
        self.assertEqual(self.registry.call_count("submit"), 2)

    def test_physician_capacity_with_no_alternative_fails_exhausted(self):
        self.registry.script_submit(SubmitResult(False, "责任医师负责人数已达上限", 200))
        outcome = self.orch.process(self.request())
        self.assertEqual(outcome.status, OutcomeStatus.FAILED)
        self.assertEqual(outcome.error_class, ErrorClass.EXHAUSTION)
        self.assertEqual(outcome.reason, "no available personnel for role physician")
        self.assertEqual(self.registry.call_count("submit"), 1)

    def test_remote_caps_exhaust_across_requests(self):
        self.registry.remote_caps = {Role.NURSE: 1}
        self.orch.process(self.request("张三"))
        self.orch.process(self.request("李四"))
        outcome = self.orch.process(self.request("王五"))
        self.assertEqual(outcome.status, OutcomeStatus.FAILED)
        self.assertEqual(outcome.error_class, ErrorClass.EXHAUSTION)
        self.assertEqual(self.allocator.exhausted(Role.NURSE), {"N1", "N2"})

    def test_caregiver_capacity_text_fails_without_retry(self):
        self.registry.script_submit(SubmitResult(False, "护理员负责人数已达上限", 200))
        outcome = self.orch.process(self.request())
        self.assertEqual(outcome.status, OutcomeStatus.FAILED)
        self.assertEqual(outcome.error_class, ErrorClass.OTHER)
        self.assertEqual(self.allocator.exhausted(Role.CAREGIVER), set())
        self.assertEqual(self.registry.call_count("submit"), 1)


class TestTransient(OrchestratorTestCase):

    def test_backoff_then_success(self):
        self.registry.script_submit(SubmitResult(False, "系统繁忙", 200))
        outcome = self.orch.process(self.request())
        self.assertEqual(outcome.status, OutcomeStatus.SUCCESS)
        self.assertEqual(outcome.attempts, 2)
        self.assertEqual(self.slept, [1.0])
        self.assertEqual(self.registry.call_count("lookup_person"), 2)

    def test_lookup_transient_retried(self):
        self.registry.script_failure("lookup_person", TransientRemoteError("timed out"))
        outcome = self.orch.process(self.request())
        self.assertEqual(outcome.status, OutcomeStatus.SUCCESS)
        self.assertEqual(self.slept, [1.0])

    def test_budget_exhausted_keeps_last_reason(self):
        self.registry.script_submit(
            SubmitResult(False, "busy 1", 200),
            SubmitResult(False, "busy 2", 200),
            SubmitResult(False, "busy 3", 200),
        )
        outcome = self.orch.process(self.request())
        self.assertEqual(outcome.status, OutcomeStatus.FAILED)
        self.assertEqual(outcome.attempts, 3)
        self.assertIn("busy 3", outcome.reason)
        self.assertEqual(outcome.error_class, ErrorClass.TRANSIENT)
        self.assertEqual(self.slept, [1.0, 1.0])
        self.assertFalse(self.store.is_completed("张三"))
        self.assertEqual(self.allocator.usage(Role.NURSE, "N1"), 0)

    def test_unexpected_exception_is_transient(self):
        self.registry.script_submit(ConnectionResetError("reset by peer"))
        outcome = self.orch.process(self.request())
        self.assertEqual(outcome.status, OutcomeStatus.SUCCESS)
        self.assertEqual(self.events.attempts[0][2:], ("transient", "backoff"))

    def test_unparseable_server_date_is_transient(self):
        self.registry.server_date = "garbage"
        outcome = self.make_orchestrator(max_attempts=2).process(self.request())
        self.assertEqual(outcome.status, OutcomeStatus.FAILED)
        self.assertEqual(outcome.error_class, ErrorClass.TRANSIENT)


class TestNonRetryable(OrchestratorTestCase):

    def test_person_not_found(self):
        outcome = self.orch.process(self.request("nobody"))
        self.assertEqual(outcome.status, OutcomeStatus.FAILED)
        self.assertEqual(outcome.error_class, ErrorClass.NOT_FOUND)
        self.assertEqual(self.registry.call_count("submit"), 0)
        self.assertEqual(self.slept, [])

    def test_empty_categories(self):
        self.registry.categories = []
        outcome = self.orch.process(self.request())
        self.assertEqual(outcome.error_class, ErrorClass.NOT_FOUND)

    def test_no_selected_items(self):
        self.registry.items = self.registry.items[:0]
        outcome = self.orch.process(self.request())
        self.assertEqual(outcome.error_class, ErrorClass.NOT_FOUND)

    def test_explicit_rejection(self):
        self.registry.script_submit(SubmitResult(False, "该人员已登记", 400))
        outcome = self.orch.process(self.request())
        self.assertEqual(outcome.error_class, ErrorClass.OTHER)
        self.assertEqual(self.registry.call_count("submit"), 1)

    def test_exhaustion_before_submit(self):
        self.allocator.sync(Role.CAREGIVER, [])
        outcome = self.orch.process(self.request())
        self.assertEqual(outcome.error_class, ErrorClass.EXHAUSTION)
        self.assertEqual(outcome.reason, "no available personnel for role caregiver")
        self.assertEqual(self.registry.call_count("submit"), 0)


class FailingLedgerStore:
    """Delegates to a real store but fails the ledger append."""

    def __init__(self, store):
        self._store = store

    def __getattr__(self, name):
        return getattr(self._store, name)

    def mark_completed(self, request_id):
        raise PersistenceFailure("ledger append: disk I/O error")


class TestPersistenceFailure(OrchestratorTestCase):

    def test_ledger_failure_after_acceptance_is_failed(self):
        orch = RegistrationOrchestrator(
            self.registry, self.allocator, FailingLedgerStore(self.store),
            item_indices=ITEM_INDICES, sleep_fn=self.slept.append,
        )
        outcome = orch.process(self.request())
        self.assertEqual(outcome.status, OutcomeStatus.FAILED)
        self.assertEqual(outcome.error_class, ErrorClass.PERSISTENCE_FAILURE)
        self.assertIn("accepted but not recorded", outcome.reason)
        self.assertFalse(self.store.is_completed("张三"))

    def test_replay_after_crash_counts_each_accepted_candidate_once(self):
        orch = RegistrationOrchestrator(
            self.registry, self.allocator, FailingLedgerStore(self.store),
            item_indices=ITEM_INDICES, sleep_fn=self.slept.append,
        )
        orch.process(self.request())
        self.assertEqual(self.allocator.usage(Role.NURSE, "N1"), 1)

        # Restart: fresh allocator over the same file, remote accepts the replay
        self.store.close()
        self.store = CheckpointStore(self.db_path)
        allocator = PersonnelAllocator(self.store, LIMITS)
        self.registry.registered.clear()
        orch = RegistrationOrchestrator(self.registry, allocator, self.store,
                                        item_indices=ITEM_INDICES, sleep_fn=self.slept.append)
        outcome = orch.process(self.request())

        self.assertEqual(outcome.status, OutcomeStatus.SUCCESS)
        self.assertEqual(outcome.assigned[Role.NURSE], "N2")
        self.assertEqual(outcome.assigned[Role.CAREGIVER], "C2")
        self.assertEqual(allocator.usage(Role.NURSE, "N1"), 1)
        self.assertEqual(allocator.usage(Role.NURSE, "N2"), 1)
        self.assertEqual(allocator.usage(Role.CAREGIVER, "C2"), 1)
        # Same physician both times: counted once
        self.assertEqual(allocator.usage(Role.PHYSICIAN, "D1"), 1)
        self.assertEqual(self.store.assignments_for("张三"),
                         {Role.NURSE: "N2", Role.PHYSICIAN: "D1", Role.CAREGIVER: "C2"})
        self.assertTrue(self.store.is_completed("张三"))

    def test_ledger_read_failure_is_failed(self):
        self.store.close()
        outcome = self.orch.process(self.request())
        self.assertEqual(outcome.status, OutcomeStatus.FAILED)
        self.assertEqual(outcome.error_class, ErrorClass.PERSISTENCE_FAILURE)
        self.assertEqual(self.registry.calls, [])


class TestClassifyException(unittest.TestCase):

    def test_checkin_errors_keep_class(self):
        self.assertEqual(classify_exception(PersistenceFailure("x")),
                         ErrorClass.PERSISTENCE_FAILURE)

    def test_foreign_errors_are_transient(self):
        self.assertEqual(classify_exception(OSError("x")), ErrorClass.TRANSIENT)


if __name__ == "__main__":
    unittest.main()
