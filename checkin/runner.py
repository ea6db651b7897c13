"""
Check-in Engine - Batch Runner

Runs a request sequence strictly in order, one request at a time:

    personnel sync -> preflight -> for each request: orchestrator.process
    -> statistics -> progress event -> ... -> summary -> report

Cancellation is cooperative. stop() sets a flag that is checked at the
top of every iteration; the request in flight finishes on its own
(remote calls complete or time out first).

Usage:
    runner = BatchRunner(orchestrator, sink=LatestProgress())
    stats = runner.run(requests)
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Sequence

from checkin.allocator import PersonnelAllocator
from checkin.config import Settings
from checkin.errors import ErrorClass, PreflightFailed
from checkin.logging import RunLogger
from checkin.orchestrator import RegistrationOrchestrator, classify_exception
from checkin.progress import FanoutSink, LoggingSink, ProgressSink
from checkin.remote import RemoteRegistry, parse_server_date
from checkin.report import build_report, export_report
from checkin.store import CheckpointStore
from checkin.types import (
    ROLES,
    Outcome,
    ProgressEvent,
    RegistrationRequest,
    Role,
    RunStatistics,
    RunSummary,
)

logger = logging.getLogger("checkin.runner")


# ═══════════════════════════════════════════════════════════════════
# Batch Runner
# ═══════════════════════════════════════════════════════════════════

class BatchRunner:
    """Sequential driver for one run. Not safe to run() concurrently."""

    def __init__(
        self,
        orchestrator: RegistrationOrchestrator,
        sink: ProgressSink | None = None,
        events: RunLogger | None = None,
        stop_event: threading.Event | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.orchestrator = orchestrator
        self.sink = sink
        self.events = events or orchestrator.events or RunLogger()
        self.stop_event = stop_event or threading.Event()
        self.clock = clock
        self.summary: RunSummary | None = None
        self.outcomes: list[Outcome] = []

    @property
    def run_id(self) -> str:
        return self.events.run_id

    def stop(self) -> None:
        if not self.stop_event.is_set():
            logger.warning("Stop requested for %s", self.run_id)
        self.stop_event.set()

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    def run(self, requests: Sequence[RegistrationRequest]) -> RunStatistics:
        stats = RunStatistics(total=len(requests))
        self.outcomes = []
        started = self.clock()
        cancelled = False
        self.events.on_run_start(total=stats.total, personnel=self.orchestrator.allocator.stats())

        for index, request in enumerate(requests, start=1):
            if self.stop_event.is_set():
                cancelled = True
                self.events.on_run_cancelled(processed=stats.processed, total=stats.total)
                break

            self.events.on_request_start(index, stats.total, request.request_id)
            outcome = self._process_one(request)
            self.outcomes.append(outcome)
            stats.record(outcome)
            self.events.on_request_end(outcome.request_id, outcome.status.value,
                                       outcome.attempts, outcome.reason)

            self._emit_progress(ProgressEvent(
                run_id=self.run_id,
                processed_count=stats.processed,
                total_count=stats.total,
                last_outcome=outcome,
                statistics=stats.counts(),
                emitted_at=self.clock(),
            ))

        finished = self.clock()
        self.summary = RunSummary(self.run_id, stats, started, finished, cancelled)
        self.events.on_run_end(stats.counts(), finished - started,
                               personnel=self.orchestrator.allocator.stats())
        self._emit_summary(self.summary)
        return stats

    def _process_one(self, request: RegistrationRequest) -> Outcome:
        """One request's failure never aborts the batch."""
        try:
            return self.orchestrator.process(request)
        except Exception as e:
            logger.exception("Unhandled error processing %s", request.request_id)
            error_class = classify_exception(e)
            if error_class is ErrorClass.TRANSIENT:
                error_class = ErrorClass.OTHER
            return Outcome.failed(request.request_id, f"{type(e).__name__}: {e}", 0, error_class)

    def _emit_progress(self, event: ProgressEvent):
        if self.sink is None:
            return
        try:
            self.sink.on_progress(event)
        except Exception:
            logger.exception("Progress sink failed at %d/%d", event.processed_count, event.total_count)

    def _emit_summary(self, summary: RunSummary):
        if self.sink is None:
            return
        try:
            self.sink.on_summary(summary)
        except Exception:
            logger.exception("Summary sink failed for %s", summary.run_id)


# ═══════════════════════════════════════════════════════════════════
# Personnel sync
# ═══════════════════════════════════════════════════════════════════

def caregiver_matches(display_name: str, names: Iterable[str]) -> bool:
    """Caregiver display names look like '<name>-<suffix>'."""
    return any(f"{name}-" in (display_name or "") for name in names)


def sync_personnel(
    registry: RemoteRegistry,
    allocator: PersonnelAllocator,
    org_code: str,
    caregiver_names: Sequence[str] = (),
) -> dict[str, int]:
    """Refresh every role's pool from listPersonnel. Returns pool sizes."""
    records = registry.list_personnel(org_code)
    by_role: dict[Role, list[str]] = {role: [] for role in ROLES}
    for record in records:
        if record.role is None or not record.personnel_id:
            continue
        if (record.role is Role.CAREGIVER and caregiver_names
                and not caregiver_matches(record.display_name, caregiver_names)):
            continue
        if record.personnel_id not in by_role[record.role]:
            by_role[record.role].append(record.personnel_id)

    sizes = {}
    for role in ROLES:
        sizes[role.value] = len(allocator.sync(role, by_role[role]))
    logger.info("Personnel synced for %s: %s", org_code, sizes)
    return sizes


# ═══════════════════════════════════════════════════════════════════
# Preflight
# ═══════════════════════════════════════════════════════════════════

@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str = ""
    latency_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "detail": self.detail, "latency_ms": round(self.latency_ms, 1)}


def _run_check(name: str, fn: Callable[[], tuple[bool, str]]) -> CheckResult:
    t0 = time.time()
    try:
        ok, detail = fn()
    except Exception as e:
        ok, detail = False, f"{type(e).__name__}: {str(e)[:200]}"
    return CheckResult(name, ok, detail, (time.time() - t0) * 1000)


def preflight(registry: RemoteRegistry, allocator: PersonnelAllocator) -> list[CheckResult]:
    """
    Remote reachable, and every role has at least one eligible candidate.

    Raises PreflightFailed listing every failed check.
    """
    def check_remote() -> tuple[bool, str]:
        raw = registry.get_server_date()
        return True, f"server date {parse_server_date(raw)}"

    def check_role(role: Role) -> Callable[[], tuple[bool, str]]:
        def check() -> tuple[bool, str]:
            role_stats = allocator.stats()[role.value]
            if role_stats["available"] > 0:
                return True, f"{role_stats['available']}/{role_stats['total']} available"
            return False, f"no available {role.value} ({role_stats['total']} total)"
        return check

    results = [_run_check("remote", check_remote)]
    results.extend(_run_check(role.value, check_role(role)) for role in ROLES)

    issues = [f"{r.name}: {r.detail}" for r in results if not r.ok]
    if issues:
        logger.error("Preflight failed: %s", "; ".join(issues))
        raise PreflightFailed(issues)
    logger.info("Preflight ok: %s", {r.name: r.detail for r in results})
    return results


# ═══════════════════════════════════════════════════════════════════
# Full run
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RunResult:
    summary: RunSummary
    outcomes: list[Outcome]
    report_path: str | None = None


def execute_run(
    settings: Settings,
    requests: Sequence[RegistrationRequest],
    registry: RemoteRegistry,
    store: CheckpointStore,
    sink: ProgressSink | None = None,
    stop_event: threading.Event | None = None,
    run_id: str | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
    sync: bool = True,
    check: bool = True,
    export: bool = True,
) -> RunResult:
    """
    Wire allocator, orchestrator and runner from settings and run once.

    PreflightFailed propagates; nothing has been submitted at that point.
    """
    events = RunLogger(run_id)
    allocator = PersonnelAllocator(store, settings.limits())

    if sync:
        sync_personnel(registry, allocator, settings.organization.code,
                       settings.personnel.caregiver_names)
    if check:
        preflight(registry, allocator)

    orchestrator = RegistrationOrchestrator(
        registry,
        allocator,
        store,
        checkin_type=settings.care.checkin_type,
        category_code=settings.care.category_code,
        item_indices=settings.care.item_indices,
        policy=settings.retry_policy(),
        sleep_fn=sleep_fn,
        events=events,
    )
    fanout = FanoutSink([LoggingSink()])
    if sink is not None:
        fanout.add(sink)

    runner = BatchRunner(orchestrator, sink=fanout, events=events, stop_event=stop_event)
    runner.run(requests)
    summary = runner.summary

    report_path = None
    if export:
        report = build_report(
            summary,
            limits={role.value: limit for role, limit in settings.limits().items()},
            item_indices=settings.care.item_indices,
            personnel=allocator.stats(),
            source=settings.source,
        )
        path = export_report(report, settings.storage.report_dir)
        report_path = str(path) if path else None

    return RunResult(summary, runner.outcomes, report_path)
