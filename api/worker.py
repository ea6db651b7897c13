"""
Check-in Engine - Run Worker

Executes one batch run at a time in a single-thread executor so the API
stays responsive. A second start while a run is active is refused:
runs never overlap against the same checkpoint store.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Sequence

from api.models import RunRecord, RunState
from checkin.logging import generate_run_id
from checkin.progress import LatestProgress
from checkin.runner import RunResult
from checkin.types import RegistrationRequest

logger = logging.getLogger("checkin.api.worker")

# (requests, sink, stop_event, run_id) -> RunResult
RunFn = Callable[[Sequence[RegistrationRequest], LatestProgress, threading.Event, str], RunResult]


class RunAlreadyActive(Exception):
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"run {run_id} is still active")


class RunWorker:
    """Thread-safe holder of the current (or last) run."""

    def __init__(self, run_fn: RunFn):
        self._run_fn = run_fn
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="checkin_run")
        self._lock = threading.Lock()
        self._record: RunRecord | None = None
        self._progress: LatestProgress | None = None
        self._stop_event: threading.Event | None = None
        self._future: Future | None = None

    def start(self, requests: Sequence[RegistrationRequest]) -> RunRecord:
        with self._lock:
            if self._record is not None and self._record.active:
                raise RunAlreadyActive(self._record.run_id)
            run_id = generate_run_id()
            self._record = RunRecord(run_id=run_id, status=RunState.RUNNING,
                                     total=len(requests), started_at=time.time())
            self._progress = LatestProgress()
            self._stop_event = threading.Event()
            self._future = self._pool.submit(self._execute, run_id, list(requests),
                                             self._progress, self._stop_event)
            logger.info("Run %s started with %d requests", run_id, len(requests))
            return self._record

    def _execute(self, run_id: str, requests: list[RegistrationRequest],
                 progress: LatestProgress, stop_event: threading.Event):
        """Run in worker thread."""
        try:
            result = self._run_fn(requests, progress, stop_event, run_id)
        except Exception as e:
            logger.error("Run %s failed: %s", run_id, e)
            self._finish(run_id, RunState.FAILED, error=str(e)[:500])
            return
        state = RunState.CANCELLED if result.summary.cancelled else RunState.COMPLETED
        self._finish(run_id, state, report_path=result.report_path)
        logger.info("Run %s %s", run_id, state.value)

    def _finish(self, run_id: str, state: RunState, error: str = "",
                report_path: str | None = None):
        with self._lock:
            if self._record is None or self._record.run_id != run_id:
                return
            self._record.status = state
            self._record.finished_at = time.time()
            self._record.error = error
            self._record.report_path = report_path

    def current(self) -> RunRecord | None:
        """Copy of the current record with the latest progress attached."""
        with self._lock:
            if self._record is None:
                return None
            record = RunRecord(**{k: getattr(self._record, k)
                                  for k in self._record.__dataclass_fields__})
            progress = self._progress
        if progress is not None:
            snapshot = progress.snapshot()
            record.progress = snapshot["progress"]
            record.summary = snapshot["summary"]
        return record

    def stop(self) -> bool:
        """Request cooperative cancellation. False if nothing is running."""
        with self._lock:
            if self._record is None or not self._record.active or self._stop_event is None:
                return False
            self._stop_event.set()
            logger.warning("Stop requested for run %s", self._record.run_id)
            return True

    def wait(self, timeout: float | None = None) -> RunRecord | None:
        with self._lock:
            future = self._future
        if future is not None:
            future.result(timeout=timeout)
        return self.current()

    def shutdown(self):
        self.stop()
        self._pool.shutdown(wait=True)
