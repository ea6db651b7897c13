"""
Check-in Engine - Progress Sinks

Consumers of the per-request ProgressEvent and the terminal RunSummary.
A sink that raises never affects the run: FanoutSink logs and moves on.

  CallbackSink    plain callables
  LatestProgress  thread-safe latest state, polled by the status API
  LoggingSink     one log line every N requests
  WebhookSink     fire-and-forget HTTP POST in background threads
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence

import httpx

from checkin.types import ProgressEvent, RunSummary

logger = logging.getLogger("checkin.progress")


class ProgressSink(Protocol):
    def on_progress(self, event: ProgressEvent) -> None: ...
    def on_summary(self, summary: RunSummary) -> None: ...


class CallbackSink:
    def __init__(
        self,
        on_progress: Callable[[ProgressEvent], None] | None = None,
        on_summary: Callable[[RunSummary], None] | None = None,
    ):
        self._on_progress = on_progress
        self._on_summary = on_summary

    def on_progress(self, event: ProgressEvent) -> None:
        if self._on_progress:
            self._on_progress(event)

    def on_summary(self, summary: RunSummary) -> None:
        if self._on_summary:
            self._on_summary(summary)


class LatestProgress:
    """Keeps the most recent event and the summary once the run ends."""

    def __init__(self):
        self._lock = threading.Lock()
        self._event: ProgressEvent | None = None
        self._summary: RunSummary | None = None

    def on_progress(self, event: ProgressEvent) -> None:
        with self._lock:
            self._event = event

    def on_summary(self, summary: RunSummary) -> None:
        with self._lock:
            self._summary = summary

    @property
    def finished(self) -> bool:
        with self._lock:
            return self._summary is not None

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "progress": self._event.to_dict() if self._event else None,
                "summary": self._summary.to_dict() if self._summary else None,
            }


class LoggingSink:
    def __init__(self, every: int = 10):
        self.every = max(1, every)

    def on_progress(self, event: ProgressEvent) -> None:
        if event.processed_count % self.every == 0 or event.processed_count == event.total_count:
            logger.info("Progress %d/%d: %s", event.processed_count, event.total_count,
                        event.statistics)

    def on_summary(self, summary: RunSummary) -> None:
        logger.info("Run %s finished in %.1fs: %s%s", summary.run_id, summary.elapsed_seconds,
                    summary.statistics.counts(), " (cancelled)" if summary.cancelled else "")


class FanoutSink:
    """Delivers to every sink; a failing sink is logged, not propagated."""

    def __init__(self, sinks: Sequence[ProgressSink] = ()):
        self.sinks = list(sinks)

    def add(self, sink: ProgressSink) -> None:
        self.sinks.append(sink)

    def on_progress(self, event: ProgressEvent) -> None:
        for sink in self.sinks:
            try:
                sink.on_progress(event)
            except Exception:
                logger.exception("Progress sink %s failed", type(sink).__name__)

    def on_summary(self, summary: RunSummary) -> None:
        for sink in self.sinks:
            try:
                sink.on_summary(summary)
            except Exception:
                logger.exception("Summary sink %s failed", type(sink).__name__)


# ═══════════════════════════════════════════════════════════════════
# Webhook
# ═══════════════════════════════════════════════════════════════════

@dataclass
class DeliveryRecord:
    delivery_id: str
    event_type: str
    status: str         # pending, delivered, failed
    attempts: int = 0
    error: str = ""
    created_at: float = 0.0


def _default_http_client(url: str, payload: dict, headers: dict[str, str] | None = None,
                         timeout: float = 10.0) -> dict[str, Any]:
    """POST JSON. Returns {"success": bool, "status_code": int, "error": str}."""
    try:
        resp = httpx.post(url, json=payload, headers=headers or {}, timeout=timeout)
    except httpx.HTTPError as e:
        return {"success": False, "status_code": 0, "error": str(e)[:200]}
    if resp.is_success:
        return {"success": True, "status_code": resp.status_code, "error": ""}
    return {"success": False, "status_code": resp.status_code, "error": resp.text[:200]}


class WebhookSink:
    """
    Non-blocking webhook sender.

    Each event is posted from its own daemon thread so a slow dashboard
    never stalls the batch. progress_every thins out per-request events;
    the summary is always sent.
    """

    def __init__(
        self,
        url: str,
        http_client: Callable | None = None,
        headers: dict[str, str] | None = None,
        max_retries: int = 2,
        timeout_seconds: float = 10.0,
        progress_every: int = 1,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.url = url
        self.headers = headers or {}
        self.max_retries = max(1, max_retries)
        self.timeout_seconds = timeout_seconds
        self.progress_every = max(1, progress_every)
        self._http_client = http_client or _default_http_client
        self._sleep = sleep_fn
        self._deliveries: list[DeliveryRecord] = []
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    def on_progress(self, event: ProgressEvent) -> None:
        if event.processed_count % self.progress_every and event.processed_count != event.total_count:
            return
        self._dispatch("progress", event.to_dict())

    def on_summary(self, summary: RunSummary) -> None:
        self._dispatch("summary", summary.to_dict())

    def _dispatch(self, event_type: str, payload: dict[str, Any]):
        record = DeliveryRecord(
            delivery_id=f"dlv_{uuid.uuid4().hex[:12]}",
            event_type=event_type,
            status="pending",
            created_at=time.time(),
        )
        thread = threading.Thread(target=self._deliver, args=(payload, record), daemon=True)
        with self._lock:
            self._deliveries.append(record)
            del self._deliveries[:-100]
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
            thread.start()

    def _deliver(self, payload: dict, record: DeliveryRecord):
        for attempt in range(1, self.max_retries + 1):
            record.attempts = attempt
            try:
                response = self._http_client(
                    url=self.url,
                    payload=payload,
                    headers=self.headers,
                    timeout=self.timeout_seconds,
                )
                if response.get("success"):
                    record.status = "delivered"
                    logger.debug("Webhook delivered: %s (attempt %d)", record.delivery_id, attempt)
                    return
                record.error = response.get("error", "unknown error")
            except Exception as e:
                record.error = str(e)[:200]
            logger.warning("Webhook failed: %s -> %s: %s (attempt %d/%d)",
                           record.delivery_id, self.url[:50], record.error,
                           attempt, self.max_retries)
            if attempt < self.max_retries:
                self._sleep(min(2 ** attempt, 10))

        record.status = "failed"
        logger.error("Webhook exhausted retries: %s after %d attempts",
                     record.delivery_id, self.max_retries)

    def flush(self, timeout: float = 5.0) -> None:
        """Wait for in-flight deliveries. Used at shutdown and in tests."""
        with self._lock:
            threads = list(self._threads)
        deadline = time.time() + timeout
        for thread in threads:
            thread.join(max(0.0, deadline - time.time()))
        with self._lock:
            self._threads = [t for t in self._threads if t.is_alive()]

    @property
    def deliveries(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {
                    "delivery_id": d.delivery_id,
                    "event_type": d.event_type,
                    "status": d.status,
                    "attempts": d.attempts,
                    "error": d.error,
                }
                for d in self._deliveries[-100:]
            ]
