"""In-process wake-up queue that processes runs under the run lock."""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from agent_relay.runs.lock import LeaseRenewer, RunLockManager

logger = logging.getLogger(__name__)

RunProcessor = Callable[[str, str, LeaseRenewer], None]
"""Processes ``(cluster_id, run_id)``, renewing the run lease between steps."""


@dataclass(order=True, slots=True)
class _WakeUp:
    due_at: float
    sequence: int
    cluster_id: str = field(compare=False)
    run_id: str = field(compare=False)
    lock_attempts: int = field(compare=False, default=0)


class RunProcessQueue:
    """Delayed queue drained by ``concurrency`` worker threads.

    A wake-up whose run lock is held elsewhere is re-enqueued after
    ``backoff_base_seconds ** attempt`` seconds; after ``max_lock_attempts``
    failed acquisitions it is dropped with a warning. A later wake-up (the next
    job result, for example) still picks the run up. Errors taking or
    releasing the lock go through the same backoff.

    A processor failure is logged and not redelivered; the orchestrator has
    already persisted the run as ``failed`` and it waits for an explicit retry.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        lock_manager: RunLockManager,
        processor: RunProcessor | None = None,
        concurrency: int = 5,
        max_lock_attempts: int = 5,
        backoff_base_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.lock_manager = lock_manager
        self.processor = processor
        self.concurrency = concurrency
        self.max_lock_attempts = max_lock_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self._clock = clock
        self._heap: list[_WakeUp] = []
        self._sequence = itertools.count()
        self._condition = threading.Condition()
        self._stop = threading.Event()
        self._workers: list[threading.Thread] = []
        self._in_flight = 0
        self.dropped = 0

    def bind(self, processor: RunProcessor) -> None:
        self.processor = processor

    def enqueue(
        self,
        cluster_id: str,
        run_id: str,
        *,
        lock_attempts: int = 0,
        delay_seconds: float = 0.0,
    ) -> None:
        with self._condition:
            heapq.heappush(
                self._heap,
                _WakeUp(
                    due_at=self._clock() + max(0.0, delay_seconds),
                    sequence=next(self._sequence),
                    cluster_id=cluster_id,
                    run_id=run_id,
                    lock_attempts=lock_attempts,
                ),
            )
            self._condition.notify()

    def pending_count(self) -> int:
        with self._condition:
            return len(self._heap)

    def start(self) -> None:
        if self._workers:
            return
        self._stop.clear()
        for index in range(self.concurrency):
            worker = threading.Thread(
                target=self._worker_loop,
                daemon=True,
                name=f"run-queue-{index}",
            )
            worker.start()
            self._workers.append(worker)
        logger.info("Run process queue started with %d workers", self.concurrency)

    def stop(self) -> None:
        if not self._workers:
            return
        self._stop.set()
        with self._condition:
            self._condition.notify_all()
        for worker in self._workers:
            worker.join(timeout=15)
        self._workers = []
        logger.info("Run process queue stopped")

    def run_pending(self, *, include_delayed: bool = False) -> int:
        """Process wake-ups on the calling thread until none is due; returns how many ran."""

        processed = 0
        while True:
            with self._condition:
                if not self._heap:
                    return processed
                if not include_delayed and self._heap[0].due_at > self._clock():
                    return processed
                item = heapq.heappop(self._heap)
            self._handle(item)
            processed += 1

    def wait_idle(self, timeout: float = 30.0) -> bool:
        """Block until nothing is queued or in flight."""

        deadline = self._clock() + timeout
        with self._condition:
            while self._heap or self._in_flight:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return False
                self._condition.wait(timeout=min(remaining, 0.1))
            return True

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            item = self._next_due()
            if item is None:
                continue
            try:
                self._handle(item)
            except Exception:
                logger.exception(
                    "Run wake-up handling failed (cluster=%s run_id=%s)",
                    item.cluster_id,
                    item.run_id,
                )
                self._retry_later(item)
            finally:
                with self._condition:
                    self._in_flight -= 1
                    self._condition.notify_all()

    def _next_due(self) -> _WakeUp | None:
        with self._condition:
            while not self._stop.is_set():
                if self._heap:
                    wait_for = self._heap[0].due_at - self._clock()
                    if wait_for <= 0:
                        self._in_flight += 1
                        return heapq.heappop(self._heap)
                    self._condition.wait(timeout=wait_for)
                else:
                    self._condition.wait(timeout=1.0)
            return None

    def _handle(self, item: _WakeUp) -> None:
        if self.processor is None:
            raise RuntimeError("Run process queue has no processor bound.")

        token = self.lock_manager.acquire(cluster_id=item.cluster_id, run_id=item.run_id)
        if token is None:
            self._retry_later(item)
            return
        holder: str = token

        def renew_lease() -> bool:
            return self.lock_manager.renew(
                cluster_id=item.cluster_id,
                run_id=item.run_id,
                token=holder,
            )

        try:
            self.processor(item.cluster_id, item.run_id, renew_lease)
        except Exception:
            logger.exception(
                "Run processing failed (cluster=%s run_id=%s)",
                item.cluster_id,
                item.run_id,
            )
        finally:
            self.lock_manager.release(
                cluster_id=item.cluster_id,
                run_id=item.run_id,
                token=token,
            )

    def _retry_later(self, item: _WakeUp) -> None:
        attempts = item.lock_attempts + 1
        if attempts > self.max_lock_attempts:
            self.dropped += 1
            logger.warning(
                "Dropping run wake-up after %d lock attempts (cluster=%s run_id=%s)",
                item.lock_attempts,
                item.cluster_id,
                item.run_id,
            )
            return
        delay = self.backoff_base_seconds**attempts
        logger.info(
            "Run is locked, retrying in %.1fs (cluster=%s run_id=%s attempt=%d)",
            delay,
            item.cluster_id,
            item.run_id,
            attempts,
        )
        self.enqueue(
            item.cluster_id,
            item.run_id,
            lock_attempts=attempts,
            delay_seconds=delay,
        )
