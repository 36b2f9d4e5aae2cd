"""Periodic self-healing sweep over the job table."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta

from agent_relay.events.sink import EventSink, RelayEvent
from agent_relay.jobs.models import JobRef, RunWaker, SweepReport
from agent_relay.jobs.store import JobStore

logger = logging.getLogger(__name__)


class SelfHealingSupervisor:
    """Detects silent claimants and re-queues or fails their jobs.

    One sweep runs, in order: stall detection for running jobs past their
    timeout, a one-time re-queue of idle non-approval interruptions, terminal
    failure of stalled jobs with no attempts left, and re-queueing of the rest.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: JobStore,
        events: EventSink,
        interval_seconds: float = 5.0,
        interrupt_recover_after_seconds: int = 300,
        interrupt_abandon_after_seconds: int = 86_400,
        wake_run: RunWaker | None = None,
    ) -> None:
        self.store = store
        self.events = events
        self.interval_seconds = interval_seconds
        self.interrupt_recover_after = timedelta(seconds=interrupt_recover_after_seconds)
        self.interrupt_abandon_after = timedelta(seconds=interrupt_abandon_after_seconds)
        self.wake_run = wake_run
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self, *, now: datetime | None = None) -> SweepReport:
        report = SweepReport()

        for job in self.store.mark_stalled(now=now):
            report.stalled.append(job.id)
            self._emit("jobStalled", job)

        for job in self.store.recover_idle_interruptions(
            recover_after=self.interrupt_recover_after,
            abandon_after=self.interrupt_abandon_after,
            now=now,
        ):
            report.interruptions_recovered.append(job.id)
            self._emit("jobRecovered", job, meta={"reason": "interruptionNotResumed"})

        for job in self.store.fail_exhausted(now=now):
            report.stalled_failed_by_timeout.append(job.id)
            self._emit("jobStalledTooManyTimes", job)
            if job.run_id is not None and self.wake_run is not None:
                self.wake_run(job.cluster_id, job.run_id)

        for job in self.store.recover_stalled(now=now):
            report.stalled_recovered.append(job.id)
            self._emit("jobRecovered", job)

        report.abandoned_interruptions = self.store.list_abandoned_interruptions(
            abandon_after=self.interrupt_abandon_after,
            now=now,
        )
        if report.stalled or report.stalled_failed_by_timeout or report.interruptions_recovered:
            logger.info(
                "Self-heal sweep: stalled=%d recovered=%d failed=%d interruptions_recovered=%d",
                len(report.stalled),
                len(report.stalled_recovered),
                len(report.stalled_failed_by_timeout),
                len(report.interruptions_recovered),
            )
        return report

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="self-heal")
        self._thread.start()
        logger.info("Self-healing supervisor started (interval=%ss)", self.interval_seconds)

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=15)
        self._thread = None
        logger.info("Self-healing supervisor stopped")

    def run_loop(self, *, iterations: int | None = None) -> int:
        """Sweep in the foreground until stopped or ``iterations`` sweeps ran."""

        completed = 0
        while not self._stop.is_set():
            self._sweep_safely()
            completed += 1
            if iterations is not None and completed >= iterations:
                break
            self._stop.wait(timeout=self.interval_seconds)
        return completed

    def _loop(self) -> None:
        while not self._stop.wait(timeout=self.interval_seconds):
            self._sweep_safely()

    def _sweep_safely(self) -> None:
        try:
            self.run_once()
        except Exception:
            logger.exception("Self-heal sweep failed")

    def _emit(self, event_type: str, job: JobRef, *, meta: dict[str, object] | None = None) -> None:
        self.events.write(
            RelayEvent(
                type=event_type,
                cluster_id=job.cluster_id,
                job_id=job.id,
                run_id=job.run_id,
                target_fn=job.target_fn,
                meta={"remainingAttempts": job.remaining_attempts, **(meta or {})},
            ),
        )
