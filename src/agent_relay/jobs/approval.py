"""Human-in-the-loop approval gate between claim and result."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from agent_relay.events.sink import EventSink, RelayEvent
from agent_relay.jobs.models import JobView, RunWaker
from agent_relay.jobs.store import JobStore

logger = logging.getLogger(__name__)


class ApprovalNotifier(Protocol):
    """External channel told that a job is waiting for a decision."""

    def notify_approval_requested(self, job: JobView) -> None:
        """Deliver the notification or raise."""


class WebhookApprovalNotifier:
    """POSTs approval requests to a configured URL."""

    def __init__(
        self,
        *,
        url: str,
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
        client: httpx.Client | None = None,
    ) -> None:
        self.url = url
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            transport=httpx.HTTPTransport(retries=max_retries),
        )

    def close(self) -> None:
        self._client.close()

    def notify_approval_requested(self, job: JobView) -> None:
        response = self._client.post(
            self.url,
            json={
                "type": "approvalRequested",
                "clusterId": job.cluster_id,
                "jobId": job.id,
                "runId": job.run_id,
                "targetFn": job.target_fn,
            },
        )
        response.raise_for_status()


class ApprovalGate:
    """Interrupt/resume sub-protocol for jobs that need a human decision."""

    def __init__(
        self,
        *,
        store: JobStore,
        events: EventSink,
        notifier: ApprovalNotifier | None = None,
        wake_run: RunWaker | None = None,
    ) -> None:
        self.store = store
        self.events = events
        self.notifier = notifier
        self.wake_run = wake_run

    def request_approval(self, *, cluster_id: str, job_id: str, machine_id: str) -> bool:
        """Suspend a running job until someone approves or denies it."""

        interrupted = self.store.interrupt(
            cluster_id=cluster_id,
            job_id=job_id,
            machine_id=machine_id,
            approval_requested=True,
        )
        if not interrupted:
            return False

        job = self.store.get(cluster_id=cluster_id, job_id=job_id)
        self.events.write(
            RelayEvent(
                type="approvalRequested",
                cluster_id=cluster_id,
                job_id=job_id,
                run_id=job.run_id if job is not None else None,
                machine_id=machine_id,
                target_fn=job.target_fn if job is not None else None,
            ),
        )
        if job is not None:
            self._notify(job)
        return True

    def interrupt(self, *, cluster_id: str, job_id: str, machine_id: str) -> bool:
        """Suspend a running job without asking for approval.

        The self-healing sweep hands it back to the queue after a while.
        """

        interrupted = self.store.interrupt(
            cluster_id=cluster_id,
            job_id=job_id,
            machine_id=machine_id,
            approval_requested=False,
        )
        if interrupted:
            self.events.write(
                RelayEvent(
                    type="jobInterrupted",
                    cluster_id=cluster_id,
                    job_id=job_id,
                    machine_id=machine_id,
                ),
            )
        return interrupted

    def submit_approval(self, *, cluster_id: str, job_id: str, approved: bool) -> bool:
        """Record the decision; a repeated decision is a silent no-op returning ``False``."""

        changed = self.store.submit_approval(
            cluster_id=cluster_id,
            job_id=job_id,
            approved=approved,
        )
        if not changed:
            return False

        job = self.store.get(cluster_id=cluster_id, job_id=job_id)
        run_id = job.run_id if job is not None else None
        self.events.write(
            RelayEvent(
                type="approvalGranted" if approved else "approvalDenied",
                cluster_id=cluster_id,
                job_id=job_id,
                run_id=run_id,
                target_fn=job.target_fn if job is not None else None,
            ),
        )
        if run_id is not None and self.wake_run is not None:
            self.wake_run(cluster_id, run_id)
        return True

    def _notify(self, job: JobView) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify_approval_requested(job)
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Approval notification failed (cluster=%s job_id=%s): %s",
                job.cluster_id,
                job.id,
                error,
            )
            self.events.write(
                RelayEvent(
                    type="notificationFailed",
                    cluster_id=job.cluster_id,
                    job_id=job.id,
                    run_id=job.run_id,
                    meta={"channel": "approval", "error": str(error)},
                ),
            )
            return
        self.events.write(
            RelayEvent(
                type="notificationSent",
                cluster_id=job.cluster_id,
                job_id=job.id,
                run_id=job.run_id,
                meta={"channel": "approval"},
            ),
        )
