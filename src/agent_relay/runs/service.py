"""Run lifecycle operations used by the API and the CLI."""

from __future__ import annotations

import logging

from agent_relay.errors import BadRequestError, NotFoundError, RunBusyError
from agent_relay.jobs.store import JobStore
from agent_relay.runs.models import (
    READY_RUN_STATUSES,
    CreatedRun,
    MessageType,
    RunCreate,
    RunDetails,
    RunMessage,
    RunStatus,
    RunView,
    background_run_id,
)
from agent_relay.runs.queue import RunProcessQueue
from agent_relay.runs.store import RunStore
from agent_relay.runs.tool_calls import outstanding_invocations

logger = logging.getLogger(__name__)


class RunService:
    """Creates runs, appends messages and schedules processing through the wake-up queue."""

    def __init__(self, *, runs: RunStore, jobs: JobStore, queue: RunProcessQueue) -> None:
        self.runs = runs
        self.jobs = jobs
        self.queue = queue

    def create_run(self, payload: RunCreate) -> CreatedRun:
        """Create a run; with ``initial_message`` it is seeded and scheduled."""

        created = self.runs.create_run(payload)
        if created.created:
            logger.info(
                "Created run (cluster=%s run_id=%s)",
                payload.cluster_id,
                created.run.id,
            )
            if payload.initial_message:
                self.add_message_and_resume(
                    cluster_id=payload.cluster_id,
                    run_id=created.run.id,
                    message=payload.initial_message,
                    skip_assert=True,
                )
        return created

    def create_run_with_message(self, payload: RunCreate, message: str) -> CreatedRun:
        payload.initial_message = message
        return self.create_run(payload)

    def ensure_background_run(self, cluster_id: str) -> RunView:
        """Per-cluster run owning jobs that no reasoning run waits on."""

        return self.runs.create_run(
            RunCreate(
                cluster_id=cluster_id,
                run_id=background_run_id(cluster_id),
                name="Background",
                interactive=False,
            ),
        ).run

    def add_message_and_resume(
        self,
        *,
        cluster_id: str,
        run_id: str,
        message: str,
        message_type: MessageType = MessageType.HUMAN,
        skip_assert: bool = False,
    ) -> RunMessage:
        if not skip_assert:
            self.assert_run_ready(cluster_id=cluster_id, run_id=run_id)
        entry = RunMessage(type=message_type, data={"message": message})
        self.runs.add_messages(cluster_id=cluster_id, run_id=run_id, messages=[entry])
        self.resume_run(cluster_id=cluster_id, run_id=run_id)
        return entry

    def assert_run_ready(self, *, cluster_id: str, run_id: str) -> RunView:
        """Raise unless the run can take a new message right now."""

        run = self._require_run(cluster_id=cluster_id, run_id=run_id)
        if not run.interactive:
            raise BadRequestError(f"Run {run_id} is not interactive.")
        if run.status not in READY_RUN_STATUSES:
            raise RunBusyError(f"Run {run_id} is {run.status.value}, try again later.")
        messages = self.runs.list_messages(cluster_id=cluster_id, run_id=run_id)
        if outstanding_invocations(messages):
            # Invocations left over from an interrupted pass; nudge the run along.
            self.resume_run(cluster_id=cluster_id, run_id=run_id)
            raise RunBusyError(f"Run {run_id} has unprocessed tool calls, try again later.")
        return run

    def create_retry(self, *, cluster_id: str, run_id: str) -> RunView:
        run = self._require_run(cluster_id=cluster_id, run_id=run_id)
        if run.status is not RunStatus.FAILED:
            raise BadRequestError(f"Run {run_id} is {run.status.value}; only failed runs retry.")
        moved = self.runs.update_status(
            cluster_id=cluster_id,
            run_id=run_id,
            status=RunStatus.PENDING,
            failure_reason="",
            expected=(RunStatus.FAILED,),
        )
        if not moved:
            raise RunBusyError(f"Run {run_id} changed state concurrently, try again later.")
        self.resume_run(cluster_id=cluster_id, run_id=run_id)
        return self._require_run(cluster_id=cluster_id, run_id=run_id)

    def resume_run(self, *, cluster_id: str, run_id: str) -> None:
        if run_id == background_run_id(cluster_id):
            return
        self.queue.enqueue(cluster_id, run_id)

    def get_run_details(self, *, cluster_id: str, run_id: str) -> RunDetails:
        run = self._require_run(cluster_id=cluster_id, run_id=run_id)
        return RunDetails(
            run=run,
            messages=self.runs.list_messages(cluster_id=cluster_id, run_id=run_id),
            result=self.runs.last_agent_result(cluster_id=cluster_id, run_id=run_id),
            waiting_job_ids=self.jobs.waiting_job_ids(cluster_id=cluster_id, run_id=run_id),
        )

    def list_runs(self, *, cluster_id: str, limit: int = 50) -> list[RunView]:
        return self.runs.list_runs(cluster_id=cluster_id, limit=limit)

    def _require_run(self, *, cluster_id: str, run_id: str) -> RunView:
        run = self.runs.get_run(cluster_id=cluster_id, run_id=run_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found in cluster {cluster_id}.")
        return run
