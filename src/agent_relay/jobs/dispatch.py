"""Long-poll claim protocol used by machines, plus result submission."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from typing import Any

from agent_relay.errors import JobPollTimeoutError, NotFoundError
from agent_relay.events.sink import EventSink, RelayEvent
from agent_relay.jobs.models import ClaimedJob, JobView, ResultType, RunWaker
from agent_relay.jobs.packer import pack
from agent_relay.jobs.store import JobStore

logger = logging.getLogger(__name__)


class DispatchProtocol:
    """Hands pending jobs to polling machines and accepts their results."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: JobStore,
        events: EventSink,
        poll_interval_seconds: float = 0.5,
        max_poll_limit: int = 50,
        wake_run: RunWaker | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.events = events
        self.poll_interval_seconds = poll_interval_seconds
        self.max_poll_limit = max_poll_limit
        self.wake_run = wake_run
        self._clock = clock
        self._sleep = sleep

    def poll_jobs(
        self,
        *,
        cluster_id: str,
        machine_id: str,
        tools: Sequence[str],
        limit: int,
        wait_seconds: float,
    ) -> list[ClaimedJob]:
        """Block up to ``wait_seconds`` for pending work, then claim a batch."""

        if not tools:
            return []
        limit = max(1, min(limit, self.max_poll_limit))
        deadline = self._clock() + max(0.0, wait_seconds)
        while True:
            if self.store.has_pending(cluster_id=cluster_id, tools=tools):
                claimed = self.store.claim_batch(
                    cluster_id=cluster_id,
                    tools=tools,
                    limit=limit,
                    machine_id=machine_id,
                )
                if claimed:
                    for job in claimed:
                        self.events.write(
                            RelayEvent(
                                type="jobAcknowledged",
                                cluster_id=cluster_id,
                                job_id=job.id,
                                machine_id=machine_id,
                                target_fn=job.target_fn,
                            ),
                        )
                    return claimed
            if self._clock() >= deadline:
                return []
            self._sleep(self.poll_interval_seconds)

    def acknowledge_job(self, *, cluster_id: str, job_id: str, machine_id: str) -> ClaimedJob:
        claimed = self.store.claim_one(cluster_id=cluster_id, job_id=job_id, machine_id=machine_id)
        if claimed is None:
            raise NotFoundError(f"Job {job_id} is not pending in cluster {cluster_id}.")
        self.events.write(
            RelayEvent(
                type="jobAcknowledged",
                cluster_id=cluster_id,
                job_id=job_id,
                machine_id=machine_id,
                target_fn=claimed.target_fn,
            ),
        )
        return claimed

    def submit_result(  # noqa: PLR0913
        self,
        *,
        cluster_id: str,
        job_id: str,
        machine_id: str,
        result: Any,
        result_type: ResultType,
        function_execution_time_ms: int | None = None,
    ) -> bool:
        """Persist a machine's result; ``False`` means the claim no longer matched."""

        persisted = self.store.persist_result(
            cluster_id=cluster_id,
            job_id=job_id,
            machine_id=machine_id,
            result=pack(result),
            result_type=result_type,
            function_execution_time_ms=function_execution_time_ms,
        )
        if not persisted:
            logger.warning(
                "Job result was not persisted (cluster=%s job_id=%s machine_id=%s)",
                cluster_id,
                job_id,
                machine_id,
            )
            self.events.write(
                RelayEvent(
                    type="jobResultedButNotPersisted",
                    cluster_id=cluster_id,
                    job_id=job_id,
                    machine_id=machine_id,
                    result_type=result_type.value,
                ),
            )
            return False

        job = self.store.get(cluster_id=cluster_id, job_id=job_id)
        self.events.write(
            RelayEvent(
                type="jobResulted",
                cluster_id=cluster_id,
                job_id=job_id,
                run_id=job.run_id if job is not None else None,
                machine_id=machine_id,
                target_fn=job.target_fn if job is not None else None,
                result_type=result_type.value,
                meta={"functionExecutionTime": function_execution_time_ms},
            ),
        )
        if job is not None and job.run_id is not None and self.wake_run is not None:
            self.wake_run(cluster_id, job.run_id)
        return True

    def get_job_status_sync(
        self,
        *,
        cluster_id: str,
        job_id: str,
        ttl_seconds: float,
    ) -> JobView:
        """Wait until the job is terminal; raises ``JobPollTimeoutError`` after ``ttl_seconds``."""

        deadline = self._clock() + max(0.0, ttl_seconds)
        while True:
            job = self.store.get(cluster_id=cluster_id, job_id=job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found in cluster {cluster_id}.")
            if job.is_terminal:
                return job
            if self._clock() >= deadline:
                raise JobPollTimeoutError(
                    f"Job {job_id} did not complete within {ttl_seconds}s.",
                    job_id=job_id,
                )
            self._sleep(self.poll_interval_seconds)
