from __future__ import annotations

import queue
import threading
from datetime import timedelta

import allure

from agent_relay.jobs.models import JobInsert, JobStatus, ResultType
from agent_relay.jobs.store import CANCELLED_MESSAGE, JobStore
from agent_relay.storage.common import utc_now
from agent_relay.storage.database import RelayDatabase

pytestmark = [
    allure.epic("Jobs"),
    allure.feature("Job Store"),
]

CLUSTER = "default"


def _insert(
    store: JobStore,
    job_id: str,
    *,
    target_fn: str = "echo",
    remaining_attempts: int = 1,
    timeout: int | None = None,
    run_id: str | None = None,
) -> None:
    assert store.insert(
        JobInsert(
            cluster_id=CLUSTER,
            job_id=job_id,
            target_fn=target_fn,
            target_args='{"msg": "hi"}',
            remaining_attempts=remaining_attempts,
            timeout_interval_seconds=timeout,
            run_id=run_id,
        ),
    )


def test_insert_is_idempotent_on_id(database: RelayDatabase) -> None:
    store = JobStore(database.engine)
    _insert(store, "job-1")

    duplicate = store.insert(
        JobInsert(
            cluster_id=CLUSTER,
            job_id="job-1",
            target_fn="other",
            target_args="{}",
            remaining_attempts=5,
        ),
    )

    job = store.get(cluster_id=CLUSTER, job_id="job-1")
    assert duplicate is False
    assert job is not None
    assert job.target_fn == "echo"
    assert job.status is JobStatus.PENDING
    assert job.remaining_attempts == 1


def test_claim_batch_respects_tools_limit_and_order(database: RelayDatabase) -> None:
    store = JobStore(database.engine)
    for index in range(3):
        _insert(store, f"echo-{index}")
    _insert(store, "other-1", target_fn="other")

    first = store.claim_batch(cluster_id=CLUSTER, tools=["echo"], limit=2, machine_id="m1")
    second = store.claim_batch(cluster_id=CLUSTER, tools=["echo"], limit=5, machine_id="m2")
    third = store.claim_batch(cluster_id=CLUSTER, tools=["echo"], limit=5, machine_id="m3")

    assert [job.id for job in first] == ["echo-0", "echo-1"]
    assert [job.id for job in second] == ["echo-2"]
    assert third == []
    claimed = store.get(cluster_id=CLUSTER, job_id="echo-0")
    assert claimed is not None
    assert claimed.status is JobStatus.RUNNING
    assert claimed.executing_machine_id == "m1"
    assert claimed.remaining_attempts == 0
    assert claimed.last_retrieved_at is not None
    untouched = store.get(cluster_id=CLUSTER, job_id="other-1")
    assert untouched is not None
    assert untouched.status is JobStatus.PENDING


def test_concurrent_claimers_never_share_a_job(database: RelayDatabase) -> None:
    store = JobStore(database.engine)
    _insert(store, "contended")
    start_event = threading.Event()
    result_queue: queue.Queue[tuple[str, list[str]]] = queue.Queue()

    def _claim(machine_id: str) -> None:
        local_store = JobStore(database.engine)
        start_event.wait(timeout=5)
        claimed = local_store.claim_batch(
            cluster_id=CLUSTER,
            tools=["echo"],
            limit=10,
            machine_id=machine_id,
        )
        result_queue.put((machine_id, [job.id for job in claimed]))

    threads = [threading.Thread(target=_claim, args=(f"m{index}",)) for index in range(6)]
    for thread in threads:
        thread.start()
    start_event.set()
    for thread in threads:
        thread.join(timeout=10)

    results = [result_queue.get_nowait() for _ in threads]
    winners = [machine_id for machine_id, ids in results if ids]
    assert len(winners) == 1
    job = store.get(cluster_id=CLUSTER, job_id="contended")
    assert job is not None
    assert job.status is JobStatus.RUNNING
    assert job.executing_machine_id == winners[0]
    assert job.remaining_attempts == 0


def test_persist_result_requires_current_claimant(database: RelayDatabase) -> None:
    store = JobStore(database.engine)
    _insert(store, "job-1")
    store.claim_batch(cluster_id=CLUSTER, tools=["echo"], limit=1, machine_id="m1")

    wrong_machine = store.persist_result(
        cluster_id=CLUSTER,
        job_id="job-1",
        machine_id="m2",
        result='"late"',
        result_type=ResultType.RESOLUTION,
    )
    accepted = store.persist_result(
        cluster_id=CLUSTER,
        job_id="job-1",
        machine_id="m1",
        result='"ok"',
        result_type=ResultType.RESOLUTION,
        function_execution_time_ms=12,
    )
    repeated = store.persist_result(
        cluster_id=CLUSTER,
        job_id="job-1",
        machine_id="m1",
        result='"again"',
        result_type=ResultType.REJECTION,
    )

    job = store.get(cluster_id=CLUSTER, job_id="job-1")
    assert (wrong_machine, accepted, repeated) == (False, True, False)
    assert job is not None
    assert job.status is JobStatus.SUCCESS
    assert job.result == '"ok"'
    assert job.result_type is ResultType.RESOLUTION
    assert job.executing_machine_id is None
    assert job.function_execution_time_ms == 12


def test_stall_sweep_transitions(database: RelayDatabase) -> None:
    store = JobStore(database.engine)
    _insert(store, "retryable", remaining_attempts=2, timeout=1)
    _insert(store, "exhausted", remaining_attempts=1, timeout=1)
    _insert(store, "no-timeout", remaining_attempts=1)
    store.claim_batch(cluster_id=CLUSTER, tools=["echo"], limit=10, machine_id="m1")

    assert store.mark_stalled(now=utc_now()) == []

    later = utc_now() + timedelta(seconds=5)
    stalled = store.mark_stalled(now=later)
    failed = store.fail_exhausted(now=later)
    recovered = store.recover_stalled(now=later)

    assert sorted(job.id for job in stalled) == ["exhausted", "retryable"]
    assert [job.id for job in failed] == ["exhausted"]
    assert [job.id for job in recovered] == ["retryable"]
    retryable = store.get(cluster_id=CLUSTER, job_id="retryable")
    exhausted = store.get(cluster_id=CLUSTER, job_id="exhausted")
    no_timeout = store.get(cluster_id=CLUSTER, job_id="no-timeout")
    assert retryable is not None and retryable.status is JobStatus.PENDING
    assert retryable.remaining_attempts == 1
    assert retryable.executing_machine_id is None
    assert exhausted is not None and exhausted.status is JobStatus.FAILURE
    assert no_timeout is not None and no_timeout.status is JobStatus.RUNNING


def test_waiting_job_ids_cover_pending_running_and_undecided_approvals(
    database: RelayDatabase,
) -> None:
    store = JobStore(database.engine)
    _insert(store, "pending", run_id="run-1")
    _insert(store, "approval", target_fn="gated", run_id="run-1")
    _insert(store, "general", target_fn="paused", run_id="run-1")
    _insert(store, "elsewhere", run_id="run-2")
    store.claim_batch(cluster_id=CLUSTER, tools=["gated", "paused"], limit=5, machine_id="m1")
    store.interrupt(cluster_id=CLUSTER, job_id="approval", machine_id="m1", approval_requested=True)
    store.interrupt(cluster_id=CLUSTER, job_id="general", machine_id="m1", approval_requested=False)

    assert store.waiting_job_ids(cluster_id=CLUSTER, run_id="run-1") == ["pending", "approval"]


def test_cancel_only_touches_unfinished_jobs(database: RelayDatabase) -> None:
    store = JobStore(database.engine)
    _insert(store, "job-1")

    assert store.cancel(cluster_id=CLUSTER, job_id="job-1") is True
    assert store.cancel(cluster_id=CLUSTER, job_id="job-1") is False

    job = store.get(cluster_id=CLUSTER, job_id="job-1")
    assert job is not None
    assert job.status is JobStatus.SUCCESS
    assert job.result_type is ResultType.REJECTION
    assert CANCELLED_MESSAGE in (job.result or "")
