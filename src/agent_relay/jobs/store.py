"""Durable job lifecycle state mutated through conditional updates."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from agent_relay.jobs.models import (
    ClaimedJob,
    JobInsert,
    JobRef,
    JobStatus,
    JobView,
    ResultType,
)
from agent_relay.jobs.packer import pack
from agent_relay.storage.common import (
    dump_json,
    load_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_relay.storage.sqlmodel_models import Job

DENIED_MESSAGE = "This call was denied by the user."
CANCELLED_MESSAGE = "This call was cancelled by the user."

_SECONDS_PER_DAY = 86_400


class JobStore:
    """Job persistence facade backed by SQLModel + SQLite.

    Every mutation is one ``UPDATE ... WHERE <expected state>`` statement. A
    ``False`` return (or an empty list) means the row was not in the expected
    state; callers treat that as a lost race, not as an error.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def insert(self, job: JobInsert) -> bool:
        """Insert a pending job; returns ``False`` if the id already exists."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            session.add(
                Job(
                    id=job.job_id,
                    cluster_id=job.cluster_id,
                    target_fn=job.target_fn,
                    target_args=job.target_args,
                    status=JobStatus.PENDING.value,
                    cache_key=job.cache_key,
                    remaining_attempts=job.remaining_attempts,
                    timeout_interval_seconds=job.timeout_interval_seconds,
                    run_id=job.run_id,
                    auth_context=dump_json(job.auth_context),
                    run_context=dump_json(job.run_context),
                    created_at=now,
                    updated_at=now,
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True

    def get(self, *, cluster_id: str, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Job).where(Job.cluster_id == cluster_id, Job.id == job_id),
            ).one_or_none()
        return _to_job_view(row) if row is not None else None

    def has_pending(self, *, cluster_id: str, tools: Sequence[str]) -> bool:
        if not tools:
            return False
        with Session(self.engine) as session:
            found = session.exec(
                select(Job.id)
                .where(
                    Job.cluster_id == cluster_id,
                    Job.status == JobStatus.PENDING.value,
                    col(Job.target_fn).in_(list(tools)),
                )
                .limit(1),
            ).first()
        return found is not None

    def claim_batch(
        self,
        *,
        cluster_id: str,
        tools: Sequence[str],
        limit: int,
        machine_id: str,
    ) -> list[ClaimedJob]:
        """Atomically move up to ``limit`` pending jobs to running for ``machine_id``.

        Candidates are read first, then claimed by a single conditional UPDATE that
        re-checks ``status = 'pending'``; SQLite serializes writers, so a row another
        claimer took in between is simply not matched. When every candidate was
        lost to a concurrent claimer, the loop re-reads.
        """

        if not tools or limit < 1:
            return []

        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                candidate_ids = session.exec(
                    select(Job.id)
                    .where(
                        Job.cluster_id == cluster_id,
                        Job.status == JobStatus.PENDING.value,
                        col(Job.target_fn).in_(list(tools)),
                    )
                    .order_by(col(Job.created_at).asc())
                    .limit(limit),
                ).all()
                if not candidate_ids:
                    return []

                claimed_ids = (
                    session.exec(
                        sa_update(Job)
                        .where(
                            col(Job.cluster_id) == cluster_id,
                            col(Job.id).in_(list(candidate_ids)),
                            col(Job.status) == JobStatus.PENDING.value,
                        )
                        .values(
                            status=JobStatus.RUNNING.value,
                            executing_machine_id=machine_id,
                            remaining_attempts=col(Job.remaining_attempts) - 1,
                            last_retrieved_at=now,
                            updated_at=now,
                        )
                        .returning(col(Job.id))
                        .execution_options(synchronize_session=False),
                    )
                    .scalars()
                    .all()
                )
                if not claimed_ids:
                    session.rollback()
                    continue

                rows = session.exec(
                    select(Job)
                    .where(Job.cluster_id == cluster_id, col(Job.id).in_(list(claimed_ids)))
                    .order_by(col(Job.created_at).asc()),
                ).all()
                claimed = [_to_claimed_job(row) for row in rows]
                session.commit()
                return claimed

    def claim_one(self, *, cluster_id: str, job_id: str, machine_id: str) -> ClaimedJob | None:
        """Claim a specific pending job by id."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.cluster_id) == cluster_id,
                    col(Job.id) == job_id,
                    col(Job.status) == JobStatus.PENDING.value,
                )
                .values(
                    status=JobStatus.RUNNING.value,
                    executing_machine_id=machine_id,
                    remaining_attempts=col(Job.remaining_attempts) - 1,
                    last_retrieved_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            row = session.exec(
                select(Job).where(Job.cluster_id == cluster_id, Job.id == job_id),
            ).one()
            claimed = _to_claimed_job(row)
            session.commit()
            return claimed

    def persist_result(  # noqa: PLR0913
        self,
        *,
        cluster_id: str,
        job_id: str,
        machine_id: str,
        result: str,
        result_type: ResultType,
        function_execution_time_ms: int | None = None,
    ) -> bool:
        """Record the claimant's result; ``False`` means it arrived too late."""

        if result_type not in {ResultType.RESOLUTION, ResultType.REJECTION}:
            raise ValueError(f"Unsupported result type for persistence: {result_type}")

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result_proxy = session.exec(
                sa_update(Job)
                .where(
                    col(Job.cluster_id) == cluster_id,
                    col(Job.id) == job_id,
                    col(Job.executing_machine_id) == machine_id,
                    col(Job.status) == JobStatus.RUNNING.value,
                    col(Job.resulted_at).is_(None),
                )
                .values(
                    status=JobStatus.SUCCESS.value,
                    result=result,
                    result_type=result_type.value,
                    resulted_at=now,
                    function_execution_time_ms=function_execution_time_ms,
                    executing_machine_id=None,
                    updated_at=now,
                ),
            )
            if result_proxy.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def interrupt(
        self,
        *,
        cluster_id: str,
        job_id: str,
        machine_id: str,
        approval_requested: bool,
    ) -> bool:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.cluster_id) == cluster_id,
                    col(Job.id) == job_id,
                    col(Job.executing_machine_id) == machine_id,
                    col(Job.status) == JobStatus.RUNNING.value,
                )
                .values(
                    status=JobStatus.INTERRUPTED.value,
                    approval_requested=approval_requested,
                    executing_machine_id=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def mark_stalled(self, *, now: datetime | None = None) -> list[JobRef]:
        """Move running jobs whose claimant went silent past their timeout to stalled.

        Jobs with an undecided approval request are never touched.
        """

        current = to_db_datetime(now or utc_now())
        silence_seconds = (
            func.julianday(current) - func.julianday(col(Job.last_retrieved_at))
        ) * _SECONDS_PER_DAY
        return self._bulk_transition(
            where=(
                col(Job.status) == JobStatus.RUNNING.value,
                col(Job.timeout_interval_seconds).is_not(None),
                col(Job.last_retrieved_at).is_not(None),
                silence_seconds > col(Job.timeout_interval_seconds),
                or_(
                    col(Job.approval_requested).is_(False),
                    col(Job.approved).is_not(None),
                ),
            ),
            values={
                "status": JobStatus.STALLED.value,
                "executing_machine_id": None,
                "updated_at": current,
            },
        )

    def recover_stalled(self, *, now: datetime | None = None) -> list[JobRef]:
        """Re-queue stalled jobs that still have attempts left."""

        current = to_db_datetime(now or utc_now())
        return self._bulk_transition(
            where=(
                col(Job.status) == JobStatus.STALLED.value,
                col(Job.remaining_attempts) >= 1,
            ),
            values={
                "status": JobStatus.PENDING.value,
                "last_retrieved_at": None,
                "updated_at": current,
            },
        )

    def fail_exhausted(self, *, now: datetime | None = None) -> list[JobRef]:
        """Terminally fail stalled jobs with no attempts left."""

        current = to_db_datetime(now or utc_now())
        return self._bulk_transition(
            where=(
                col(Job.status) == JobStatus.STALLED.value,
                col(Job.remaining_attempts) < 1,
            ),
            values={
                "status": JobStatus.FAILURE.value,
                "updated_at": current,
            },
        )

    def recover_idle_interruptions(
        self,
        *,
        recover_after: timedelta,
        abandon_after: timedelta,
        now: datetime | None = None,
    ) -> list[JobRef]:
        """Re-queue interrupted jobs idle within the recovery window, once per job.

        Jobs waiting on an approval decision are excluded. The interrupted claim
        is refunded, as it is for an approval.
        """

        current = to_db_datetime(now or utc_now())
        return self._bulk_transition(
            where=(
                col(Job.status) == JobStatus.INTERRUPTED.value,
                col(Job.approval_requested).is_(False),
                col(Job.interrupt_recovered).is_(False),
                col(Job.updated_at) <= current - recover_after,
                col(Job.updated_at) > current - abandon_after,
            ),
            values={
                "status": JobStatus.PENDING.value,
                "interrupt_recovered": True,
                "executing_machine_id": None,
                "last_retrieved_at": None,
                "remaining_attempts": col(Job.remaining_attempts) + 1,
                "updated_at": current,
            },
        )

    def list_abandoned_interruptions(
        self,
        *,
        abandon_after: timedelta,
        now: datetime | None = None,
    ) -> list[str]:
        current = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            return list(
                session.exec(
                    select(Job.id).where(
                        Job.status == JobStatus.INTERRUPTED.value,
                        col(Job.updated_at) <= current - abandon_after,
                    ),
                ).all(),
            )

    def submit_approval(self, *, cluster_id: str, job_id: str, approved: bool) -> bool:
        """Record the approval decision once; later decisions are no-ops."""

        now = to_db_datetime(utc_now())
        values: dict[str, Any]
        if approved:
            values = {
                "approved": True,
                "status": JobStatus.PENDING.value,
                "executing_machine_id": None,
                "last_retrieved_at": None,
                "remaining_attempts": col(Job.remaining_attempts) + 1,
                "updated_at": now,
            }
        else:
            values = {
                "approved": False,
                "status": JobStatus.SUCCESS.value,
                "result": pack({"message": DENIED_MESSAGE}),
                "result_type": ResultType.REJECTION.value,
                "resulted_at": now,
                "executing_machine_id": None,
                "updated_at": now,
            }
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.cluster_id) == cluster_id,
                    col(Job.id) == job_id,
                    col(Job.approved).is_(None),
                    col(Job.approval_requested).is_(True),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def cancel(self, *, cluster_id: str, job_id: str) -> bool:
        """Terminate a non-terminal job with a cancellation rejection."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.cluster_id) == cluster_id,
                    col(Job.id) == job_id,
                    col(Job.status).in_(
                        [
                            JobStatus.PENDING.value,
                            JobStatus.RUNNING.value,
                            JobStatus.STALLED.value,
                            JobStatus.INTERRUPTED.value,
                        ],
                    ),
                )
                .values(
                    status=JobStatus.SUCCESS.value,
                    result=pack({"message": CANCELLED_MESSAGE}),
                    result_type=ResultType.REJECTION.value,
                    resulted_at=now,
                    executing_machine_id=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def find_cached(
        self,
        *,
        cluster_id: str,
        target_fn: str,
        cache_key: str,
        ttl_seconds: int,
    ) -> JobView | None:
        """Most recent resolved job for the cache key whose result is within the TTL."""

        cutoff = to_db_datetime(utc_now() - timedelta(seconds=ttl_seconds))
        with Session(self.engine) as session:
            row = session.exec(
                select(Job)
                .where(
                    Job.cluster_id == cluster_id,
                    Job.target_fn == target_fn,
                    Job.cache_key == cache_key,
                    Job.status == JobStatus.SUCCESS.value,
                    Job.result_type == ResultType.RESOLUTION.value,
                    col(Job.resulted_at) >= cutoff,
                )
                .order_by(col(Job.resulted_at).desc())
                .limit(1),
            ).one_or_none()
        return _to_job_view(row) if row is not None else None

    def waiting_job_ids(self, *, cluster_id: str, run_id: str) -> list[str]:
        """Jobs a run must wait on: pending/running or interrupted awaiting approval."""

        with Session(self.engine) as session:
            return list(
                session.exec(
                    select(Job.id)
                    .where(
                        Job.cluster_id == cluster_id,
                        Job.run_id == run_id,
                        or_(
                            col(Job.status).in_(
                                [JobStatus.PENDING.value, JobStatus.RUNNING.value],
                            ),
                            and_(
                                col(Job.status) == JobStatus.INTERRUPTED.value,
                                col(Job.approval_requested).is_(True),
                                col(Job.approved).is_(None),
                            ),
                        ),
                    )
                    .order_by(col(Job.created_at).asc()),
                ).all(),
            )

    def list_for_run(self, *, cluster_id: str, run_id: str) -> list[JobView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(Job.cluster_id == cluster_id, Job.run_id == run_id)
                .order_by(col(Job.created_at).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def list_jobs(
        self,
        *,
        cluster_id: str,
        status: JobStatus | None = None,
        target_fn: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        with Session(self.engine) as session:
            statement = select(Job).where(Job.cluster_id == cluster_id)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            if target_fn is not None:
                statement = statement.where(Job.target_fn == target_fn)
            rows = session.exec(
                statement.order_by(col(Job.created_at).desc()).limit(max(1, limit)),
            ).all()
        return [_to_job_view(row) for row in rows]

    def latest_resulted(self, *, cluster_id: str, target_fn: str, limit: int = 10) -> list[JobView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(
                    Job.cluster_id == cluster_id,
                    Job.target_fn == target_fn,
                    col(Job.resulted_at).is_not(None),
                )
                .order_by(col(Job.resulted_at).desc())
                .limit(max(1, limit)),
            ).all()
        return [_to_job_view(row) for row in rows]

    def _bulk_transition(self, *, where: tuple[Any, ...], values: dict[str, Any]) -> list[JobRef]:
        with Session(self.engine) as session:
            rows = session.exec(
                sa_update(Job)
                .where(*where)
                .values(**values)
                .returning(
                    col(Job.cluster_id),
                    col(Job.id),
                    col(Job.target_fn),
                    col(Job.run_id),
                    col(Job.remaining_attempts),
                )
                .execution_options(synchronize_session=False),
            ).all()
            session.commit()
        return [
            JobRef(
                cluster_id=row[0],
                id=row[1],
                target_fn=row[2],
                run_id=row[3],
                remaining_attempts=row[4],
            )
            for row in rows
        ]


def _to_claimed_job(row: Job) -> ClaimedJob:
    return ClaimedJob(
        id=row.id,
        target_fn=row.target_fn,
        target_args=row.target_args,
        auth_context=load_json(row.auth_context),
        run_context=load_json(row.run_context),
        approved=row.approved,
    )


def _to_job_view(row: Job) -> JobView:
    return JobView(
        cluster_id=row.cluster_id,
        id=row.id,
        target_fn=row.target_fn,
        target_args=row.target_args,
        status=JobStatus(row.status),
        cache_key=row.cache_key,
        remaining_attempts=row.remaining_attempts,
        timeout_interval_seconds=row.timeout_interval_seconds,
        executing_machine_id=row.executing_machine_id,
        last_retrieved_at=optional_utc(row.last_retrieved_at),
        approval_requested=row.approval_requested,
        approved=row.approved,
        result=row.result,
        result_type=ResultType(row.result_type) if row.result_type is not None else None,
        resulted_at=optional_utc(row.resulted_at),
        function_execution_time_ms=row.function_execution_time_ms,
        run_id=row.run_id,
        auth_context=load_json(row.auth_context),
        run_context=load_json(row.run_context),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
