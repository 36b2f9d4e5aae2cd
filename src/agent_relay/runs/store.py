"""Run rows and ordered message history."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from agent_relay.runs.models import (
    CreatedRun,
    MessageType,
    RunCreate,
    RunMessage,
    RunStatus,
    RunView,
    StatusChangeHandler,
)
from agent_relay.storage.common import (
    dump_json,
    load_json,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_relay.storage.sqlmodel_models import Run, RunMessageRow


class RunStore:
    """Run persistence facade backed by SQLModel + SQLite."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_run(self, payload: RunCreate) -> CreatedRun:
        """Insert a pending run; an existing id returns that run with ``created=False``."""

        now = to_db_datetime(utc_now())
        run_id = payload.run_id or str(uuid4())
        with Session(self.engine) as session:
            session.add(
                Run(
                    id=run_id,
                    cluster_id=payload.cluster_id,
                    name=payload.name,
                    status=RunStatus.PENDING.value,
                    attached_functions=dump_json(
                        list(payload.attached_functions)
                        if payload.attached_functions is not None
                        else None,
                    ),
                    result_schema=dump_json(payload.result_schema),
                    interactive=payload.interactive,
                    system_prompt=payload.system_prompt,
                    on_status_change=dump_json(
                        payload.on_status_change.to_dict()
                        if payload.on_status_change is not None
                        else None,
                    ),
                    tags=dump_json(payload.tags),
                    owner_id=payload.owner_id,
                    auth_context=dump_json(payload.auth_context),
                    context=dump_json(payload.context),
                    created_at=now,
                    updated_at=now,
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = self.get_run(cluster_id=payload.cluster_id, run_id=run_id)
                if existing is None:
                    raise
                return CreatedRun(run=existing, created=False)

        created = self.get_run(cluster_id=payload.cluster_id, run_id=run_id)
        if created is None:
            raise RuntimeError(f"Run disappeared right after creation: {run_id}")
        return CreatedRun(run=created, created=True)

    def get_run(self, *, cluster_id: str, run_id: str) -> RunView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Run).where(Run.cluster_id == cluster_id, Run.id == run_id),
            ).one_or_none()
        return _to_run_view(row) if row is not None else None

    def list_runs(self, *, cluster_id: str, limit: int = 50) -> list[RunView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Run)
                .where(Run.cluster_id == cluster_id)
                .order_by(col(Run.created_at).desc())
                .limit(max(1, limit)),
            ).all()
        return [_to_run_view(row) for row in rows]

    def update_status(
        self,
        *,
        cluster_id: str,
        run_id: str,
        status: RunStatus,
        failure_reason: str | None = None,
        expected: Sequence[RunStatus] | None = None,
    ) -> bool:
        """Set the run status, optionally only when it is currently one of ``expected``."""

        statement = sa_update(Run).where(
            col(Run.cluster_id) == cluster_id,
            col(Run.id) == run_id,
        )
        if expected is not None:
            statement = statement.where(col(Run.status).in_([item.value for item in expected]))
        values: dict[str, Any] = {
            "status": status.value,
            "updated_at": to_db_datetime(utc_now()),
        }
        if failure_reason is not None:
            values["failure_reason"] = failure_reason
        with Session(self.engine) as session:
            result = session.exec(statement.values(**values))
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def list_messages(self, *, cluster_id: str, run_id: str) -> list[RunMessage]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(RunMessageRow)
                .where(RunMessageRow.cluster_id == cluster_id, RunMessageRow.run_id == run_id)
                .order_by(col(RunMessageRow.seq).asc()),
            ).all()
        return [
            RunMessage(
                id=row.message_id,
                type=MessageType(row.type),
                data=load_json(row.data_json) or {},
                persisted=True,
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    def add_messages(
        self,
        *,
        cluster_id: str,
        run_id: str,
        messages: Sequence[RunMessage],
    ) -> None:
        """Append messages in order and mark them persisted."""

        if not messages:
            return
        now = utc_now()
        with Session(self.engine) as session:
            for message in messages:
                session.add(
                    RunMessageRow(
                        message_id=message.id,
                        cluster_id=cluster_id,
                        run_id=run_id,
                        type=message.type.value,
                        data_json=dump_json(message.data) or "{}",
                        created_at=to_db_datetime(message.created_at or now),
                    ),
                )
            session.commit()
        for message in messages:
            message.persisted = True
            message.created_at = message.created_at or now

    def last_agent_result(self, *, cluster_id: str, run_id: str) -> Any:
        with Session(self.engine) as session:
            row = session.exec(
                select(RunMessageRow)
                .where(
                    RunMessageRow.cluster_id == cluster_id,
                    RunMessageRow.run_id == run_id,
                    RunMessageRow.type == MessageType.AGENT.value,
                )
                .order_by(col(RunMessageRow.seq).desc())
                .limit(1),
            ).one_or_none()
        if row is None:
            return None
        return (load_json(row.data_json) or {}).get("result")


def _to_run_view(row: Run) -> RunView:
    attached = load_json(row.attached_functions)
    return RunView(
        cluster_id=row.cluster_id,
        id=row.id,
        name=row.name,
        status=RunStatus(row.status),
        failure_reason=row.failure_reason,
        attached_functions=tuple(attached) if attached is not None else None,
        result_schema=load_json(row.result_schema),
        interactive=row.interactive,
        system_prompt=row.system_prompt,
        on_status_change=StatusChangeHandler.from_dict(load_json(row.on_status_change)),
        tags=load_json(row.tags),
        owner_id=row.owner_id,
        auth_context=load_json(row.auth_context),
        context=load_json(row.context),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
