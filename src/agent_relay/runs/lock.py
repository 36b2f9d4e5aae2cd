"""Lease-row mutex serializing processing of a single run."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import timedelta
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from agent_relay.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from agent_relay.storage.sqlmodel_models import RunLock

logger = logging.getLogger(__name__)

DEFAULT_LOCK_STALE_AFTER = timedelta(minutes=15)

LeaseRenewer = Callable[[], bool]
"""Refreshes the current holder's lease; returns ``False`` once it is lost."""


class RunLockManager:
    """At most one holder per ``(cluster_id, run_id)``.

    Holders renew their lease while they work. A lease not renewed within
    ``stale_after`` is assumed to belong to a crashed processor and is taken
    over.
    """

    def __init__(self, engine: Engine, *, stale_after: timedelta = DEFAULT_LOCK_STALE_AFTER) -> None:
        if stale_after.total_seconds() <= 0:
            raise ValueError("stale_after must be > 0")
        self.engine = engine
        self.stale_after = stale_after

    def acquire(self, *, cluster_id: str, run_id: str) -> str | None:
        """Return a holder token, or ``None`` when another holder has the lease."""

        while True:
            token = uuid4().hex
            with Session(self.engine) as session:
                session.add(
                    RunLock(
                        cluster_id=cluster_id,
                        run_id=run_id,
                        holder=token,
                        acquired_at=to_db_datetime(utc_now()),
                    ),
                )
                try:
                    session.commit()
                    return token
                except IntegrityError:
                    session.rollback()
                    active = session.exec(
                        select(RunLock).where(
                            RunLock.cluster_id == cluster_id,
                            RunLock.run_id == run_id,
                        ),
                    ).one_or_none()
                    if active is None:
                        continue
                    acquired_at = to_utc_aware_datetime(active.acquired_at)
                    if utc_now() - acquired_at <= self.stale_after:
                        return None

                    result = session.exec(
                        sa_delete(RunLock).where(
                            col(RunLock.cluster_id) == cluster_id,
                            col(RunLock.run_id) == run_id,
                            col(RunLock.holder) == active.holder,
                        ),
                    )
                    session.commit()
                    if result.rowcount == 1:
                        logger.warning(
                            "Took over stale run lock (cluster=%s run_id=%s acquired_at=%s)",
                            cluster_id,
                            run_id,
                            acquired_at.isoformat(),
                        )

    def renew(self, *, cluster_id: str, run_id: str, token: str) -> bool:
        """Refresh the lease; ``False`` means the holder lost it."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(RunLock)
                .where(
                    col(RunLock.cluster_id) == cluster_id,
                    col(RunLock.run_id) == run_id,
                    col(RunLock.holder) == token,
                )
                .values(acquired_at=to_db_datetime(utc_now())),
            )
            session.commit()
        if result.rowcount != 1:
            logger.warning(
                "Run lock lease was lost (cluster=%s run_id=%s)",
                cluster_id,
                run_id,
            )
            return False
        return True

    def release(self, *, cluster_id: str, run_id: str, token: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(RunLock).where(
                    col(RunLock.cluster_id) == cluster_id,
                    col(RunLock.run_id) == run_id,
                    col(RunLock.holder) == token,
                ),
            )
            session.commit()
        if result.rowcount != 1:
            logger.warning(
                "Run lock was not held at release (cluster=%s run_id=%s)",
                cluster_id,
                run_id,
            )
            return False
        return True

    def is_locked(self, *, cluster_id: str, run_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(RunLock.holder).where(
                    RunLock.cluster_id == cluster_id,
                    RunLock.run_id == run_id,
                ),
            ).first()
        return row is not None
