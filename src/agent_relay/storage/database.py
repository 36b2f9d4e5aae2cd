"""Shared SQLite database handle for relay stores."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import NullPool
from sqlmodel import Session, create_engine, select

from agent_relay.storage.common import to_db_datetime, utc_now
from agent_relay.storage.sqlmodel_models import DEFAULT_CLUSTER_ID, Cluster

logger = logging.getLogger(__name__)

# Repository root holding alembic.ini and the alembic/ scripts.
_PROJECT_ROOT = Path(__file__).resolve().parents[3]


class RelayDatabase:
    """Owns the engine every store shares and the schema lifecycle.

    Connections run in WAL mode with a busy timeout so that machines polling,
    run workers and the sweep can write concurrently.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.busy_timeout_ms = max(1, busy_timeout_ms)
        self.engine = self._create_engine()

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Migrate to the latest schema revision and ensure the default cluster exists."""

        command.upgrade(self._alembic_config(), "head")
        self.ensure_cluster(DEFAULT_CLUSTER_ID, name="Default cluster")

    def ensure_cluster(self, cluster_id: str, *, name: str | None = None) -> None:
        with Session(self.engine) as session:
            existing = session.exec(
                select(Cluster).where(Cluster.cluster_id == cluster_id),
            ).one_or_none()
            if existing is not None:
                return
            session.add(
                Cluster(
                    cluster_id=cluster_id,
                    name=name or cluster_id,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.debug("Cluster %s was created concurrently", cluster_id)

    def _create_engine(self) -> Engine:
        engine = create_engine(
            f"sqlite:///{self.db_path}",
            connect_args={
                "check_same_thread": False,
                "timeout": max(1.0, self.busy_timeout_ms / 1000.0),
            },
            poolclass=NullPool,
        )
        event.listen(engine, "connect", self._on_connect)
        return engine

    def _on_connect(self, dbapi_connection: sqlite3.Connection, _record: object) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
        cursor.execute("PRAGMA journal_mode = WAL")
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.close()

    def _alembic_config(self) -> Config:
        config = Config(str(_PROJECT_ROOT / "alembic.ini"))
        config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
        config.set_main_option("sqlalchemy.url", f"sqlite:///{self.db_path}")
        return config
