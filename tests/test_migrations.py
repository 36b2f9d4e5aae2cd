from pathlib import Path

import allure
from sqlalchemy import text

from agent_relay.storage.database import RelayDatabase

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Persistence"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    database = RelayDatabase(tmp_path / "migrations.db")
    database.init_schema()
    database.init_schema()

    with database.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table' AND name != 'alembic_version'
                ORDER BY name
                """,
            ),
        ).scalars().all()
        cluster = connection.execute(
            text("SELECT cluster_id FROM clusters WHERE cluster_id = 'default'"),
        ).scalar()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar()
    database.close()

    assert version == "20261017_0002"
    assert list(tables) == [
        "clusters",
        "events",
        "jobs",
        "run_locks",
        "run_messages",
        "runs",
        "tool_definitions",
    ]
    assert cluster == "default"
    assert str(journal_mode).lower() == "wal"


def test_ensure_cluster_is_idempotent(tmp_path: Path) -> None:
    database = RelayDatabase(tmp_path / "clusters.db")
    database.init_schema()

    database.ensure_cluster("acme", name="Acme")
    database.ensure_cluster("acme", name="Other name")

    with database.engine.connect() as connection:
        rows = connection.execute(
            text("SELECT name FROM clusters WHERE cluster_id = 'acme'"),
        ).scalars().all()
    database.close()

    assert list(rows) == ["Acme"]
