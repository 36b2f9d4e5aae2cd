"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from agent_relay.api import RelayApi
from agent_relay.auth import AuthContext, PrincipalKind
from agent_relay.config import EventSettings, JobSettings, RunSettings, Settings
from agent_relay.reasoning.scripted import ScriptedModel
from agent_relay.services import RelayServices
from agent_relay.storage.database import RelayDatabase

CLUSTER_ID = "default"


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings tuned for fast, deterministic tests."""

    return Settings(
        db_path=tmp_path / "relay.db",
        jobs=JobSettings(
            long_poll_timeout_seconds=2.0,
            long_poll_interval_seconds=0.01,
            schema_unavailable_retries=1,
            schema_unavailable_backoff_seconds=0.0,
            sync_result_ttl_seconds=0.2,
        ),
        runs=RunSettings(
            tool_result_wait_seconds=0.05,
            lock_backoff_base_seconds=2.0,
        ),
        events=EventSettings(flush_interval_seconds=0.05, write_backoff_seconds=0.0),
    )


@pytest.fixture()
def database(tmp_path: Path) -> Iterator[RelayDatabase]:
    database = RelayDatabase(tmp_path / "store.db")
    database.init_schema()
    try:
        yield database
    finally:
        database.close()


@pytest.fixture()
def model() -> ScriptedModel:
    return ScriptedModel()


@pytest.fixture()
def services(settings: Settings, model: ScriptedModel) -> Iterator[RelayServices]:
    services = RelayServices.build(settings, model=model)
    try:
        yield services
    finally:
        services.close()


@pytest.fixture()
def admin_api(services: RelayServices) -> RelayApi:
    return RelayApi(
        services,
        AuthContext(principal_id="admin", kind=PrincipalKind.ADMIN, cluster_id=CLUSTER_ID),
    )


@pytest.fixture()
def machine_api(services: RelayServices) -> RelayApi:
    return RelayApi(
        services,
        AuthContext(principal_id="machine-1", kind=PrincipalKind.MACHINE, cluster_id=CLUSTER_ID),
    )


@pytest.fixture()
def user_api(services: RelayServices) -> RelayApi:
    return RelayApi(
        services,
        AuthContext(principal_id="user-1", kind=PrincipalKind.USER, cluster_id=CLUSTER_ID),
    )
