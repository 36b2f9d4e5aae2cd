from __future__ import annotations

import allure
import pytest

from agent_relay.api import RelayApi
from agent_relay.auth import AuthContext, PrincipalKind
from agent_relay.errors import (
    AuthenticationError,
    BadRequestError,
    NotFoundError,
    RunBusyError,
)
from agent_relay.reasoning.scripted import ScriptedModel
from agent_relay.runs.models import MessageType, RunMessage, RunStatus, background_run_id
from agent_relay.services import RelayServices

pytestmark = [
    allure.epic("Runs"),
    allure.feature("Run Lifecycle"),
]

CLUSTER = "default"


def test_create_run_is_idempotent_and_seeds_once(
    admin_api: RelayApi,
    services: RelayServices,
) -> None:
    first = admin_api.create_run(
        cluster_id=CLUSTER,
        run_id="run-1",
        name="Greeting",
        initial_message="Hello",
        tags={"team": "ops"},
    )
    second = admin_api.create_run(cluster_id=CLUSTER, run_id="run-1", initial_message="Hello")

    assert first.created is True
    assert second.created is False
    assert first.run.status is RunStatus.PENDING
    assert first.run.tags == {"team": "ops"}
    messages = services.runs.list_messages(cluster_id=CLUSTER, run_id="run-1")
    assert [message.data for message in messages] == [{"message": "Hello"}]
    assert services.run_queue.pending_count() == 1


def test_background_run_exists_and_is_not_interactive(services: RelayServices) -> None:
    run = services.runs.get_run(cluster_id=CLUSTER, run_id=background_run_id(CLUSTER))

    assert run is not None
    assert run.interactive is False
    with pytest.raises(BadRequestError, match="not interactive"):
        services.run_service.assert_run_ready(
            cluster_id=CLUSTER,
            run_id=background_run_id(CLUSTER),
        )


def test_message_to_missing_run_is_not_found(admin_api: RelayApi) -> None:
    with pytest.raises(NotFoundError):
        admin_api.add_message(cluster_id=CLUSTER, run_id="nope", message="hi")


def test_message_to_busy_run_is_rejected(admin_api: RelayApi, services: RelayServices) -> None:
    admin_api.create_run(cluster_id=CLUSTER, run_id="run-1")
    services.runs.update_status(cluster_id=CLUSTER, run_id="run-1", status=RunStatus.RUNNING)

    with pytest.raises(RunBusyError, match="running"):
        admin_api.add_message(cluster_id=CLUSTER, run_id="run-1", message="hi")
    assert services.runs.list_messages(cluster_id=CLUSTER, run_id="run-1") == []


def test_outstanding_tool_calls_block_messages_and_resume_run(
    admin_api: RelayApi,
    services: RelayServices,
) -> None:
    admin_api.create_run(cluster_id=CLUSTER, run_id="run-1")
    services.runs.add_messages(
        cluster_id=CLUSTER,
        run_id="run-1",
        messages=[
            RunMessage(
                type=MessageType.AGENT,
                data={
                    "done": False,
                    "invocations": [{"id": "inv-1", "toolName": "echo", "input": {}}],
                },
            ),
        ],
    )

    with pytest.raises(RunBusyError, match="unprocessed tool calls"):
        admin_api.add_message(cluster_id=CLUSTER, run_id="run-1", message="hi")
    assert services.run_queue.pending_count() == 1


def test_only_failed_runs_can_be_retried(
    admin_api: RelayApi,
    services: RelayServices,
    model: ScriptedModel,
) -> None:
    model.add({"done": True, "message": "fine"})
    admin_api.create_run(cluster_id=CLUSTER, run_id="run-1", initial_message="Hi")
    services.run_queue.run_pending()

    with pytest.raises(BadRequestError, match="only failed runs retry"):
        admin_api.retry_run(cluster_id=CLUSTER, run_id="run-1")


def test_users_only_see_their_own_runs(
    user_api: RelayApi,
    admin_api: RelayApi,
) -> None:
    mine = user_api.create_run(cluster_id=CLUSTER, run_id="mine").run
    admin_api.create_run(cluster_id=CLUSTER, run_id="shared")
    other = RelayApi(
        user_api.services,
        AuthContext(principal_id="user-2", kind=PrincipalKind.USER, cluster_id=CLUSTER),
    )

    assert mine.owner_id == "user-1"
    assert "mine" in {run.id for run in user_api.list_runs(cluster_id=CLUSTER)}
    assert "mine" not in {run.id for run in other.list_runs(cluster_id=CLUSTER)}
    assert "shared" in {run.id for run in other.list_runs(cluster_id=CLUSTER)}
    with pytest.raises(AuthenticationError):
        other.get_run(cluster_id=CLUSTER, run_id="mine")


def test_machines_cannot_create_runs(machine_api: RelayApi) -> None:
    with pytest.raises(AuthenticationError):
        machine_api.create_run(cluster_id=CLUSTER, run_id="run-1")
