from __future__ import annotations

from typing import Any

import allure

from agent_relay.api import RelayApi
from agent_relay.jobs.machine import Interrupt, JobContext, LocalMachine
from agent_relay.jobs.models import JobStatus, ResultType
from agent_relay.jobs.packer import unpack
from agent_relay.services import RelayServices
from agent_relay.tools.registry import ToolConfig

pytestmark = [
    allure.epic("Jobs"),
    allure.feature("Local Machine"),
]

CLUSTER = "default"


def _fail(_arguments: Any, _context: JobContext) -> Any:
    raise KeyError("missing-record")


def test_registration_makes_tool_visible(machine_api: RelayApi) -> None:
    machine = LocalMachine(api=machine_api, cluster_id=CLUSTER, machine_id="m1")

    machine.register(
        "lookup",
        lambda arguments, _context: arguments,
        description="Look a record up.",
        schema={"type": "object"},
        config=ToolConfig(timeout_seconds=30),
    )

    [tool] = machine_api.list_tools(cluster_id=CLUSTER)
    assert (tool.name, tool.description, tool.config.timeout_seconds) == (
        "lookup",
        "Look a record up.",
        30,
    )
    assert machine.tool_names == ["lookup"]


def test_exceptions_become_rejections(machine_api: RelayApi, services: RelayServices) -> None:
    machine = LocalMachine(api=machine_api, cluster_id=CLUSTER, machine_id="m1")
    machine.register("fail", _fail)
    machine_api.create_job(cluster_id=CLUSTER, target_fn="fail", arguments={}, job_id="job-1")

    summary = machine.run_once()

    assert (summary.polled, summary.rejected, summary.resolved) == (1, 1, 0)
    job = services.jobs.get(cluster_id=CLUSTER, job_id="job-1")
    assert job is not None
    assert job.status is JobStatus.SUCCESS
    assert job.result_type is ResultType.REJECTION
    assert unpack(job.result or "null") == {"error": "KeyError", "message": "'missing-record'"}
    assert job.function_execution_time_ms is not None


def test_context_carries_caller_identity(machine_api: RelayApi) -> None:
    seen: list[JobContext] = []

    def _whoami(_arguments: Any, context: JobContext) -> str:
        seen.append(context)
        return "ok"

    machine = LocalMachine(api=machine_api, cluster_id=CLUSTER, machine_id="m1")
    machine.register("whoami", _whoami)
    machine_api.create_job(cluster_id=CLUSTER, target_fn="whoami", arguments={}, job_id="job-1")

    machine.run_once()

    [context] = seen
    assert context.job_id == "job-1"
    assert context.approved is None
    assert context.auth_context is not None
    assert context.auth_context["principalId"] == "machine-1"


def test_general_interrupt_suspends_job(machine_api: RelayApi, services: RelayServices) -> None:
    def _wait_for_input(_arguments: Any, _context: JobContext) -> Any:
        raise Interrupt.general("waiting for upstream")

    machine = LocalMachine(api=machine_api, cluster_id=CLUSTER, machine_id="m1")
    machine.register("wait", _wait_for_input)
    machine_api.create_job(cluster_id=CLUSTER, target_fn="wait", arguments={}, job_id="job-1")

    summary = machine.run_once()

    assert summary.interrupted == 1
    job = services.jobs.get(cluster_id=CLUSTER, job_id="job-1")
    assert job is not None
    assert job.status is JobStatus.INTERRUPTED
    assert job.approval_requested is False


def test_run_loop_stops_after_max_polls(machine_api: RelayApi) -> None:
    machine = LocalMachine(api=machine_api, cluster_id=CLUSTER, machine_id="m1")
    machine.register("echo", lambda arguments, _context: arguments)
    for index in range(3):
        machine_api.create_job(
            cluster_id=CLUSTER,
            target_fn="echo",
            arguments={"n": index},
            job_id=f"job-{index}",
        )

    total = machine.run_loop(max_polls=2, wait_seconds=0.0)

    assert total.polled == 3
    assert total.resolved == 3


def test_machine_without_tools_does_not_poll(machine_api: RelayApi) -> None:
    machine = LocalMachine(api=machine_api, cluster_id=CLUSTER)

    assert machine.run_once().polled == 0
    assert machine.machine_id.startswith("machine-")
