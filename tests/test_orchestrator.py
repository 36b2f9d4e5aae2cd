from __future__ import annotations

from typing import Any

import allure
import pytest

from agent_relay.api import RelayApi
from agent_relay.errors import AgentError
from agent_relay.jobs.machine import Interrupt, JobContext, LocalMachine
from agent_relay.reasoning.base import ReasoningRequest
from agent_relay.reasoning.scripted import ScriptedModel
from agent_relay.runs.model_step import (
    INVALID_OUTPUT_MESSAGE,
    MISSING_INVOCATION_MESSAGE,
    ModelStep,
    build_output_schema,
    check_cycles,
)
from agent_relay.runs.models import MessageType, RunMessage, RunStatus, background_run_id
from agent_relay.runs.orchestrator import StepState, route_after_model, route_start
from agent_relay.services import RelayServices
from agent_relay.tools.registry import ToolDefinition

pytestmark = [
    allure.epic("Runs"),
    allure.feature("Run Orchestrator"),
]

CLUSTER = "default"


def _call(tool: str, **arguments: Any) -> dict[str, Any]:
    return {"done": False, "invocations": [{"toolName": tool, "input": arguments}]}


def _echo(arguments: dict[str, Any], _context: JobContext) -> dict[str, Any]:
    return {"echo": arguments["msg"]}


def _types(services: RelayServices, run_id: str) -> list[MessageType]:
    return [
        message.type for message in services.runs.list_messages(cluster_id=CLUSTER, run_id=run_id)
    ]


def _status(services: RelayServices, run_id: str) -> RunStatus:
    run = services.runs.get_run(cluster_id=CLUSTER, run_id=run_id)
    assert run is not None
    return run.status


def test_run_pauses_on_tool_call_and_finishes_after_result(
    admin_api: RelayApi,
    services: RelayServices,
    model: ScriptedModel,
) -> None:
    machine = LocalMachine(api=admin_api, cluster_id=CLUSTER, machine_id="m1")
    machine.register("echo", _echo, description="Echo the message back.")

    def _finish(request: ReasoningRequest) -> dict[str, Any]:
        last = request.messages[-1]
        assert last.type is MessageType.INVOCATION_RESULT
        return {"done": True, "result": next(iter(last.data["result"].values()))}

    model.add(_call("echo", msg="hi"))
    model.add(_finish)
    admin_api.create_run(cluster_id=CLUSTER, run_id="run-1", initial_message="Say hi")

    assert services.run_queue.run_pending() == 1
    assert _status(services, "run-1") is RunStatus.PAUSED
    details = admin_api.get_run(cluster_id=CLUSTER, run_id="run-1")
    assert len(details.waiting_job_ids) == 1

    summary = machine.run_once()
    assert summary.resolved == 1
    assert services.run_queue.run_pending() == 1

    details = admin_api.get_run(cluster_id=CLUSTER, run_id="run-1")
    assert details.run.status is RunStatus.DONE
    assert details.result == {"echo": "hi"}
    assert details.waiting_job_ids == []
    assert [message.type for message in details.messages] == [
        MessageType.HUMAN,
        MessageType.AGENT,
        MessageType.INVOCATION_RESULT,
        MessageType.AGENT,
    ]
    invocation_id = details.messages[1].data["invocations"][0]["id"]
    assert details.messages[2].data["id"] == invocation_id
    assert details.messages[2].data["resultType"] == "resolution"
    assert "echo" in model.requests[0].system_prompt
    assert model.remaining == 0


def test_follow_up_message_resumes_finished_run(
    admin_api: RelayApi,
    services: RelayServices,
    model: ScriptedModel,
) -> None:
    model.add({"done": True, "message": "first answer"})
    model.add({"done": True, "message": "second answer"})
    admin_api.create_run(cluster_id=CLUSTER, run_id="run-1", initial_message="Hello")
    services.run_queue.run_pending()

    admin_api.add_message(cluster_id=CLUSTER, run_id="run-1", message="And again?")
    services.run_queue.run_pending()

    assert _status(services, "run-1") is RunStatus.DONE
    assert _types(services, "run-1") == [
        MessageType.HUMAN,
        MessageType.AGENT,
        MessageType.HUMAN,
        MessageType.AGENT,
    ]
    assert len(model.requests[1].messages) == 3


def test_invalid_output_gets_a_correction_and_another_try(
    admin_api: RelayApi,
    services: RelayServices,
    model: ScriptedModel,
) -> None:
    model.add({"thoughts": "not the schema"})
    model.add({"done": False})
    model.add({"done": True, "message": "ok"})
    admin_api.create_run(cluster_id=CLUSTER, run_id="run-1", initial_message="Go")

    services.run_queue.run_pending()

    messages = services.runs.list_messages(cluster_id=CLUSTER, run_id="run-1")
    assert [message.type for message in messages] == [
        MessageType.HUMAN,
        MessageType.AGENT_INVALID,
        MessageType.SUPERVISOR,
        MessageType.AGENT_INVALID,
        MessageType.SUPERVISOR,
        MessageType.AGENT,
    ]
    assert messages[2].data == {"message": INVALID_OUTPUT_MESSAGE}
    assert messages[1].data["output"] == {"thoughts": "not the schema"}
    assert messages[1].data["details"]
    assert messages[4].data == {"message": MISSING_INVOCATION_MESSAGE}
    assert _status(services, "run-1") is RunStatus.DONE


def test_rejected_tool_input_is_reported_back_to_the_model(
    admin_api: RelayApi,
    services: RelayServices,
    model: ScriptedModel,
) -> None:
    admin_api.register_tool(
        cluster_id=CLUSTER,
        name="count",
        schema={
            "type": "object",
            "properties": {"n": {"type": "integer"}},
            "required": ["n"],
        },
    )
    model.add(_call("count", n="three"))
    model.add({"done": True, "message": "gave up"})
    admin_api.create_run(cluster_id=CLUSTER, run_id="run-1", initial_message="Count")

    services.run_queue.run_pending()

    messages = services.runs.list_messages(cluster_id=CLUSTER, run_id="run-1")
    rejection = messages[2]
    assert rejection.type is MessageType.INVOCATION_RESULT
    assert rejection.data["resultType"] == "rejection"
    payload = rejection.data["result"][rejection.data["id"]]
    assert payload["message"] == "Provided input did not match schema for count, check your input"
    assert services.jobs.list_jobs(cluster_id=CLUSTER) == []
    assert _status(services, "run-1") is RunStatus.DONE


def test_tool_call_to_unknown_tool_is_rejected(services: RelayServices, admin_api: RelayApi) -> None:
    admin_api.create_run(cluster_id=CLUSTER, run_id="run-1")
    run = services.runs.get_run(cluster_id=CLUSTER, run_id="run-1")
    assert run is not None
    agent = RunMessage(
        type=MessageType.AGENT,
        data={"done": False, "invocations": [{"id": "inv-1", "toolName": "ghost", "input": {}}]},
    )

    outcome = services.orchestrator.tool_step.run(
        run=run,
        messages=[agent],
        tools=[ToolDefinition(cluster_id=CLUSTER, name="echo")],
    )

    assert outcome.status is RunStatus.RUNNING
    assert outcome.waiting_job_ids == []
    [message] = outcome.messages
    assert message.data["result"]["inv-1"] == {
        "message": "Failed to find tool: ghost. Available tools are: echo.",
    }


def test_cycle_without_progress_fails_run(
    admin_api: RelayApi,
    services: RelayServices,
    model: ScriptedModel,
) -> None:
    for _ in range(10):
        model.add({"nonsense": True})
    admin_api.create_run(cluster_id=CLUSTER, run_id="run-1", initial_message="Loop")

    services.run_queue.run_pending()

    run = services.runs.get_run(cluster_id=CLUSTER, run_id="run-1")
    assert run is not None
    assert run.status is RunStatus.FAILED
    assert run.failure_reason == "Detected cycle in workflow."
    assert len(model.requests) == 5


def test_model_failure_fails_run_and_retry_recovers(
    admin_api: RelayApi,
    services: RelayServices,
    model: ScriptedModel,
) -> None:
    admin_api.create_run(cluster_id=CLUSTER, run_id="run-1", initial_message="Hi")

    services.run_queue.run_pending()
    failed = services.runs.get_run(cluster_id=CLUSTER, run_id="run-1")
    assert failed is not None
    assert failed.status is RunStatus.FAILED
    assert failed.failure_reason == "Scripted model has no more responses."

    model.add({"done": True, "message": "recovered"})
    retried = admin_api.retry_run(cluster_id=CLUSTER, run_id="run-1")
    assert retried.status is RunStatus.PENDING
    services.run_queue.run_pending()

    assert _status(services, "run-1") is RunStatus.DONE
    services.events.flush()
    statuses = [
        event.status
        for event in services.events.list_events(cluster_id=CLUSTER, run_id="run-1")
        if event.type == "runStatusChanged"
    ]
    assert statuses == ["failed", "done"]


def test_approval_interrupt_inside_run(
    admin_api: RelayApi,
    services: RelayServices,
    model: ScriptedModel,
) -> None:
    calls: list[bool | None] = []

    def _transfer(arguments: dict[str, Any], context: JobContext) -> str:
        calls.append(context.approved)
        if not context.approved:
            raise Interrupt.approval("Needs sign-off")
        return f"sent {arguments['amount']}"

    machine = LocalMachine(api=admin_api, cluster_id=CLUSTER, machine_id="m1")
    machine.register("transfer", _transfer)
    model.add(_call("transfer", amount=5))
    model.add({"done": True, "message": "transferred"})
    admin_api.create_run(cluster_id=CLUSTER, run_id="run-1", initial_message="Send 5")
    services.run_queue.run_pending()

    assert machine.run_once().interrupted == 1
    job_id = admin_api.get_run(cluster_id=CLUSTER, run_id="run-1").waiting_job_ids[0]
    assert admin_api.submit_approval(cluster_id=CLUSTER, job_id=job_id, approved=True)
    services.run_queue.run_pending()
    assert _status(services, "run-1") is RunStatus.PAUSED

    assert machine.run_once().resolved == 1
    services.run_queue.run_pending()

    assert calls == [None, True]
    details = admin_api.get_run(cluster_id=CLUSTER, run_id="run-1")
    assert details.run.status is RunStatus.DONE
    assert details.messages[2].data["result"][job_id] == "sent 5"


def test_background_run_is_never_processed(services: RelayServices) -> None:
    background = background_run_id(CLUSTER)

    assert services.orchestrator.process_run(CLUSTER, background) is None
    services.run_service.resume_run(cluster_id=CLUSTER, run_id=background)
    assert services.run_queue.pending_count() == 0


def test_attached_functions_limit_available_tools(
    admin_api: RelayApi,
    services: RelayServices,
) -> None:
    admin_api.register_tool(cluster_id=CLUSTER, name="echo")
    admin_api.register_tool(cluster_id=CLUSTER, name="shell")
    limited = admin_api.create_run(
        cluster_id=CLUSTER,
        run_id="limited",
        attached_functions=["echo"],
    ).run
    open_run = admin_api.create_run(cluster_id=CLUSTER, run_id="open").run

    assert [tool.name for tool in services.orchestrator.available_tools(limited)] == ["echo"]
    assert sorted(tool.name for tool in services.orchestrator.available_tools(open_run)) == [
        "echo",
        "shell",
    ]


def test_routing_between_steps() -> None:
    assert route_after_model(
        [RunMessage(type=MessageType.AGENT, data={"invocations": [{"id": "a"}]})],
        RunStatus.RUNNING,
    ) is StepState.TOOLS
    assert route_after_model([], RunStatus.DONE) is StepState.END
    assert route_start([], ["job-1"]) is StepState.END
    assert route_start([RunMessage(type=MessageType.HUMAN, data={})], []) is StepState.MODEL


def test_output_schema_lists_tools_and_custom_result() -> None:
    schema = build_output_schema(
        [ToolDefinition(cluster_id=CLUSTER, name="echo")],
        {"type": "object", "properties": {"answer": {"type": "string"}}},
    )

    assert schema["required"] == ["done"]
    assert schema["properties"]["invocations"]["items"]["properties"]["toolName"]["enum"] == [
        "echo",
    ]
    assert schema["properties"]["result"]["properties"] == {"answer": {"type": "string"}}
    assert "message" not in schema["properties"]
    assert "invocations" not in build_output_schema([])["properties"]


def test_history_limits_raise_agent_error() -> None:
    human = RunMessage(type=MessageType.HUMAN, data={"message": "hi"})
    supervisor = RunMessage(type=MessageType.SUPERVISOR, data={"message": "again"})

    check_cycles([human, *[supervisor] * 9], max_messages=100, window=10)
    with pytest.raises(AgentError, match="cycle"):
        check_cycles([human, *[supervisor] * 10], max_messages=100, window=10)
    with pytest.raises(AgentError, match="length"):
        check_cycles([human] * 5, max_messages=5, window=10)


def test_done_with_invocations_keeps_working(
    admin_api: RelayApi,
    services: RelayServices,
) -> None:
    admin_api.register_tool(cluster_id=CLUSTER, name="echo")
    run = admin_api.create_run(cluster_id=CLUSTER, run_id="run-1").run
    step = ModelStep(
        model=ScriptedModel(
            [
                {
                    "done": True,
                    "message": "all done",
                    "invocations": [{"toolName": "echo", "input": {"msg": "x"}}],
                },
            ],
        ),
    )

    outcome = step.run(
        run=run,
        messages=[RunMessage(type=MessageType.HUMAN, data={"message": "go"})],
        tools=services.orchestrator.available_tools(run),
    )

    assert outcome.status is RunStatus.RUNNING
    [agent] = outcome.messages
    assert agent.data["done"] is False
    assert agent.data["message"] is None
    assert agent.data["invocations"][0]["toolName"] == "echo"


def test_lost_lease_stops_processing_without_writing_history(
    admin_api: RelayApi,
    services: RelayServices,
    model: ScriptedModel,
) -> None:
    model.add({"done": True, "message": "never asked"})
    admin_api.create_run(cluster_id=CLUSTER, run_id="run-1", initial_message="Hi")
    renewals: list[bool] = []

    def _lost() -> bool:
        renewals.append(False)
        return False

    assert services.orchestrator.process_run(CLUSTER, "run-1", _lost) is None

    assert renewals == [False]
    assert model.requests == []
    assert _types(services, "run-1") == [MessageType.HUMAN]
    assert _status(services, "run-1") is not RunStatus.FAILED


def test_lease_is_renewed_before_every_step(
    admin_api: RelayApi,
    services: RelayServices,
    model: ScriptedModel,
) -> None:
    admin_api.register_tool(cluster_id=CLUSTER, name="echo")
    model.add(_call("echo", msg="hi"))
    admin_api.create_run(cluster_id=CLUSTER, run_id="run-1", initial_message="Hi")
    renewals: list[bool] = []

    def _held() -> bool:
        renewals.append(True)
        return True

    status = services.orchestrator.process_run(CLUSTER, "run-1", _held)

    assert status is RunStatus.PAUSED
    assert len(renewals) == 3
