"""Tool step: turn the latest agent invocations into jobs and collect their results."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from agent_relay.errors import InvalidJobArgumentsError, JobPollTimeoutError, NotFoundError
from agent_relay.jobs.creation import JobCreationService
from agent_relay.jobs.dispatch import DispatchProtocol
from agent_relay.jobs.models import CreateJobRequest, JobStatus, JobView, ResultType
from agent_relay.jobs.packer import unpack
from agent_relay.runs.models import MessageType, RunMessage, RunStatus, RunView
from agent_relay.tools.registry import ToolDefinition

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolStepOutcome:
    messages: list[RunMessage]
    status: RunStatus
    waiting_job_ids: list[str] = field(default_factory=list)


def last_agent_message(messages: Sequence[RunMessage]) -> RunMessage | None:
    for message in reversed(messages):
        if message.type is MessageType.AGENT:
            return message
    return None


def resolved_invocation_ids(messages: Sequence[RunMessage]) -> set[str]:
    return {
        str(message.data.get("id"))
        for message in messages
        if message.type is MessageType.INVOCATION_RESULT
    }


def outstanding_invocations(messages: Sequence[RunMessage]) -> list[dict[str, Any]]:
    """Invocations of the latest agent message without a recorded result."""

    agent = last_agent_message(messages)
    if agent is None:
        return []
    resolved = resolved_invocation_ids(messages)
    return [invocation for invocation in agent.invocations if invocation["id"] not in resolved]


class ToolCallStep:
    """Issues each outstanding invocation as a job and waits briefly for it.

    Jobs that do not finish within ``wait_seconds`` leave the run paused; their
    result wakes the run later and the invocation is picked up again, at which
    point job creation is a no-op because the invocation id is the job id.
    """

    def __init__(
        self,
        *,
        creation: JobCreationService,
        dispatch: DispatchProtocol,
        wait_seconds: float = 0.5,
    ) -> None:
        self.creation = creation
        self.dispatch = dispatch
        self.wait_seconds = wait_seconds

    def run(
        self,
        *,
        run: RunView,
        messages: Sequence[RunMessage],
        tools: Sequence[ToolDefinition],
    ) -> ToolStepOutcome:
        available = {tool.name for tool in tools}
        results: list[RunMessage] = []
        issued: list[tuple[dict[str, Any], str]] = []

        for invocation in outstanding_invocations(messages):
            tool_name = str(invocation.get("toolName"))
            if tool_name not in available:
                results.append(
                    _rejection(
                        invocation,
                        f"Failed to find tool: {tool_name}. "
                        f"Available tools are: {', '.join(sorted(available)) or 'none'}.",
                    ),
                )
                continue
            try:
                created = self.creation.create_job(
                    CreateJobRequest(
                        cluster_id=run.cluster_id,
                        target_fn=tool_name,
                        target_args=invocation.get("input") or {},
                        run_id=run.id,
                        job_id=str(invocation["id"]),
                        auth_context=run.auth_context,
                        run_context=run.context,
                    ),
                )
            except InvalidJobArgumentsError as error:
                logger.info("Invalid input for %s (run_id=%s): %s", tool_name, run.id, error)
                results.append(
                    _rejection(
                        invocation,
                        f"Provided input did not match schema for {tool_name}, check your input",
                        details=str(error),
                    ),
                )
                continue
            except NotFoundError:
                results.append(_rejection(invocation, f"Failed to find tool: {tool_name}."))
                continue
            except Exception:
                logger.exception("Failed to invoke %s (run_id=%s)", tool_name, run.id)
                results.append(_rejection(invocation, f"Failed to invoke {tool_name}"))
                continue
            issued.append((invocation, created.id))

        waiting: list[str] = []
        for invocation, job_id in issued:
            try:
                job = self.dispatch.get_job_status_sync(
                    cluster_id=run.cluster_id,
                    job_id=job_id,
                    ttl_seconds=self.wait_seconds,
                )
            except JobPollTimeoutError:
                waiting.append(job_id)
                continue
            results.append(_result_message(invocation, job))

        return ToolStepOutcome(
            messages=results,
            status=RunStatus.PAUSED if waiting else RunStatus.RUNNING,
            waiting_job_ids=waiting,
        )


def _result_message(invocation: dict[str, Any], job: JobView) -> RunMessage:
    tool_name = str(invocation.get("toolName"))
    if job.status is JobStatus.FAILURE or job.result_type is None:
        return _rejection(
            invocation,
            f"Tool {tool_name} did not complete: the machine stopped responding too many times.",
        )
    try:
        payload = unpack(job.result) if job.result is not None else None
    except InvalidJobArgumentsError:
        payload = job.result
    return RunMessage(
        type=MessageType.INVOCATION_RESULT,
        data={
            "id": invocation["id"],
            "toolName": tool_name,
            "resultType": job.result_type.value,
            "result": {str(invocation["id"]): payload},
        },
    )


def _rejection(
    invocation: dict[str, Any],
    message: str,
    *,
    details: str | None = None,
) -> RunMessage:
    payload: dict[str, Any] = {"message": message}
    if details is not None:
        payload["details"] = details
    return RunMessage(
        type=MessageType.INVOCATION_RESULT,
        data={
            "id": invocation["id"],
            "toolName": str(invocation.get("toolName")),
            "resultType": ResultType.REJECTION.value,
            "result": {str(invocation["id"]): payload},
        },
    )
