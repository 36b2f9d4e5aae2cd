"""Run step loop: reason, act, loop or stop."""

from __future__ import annotations

import logging
from enum import Enum

from agent_relay.errors import AgentError, NotFoundError, RunLeaseLostError
from agent_relay.events.sink import EventSink, RelayEvent
from agent_relay.jobs.store import JobStore
from agent_relay.runs.lock import LeaseRenewer
from agent_relay.runs.model_step import ModelStep
from agent_relay.runs.models import (
    MessageType,
    RunMessage,
    RunStatus,
    RunView,
    background_run_id,
)
from agent_relay.runs.notify import StatusChangeNotifier
from agent_relay.runs.store import RunStore
from agent_relay.runs.tool_calls import ToolCallStep, last_agent_message, outstanding_invocations
from agent_relay.tools.registry import ToolDefinition, ToolRegistry

logger = logging.getLogger(__name__)


class StepState(str, Enum):
    """Nodes of the run loop."""

    START = "start"
    MODEL = "model"
    TOOLS = "tools"
    END = "end"


_STOP_STATUSES = frozenset({RunStatus.DONE, RunStatus.PAUSED})


def route_start(messages: list[RunMessage], waiting_job_ids: list[str]) -> StepState:
    if waiting_job_ids:
        return StepState.END
    if messages and messages[-1].type is MessageType.AGENT:
        return StepState.TOOLS if messages[-1].has_invocations else StepState.END
    if outstanding_invocations(messages):
        return StepState.TOOLS
    return StepState.MODEL


def route_after_model(messages: list[RunMessage], status: RunStatus) -> StepState:
    if status in _STOP_STATUSES:
        return StepState.END
    last = messages[-1] if messages else None
    if last is not None and last.type is MessageType.AGENT:
        if last.has_invocations:
            return StepState.TOOLS
        logger.warning("Agent message without invocations while still running, stopping")
        return StepState.END
    return StepState.MODEL


def route_after_tools(status: RunStatus) -> StepState:
    if status in _STOP_STATUSES:
        return StepState.END
    return StepState.MODEL


def _check_lease(renew_lease: LeaseRenewer | None) -> None:
    if renew_lease is not None and not renew_lease():
        raise RunLeaseLostError("Run lock lease was lost.")


class RunOrchestrator:
    """Processes one run from its persisted history until it is done, paused or failed.

    Callers must hold the run lock; ``RunProcessQueue`` takes care of that.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        runs: RunStore,
        jobs: JobStore,
        registry: ToolRegistry,
        model_step: ModelStep,
        tool_step: ToolCallStep,
        notifier: StatusChangeNotifier | None = None,
        events: EventSink | None = None,
        max_steps: int = 100,
    ) -> None:
        self.runs = runs
        self.jobs = jobs
        self.registry = registry
        self.model_step = model_step
        self.tool_step = tool_step
        self.notifier = notifier
        self.events = events
        self.max_steps = max_steps

    def process_run(
        self,
        cluster_id: str,
        run_id: str,
        renew_lease: LeaseRenewer | None = None,
    ) -> RunStatus | None:
        """Advance the run; returns the persisted status.

        ``None`` is returned for the background run and when ``renew_lease``
        reports the run lock lost, in which case nothing more is written.
        """

        if run_id == background_run_id(cluster_id):
            return None
        run = self.runs.get_run(cluster_id=cluster_id, run_id=run_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found in cluster {cluster_id}.")

        previous = run.status
        self.runs.update_status(
            cluster_id=cluster_id,
            run_id=run_id,
            status=RunStatus.RUNNING,
            failure_reason="",
        )
        logger.info("Processing run (cluster=%s run_id=%s from=%s)", cluster_id, run_id, previous)
        try:
            status, messages = self._advance(run, renew_lease)
            _check_lease(renew_lease)
        except RunLeaseLostError:
            logger.warning(
                "Run lock lost while processing, stopping (cluster=%s run_id=%s)",
                cluster_id,
                run_id,
            )
            return None
        except Exception as error:
            logger.warning(
                "Run failed (cluster=%s run_id=%s): %s",
                cluster_id,
                run_id,
                error,
            )
            self.runs.update_status(
                cluster_id=cluster_id,
                run_id=run_id,
                status=RunStatus.FAILED,
                failure_reason=str(error) or type(error).__name__,
            )
            self._status_changed(run, previous, RunStatus.FAILED, result=None)
            raise

        self.runs.update_status(cluster_id=cluster_id, run_id=run_id, status=status)
        logger.info("Processed run (cluster=%s run_id=%s status=%s)", cluster_id, run_id, status)
        agent = last_agent_message(messages)
        self._status_changed(
            run,
            previous,
            status,
            result=agent.data.get("result") if agent is not None else None,
        )
        return status

    def available_tools(self, run: RunView) -> list[ToolDefinition]:
        """Registered tools the run may call; no allow-list means every cluster tool."""

        tools = self.registry.list_tools(cluster_id=run.cluster_id)
        if run.attached_functions is None:
            return tools
        allowed = set(run.attached_functions)
        return [tool for tool in tools if tool.name in allowed]

    def _advance(
        self,
        run: RunView,
        renew_lease: LeaseRenewer | None,
    ) -> tuple[RunStatus, list[RunMessage]]:
        messages = self.runs.list_messages(cluster_id=run.cluster_id, run_id=run.id)
        waiting = self.jobs.waiting_job_ids(cluster_id=run.cluster_id, run_id=run.id)
        tools = self.available_tools(run)

        state = route_start(messages, waiting)
        if state is StepState.END:
            return (RunStatus.PAUSED if waiting else RunStatus.DONE), messages

        status = RunStatus.RUNNING
        steps = 0
        while state is not StepState.END:
            steps += 1
            if steps > self.max_steps:
                raise AgentError("Maximum workflow steps exceeded.")
            _check_lease(renew_lease)
            if state is StepState.MODEL:
                outcome = self.model_step.run(run=run, messages=messages, tools=tools)
                self._append(run, messages, outcome.messages)
                status = outcome.status
                state = route_after_model(messages, status)
            else:
                tool_outcome = self.tool_step.run(run=run, messages=messages, tools=tools)
                self._append(run, messages, tool_outcome.messages)
                status = tool_outcome.status
                state = route_after_tools(status)
                if tool_outcome.waiting_job_ids:
                    logger.info(
                        "Run paused on %d job(s) (cluster=%s run_id=%s)",
                        len(tool_outcome.waiting_job_ids),
                        run.cluster_id,
                        run.id,
                    )

        if status is RunStatus.RUNNING:
            # Stopped on an agent message that neither finished nor called a tool.
            status = RunStatus.DONE
        return status, messages

    def _append(
        self,
        run: RunView,
        messages: list[RunMessage],
        new_messages: list[RunMessage],
    ) -> None:
        self.runs.add_messages(cluster_id=run.cluster_id, run_id=run.id, messages=new_messages)
        messages.extend(new_messages)

    def _status_changed(
        self,
        run: RunView,
        previous: RunStatus,
        status: RunStatus,
        *,
        result: object,
    ) -> None:
        if status is previous:
            return
        if self.events is not None:
            self.events.write(
                RelayEvent(
                    type="runStatusChanged",
                    cluster_id=run.cluster_id,
                    run_id=run.id,
                    status=status.value,
                    meta={"previous": previous.value},
                ),
            )
        if self.notifier is not None:
            self.notifier.notify(run, status, result)
