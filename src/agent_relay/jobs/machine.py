"""In-process reference machine executing registered Python callables."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from agent_relay.api import APPROVAL_INTERRUPT, RESULT_ACCEPTED, RelayApi
from agent_relay.jobs.models import ClaimedJob, ResultType
from agent_relay.jobs.packer import unpack
from agent_relay.tools.registry import ToolConfig

logger = logging.getLogger(__name__)


class Interrupt(Exception):  # noqa: N818
    """Raised by a tool function to suspend its job instead of returning a result."""

    def __init__(self, interrupt_type: str, message: str | None = None) -> None:
        super().__init__(message or interrupt_type)
        self.interrupt_type = interrupt_type
        self.message = message

    @classmethod
    def approval(cls, message: str | None = None) -> Interrupt:
        return cls(APPROVAL_INTERRUPT, message)

    @classmethod
    def general(cls, message: str | None = None) -> Interrupt:
        return cls("general", message)

    def to_result(self) -> dict[str, Any]:
        return {"type": self.interrupt_type, "message": self.message}


@dataclass(slots=True)
class JobContext:
    """What a tool function knows about the call besides its arguments."""

    job_id: str
    approved: bool | None
    auth_context: dict[str, Any] | None
    run_context: dict[str, Any] | None


ToolFunction = Callable[[Any, JobContext], Any]


@dataclass(slots=True)
class MachineSummary:
    polled: int = 0
    resolved: int = 0
    rejected: int = 0
    interrupted: int = 0
    conflicts: int = 0


class LocalMachine:
    """Polls for its registered tools and reports results.

    Any exception a tool raises becomes a ``rejection`` result; ``Interrupt``
    suspends the job and, for approvals, the function is called again with
    ``context.approved`` set once a decision was made.
    """

    def __init__(
        self,
        *,
        api: RelayApi,
        cluster_id: str,
        machine_id: str | None = None,
        poll_limit: int = 10,
    ) -> None:
        self.api = api
        self.cluster_id = cluster_id
        self.machine_id = machine_id or f"machine-{uuid4().hex[:8]}"
        self.poll_limit = poll_limit
        self._functions: dict[str, ToolFunction] = {}

    @property
    def tool_names(self) -> list[str]:
        return sorted(self._functions)

    def register(  # noqa: PLR0913
        self,
        name: str,
        function: ToolFunction,
        *,
        description: str = "",
        schema: dict[str, Any] | None = None,
        config: ToolConfig | None = None,
    ) -> None:
        self.api.register_tool(
            cluster_id=self.cluster_id,
            name=name,
            description=description,
            schema=schema,
            config=config,
        )
        self._functions[name] = function

    def run_once(self, *, wait_seconds: float = 0.0) -> MachineSummary:
        summary = MachineSummary()
        if not self._functions:
            return summary
        jobs = self.api.poll_jobs(
            cluster_id=self.cluster_id,
            machine_id=self.machine_id,
            tools=self.tool_names,
            limit=self.poll_limit,
            wait_seconds=wait_seconds,
        )
        summary.polled = len(jobs)
        for job in jobs:
            self._execute(job, summary)
        return summary

    def run_loop(
        self,
        *,
        max_polls: int | None = None,
        wait_seconds: float = 5.0,
        should_stop: Callable[[], bool] | None = None,
    ) -> MachineSummary:
        total = MachineSummary()
        polls = 0
        while max_polls is None or polls < max_polls:
            if should_stop is not None and should_stop():
                break
            summary = self.run_once(wait_seconds=wait_seconds)
            polls += 1
            total.polled += summary.polled
            total.resolved += summary.resolved
            total.rejected += summary.rejected
            total.interrupted += summary.interrupted
            total.conflicts += summary.conflicts
        return total

    def _execute(self, job: ClaimedJob, summary: MachineSummary) -> None:
        function = self._functions[job.target_fn]
        context = JobContext(
            job_id=job.id,
            approved=job.approved,
            auth_context=job.auth_context,
            run_context=job.run_context,
        )
        started = time.monotonic()
        result: Any
        try:
            result = function(unpack(job.target_args), context)
            result_type = ResultType.RESOLUTION
        except Interrupt as interrupt:
            result = interrupt.to_result()
            result_type = ResultType.INTERRUPT
        except Exception as error:  # noqa: BLE001
            logger.info("Tool %s raised for job %s: %s", job.target_fn, job.id, error)
            result = {"error": type(error).__name__, "message": str(error)}
            result_type = ResultType.REJECTION
        elapsed_ms = int((time.monotonic() - started) * 1000)

        status = self.api.submit_job_result(
            cluster_id=self.cluster_id,
            job_id=job.id,
            machine_id=self.machine_id,
            result=result,
            result_type=result_type,
            function_execution_time_ms=elapsed_ms,
        )
        if status != RESULT_ACCEPTED:
            summary.conflicts += 1
            logger.warning(
                "Result for job %s was not accepted (machine=%s status=%d)",
                job.id,
                self.machine_id,
                status,
            )
            return
        if result_type is ResultType.RESOLUTION:
            summary.resolved += 1
        elif result_type is ResultType.REJECTION:
            summary.rejected += 1
        else:
            summary.interrupted += 1
