"""Transport-agnostic relay surface: every call checks the caller's capability first."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from agent_relay.auth import AuthContext, AuthorizationGuard, ClusterScopedGuard, PrincipalKind
from agent_relay.errors import BadRequestError, NotFoundError
from agent_relay.events.sink import RelayEvent
from agent_relay.jobs.models import (
    ClaimedJob,
    CreatedJob,
    CreateJobRequest,
    JobStatus,
    JobView,
    ResultType,
)
from agent_relay.runs.models import (
    CreatedRun,
    RunCreate,
    RunDetails,
    RunMessage,
    RunView,
    StatusChangeHandler,
)
from agent_relay.services import RelayServices
from agent_relay.tools.registry import ToolConfig, ToolDefinition

logger = logging.getLogger(__name__)

RESULT_ACCEPTED = 204
RESULT_CONFLICT = 409

APPROVAL_INTERRUPT = "approval"


class RelayApi:
    """Operations exposed to machines, users and admins of one cluster."""

    def __init__(
        self,
        services: RelayServices,
        auth: AuthContext,
        *,
        guard: AuthorizationGuard | None = None,
    ) -> None:
        self.services = services
        self.auth = auth
        self.guard = guard or ClusterScopedGuard(auth)

    # Tools

    def register_tool(  # noqa: PLR0913
        self,
        *,
        cluster_id: str,
        name: str,
        description: str = "",
        schema: dict[str, Any] | None = None,
        config: ToolConfig | None = None,
    ) -> ToolDefinition:
        self.guard.can_create(cluster_id=cluster_id, kind="tool")
        return self.services.registry.upsert(
            ToolDefinition(
                cluster_id=cluster_id,
                name=name,
                description=description,
                schema=schema,
                config=config or ToolConfig(),
            ),
        )

    def list_tools(self, *, cluster_id: str) -> list[ToolDefinition]:
        self.guard.can_access(cluster_id=cluster_id)
        return self.services.registry.list_tools(cluster_id=cluster_id)

    # Jobs

    def create_job(
        self,
        *,
        cluster_id: str,
        target_fn: str,
        arguments: Any,
        run_id: str | None = None,
        job_id: str | None = None,
    ) -> CreatedJob:
        self.guard.can_create(cluster_id=cluster_id, kind="call")
        if run_id is not None:
            self._require_run(cluster_id=cluster_id, run_id=run_id)
        return self.services.creation.create_job(
            CreateJobRequest(
                cluster_id=cluster_id,
                target_fn=target_fn,
                target_args=arguments,
                run_id=run_id,
                job_id=job_id,
                auth_context=self.auth.to_dict(),
            ),
        )

    def poll_jobs(
        self,
        *,
        cluster_id: str,
        machine_id: str,
        tools: Sequence[str],
        limit: int = 10,
        wait_seconds: float | None = None,
    ) -> list[ClaimedJob]:
        self.guard.can_access(cluster_id=cluster_id)
        if wait_seconds is None:
            wait_seconds = self.services.settings.jobs.long_poll_timeout_seconds
        return self.services.dispatch.poll_jobs(
            cluster_id=cluster_id,
            machine_id=machine_id,
            tools=tools,
            limit=limit,
            wait_seconds=min(wait_seconds, self.services.settings.jobs.long_poll_timeout_seconds),
        )

    def acknowledge_job(self, *, cluster_id: str, job_id: str, machine_id: str) -> ClaimedJob:
        self.guard.can_access(cluster_id=cluster_id)
        return self.services.dispatch.acknowledge_job(
            cluster_id=cluster_id,
            job_id=job_id,
            machine_id=machine_id,
        )

    def submit_job_result(  # noqa: PLR0913
        self,
        *,
        cluster_id: str,
        job_id: str,
        machine_id: str,
        result: Any,
        result_type: ResultType,
        function_execution_time_ms: int | None = None,
    ) -> int:
        """Return 204 when the result landed, 409 when the claim no longer matches."""

        self.guard.can_access(cluster_id=cluster_id)
        if result_type is ResultType.INTERRUPT:
            interrupt_type = result.get("type") if isinstance(result, dict) else None
            if interrupt_type == APPROVAL_INTERRUPT:
                accepted = self.services.approvals.request_approval(
                    cluster_id=cluster_id,
                    job_id=job_id,
                    machine_id=machine_id,
                )
            else:
                accepted = self.services.approvals.interrupt(
                    cluster_id=cluster_id,
                    job_id=job_id,
                    machine_id=machine_id,
                )
        else:
            accepted = self.services.dispatch.submit_result(
                cluster_id=cluster_id,
                job_id=job_id,
                machine_id=machine_id,
                result=result,
                result_type=result_type,
                function_execution_time_ms=function_execution_time_ms,
            )
        return RESULT_ACCEPTED if accepted else RESULT_CONFLICT

    def request_approval(self, *, cluster_id: str, job_id: str, machine_id: str) -> bool:
        self.guard.can_access(cluster_id=cluster_id)
        return self.services.approvals.request_approval(
            cluster_id=cluster_id,
            job_id=job_id,
            machine_id=machine_id,
        )

    def submit_approval(self, *, cluster_id: str, job_id: str, approved: bool) -> bool:
        job = self._manageable_job(cluster_id=cluster_id, job_id=job_id)
        if not job.approval_requested:
            raise BadRequestError(f"Job {job_id} is not waiting for approval.")
        return self.services.approvals.submit_approval(
            cluster_id=cluster_id,
            job_id=job_id,
            approved=approved,
        )

    def get_job(self, *, cluster_id: str, job_id: str) -> JobView:
        self.guard.can_access(cluster_id=cluster_id)
        job = self.services.jobs.get(cluster_id=cluster_id, job_id=job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found in cluster {cluster_id}.")
        if job.run_id is not None:
            run = self.services.runs.get_run(cluster_id=cluster_id, run_id=job.run_id)
            if run is not None:
                self.guard.can_access(cluster_id=cluster_id, run_owner_id=run.owner_id)
        return job

    def get_job_status_sync(
        self,
        *,
        cluster_id: str,
        job_id: str,
        ttl_seconds: float | None = None,
    ) -> JobView:
        self.guard.can_access(cluster_id=cluster_id)
        return self.services.dispatch.get_job_status_sync(
            cluster_id=cluster_id,
            job_id=job_id,
            ttl_seconds=(
                ttl_seconds
                if ttl_seconds is not None
                else self.services.settings.jobs.sync_result_ttl_seconds
            ),
        )

    def cancel_job(self, *, cluster_id: str, job_id: str) -> bool:
        job = self._manageable_job(cluster_id=cluster_id, job_id=job_id)
        cancelled = self.services.jobs.cancel(cluster_id=cluster_id, job_id=job_id)
        if not cancelled:
            return False
        self.services.events.write(
            RelayEvent(
                type="jobCancelled",
                cluster_id=cluster_id,
                job_id=job_id,
                run_id=job.run_id,
                target_fn=job.target_fn,
            ),
        )
        if job.run_id is not None:
            self.services.run_service.resume_run(cluster_id=cluster_id, run_id=job.run_id)
        return True

    def list_jobs(
        self,
        *,
        cluster_id: str,
        status: JobStatus | None = None,
        target_fn: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        self.guard.can_access(cluster_id=cluster_id)
        return self.services.jobs.list_jobs(
            cluster_id=cluster_id,
            status=status,
            target_fn=target_fn,
            limit=limit,
        )

    def list_jobs_for_run(self, *, cluster_id: str, run_id: str) -> list[JobView]:
        self._require_run(cluster_id=cluster_id, run_id=run_id)
        return self.services.jobs.list_for_run(cluster_id=cluster_id, run_id=run_id)

    def latest_jobs_resulted(
        self,
        *,
        cluster_id: str,
        target_fn: str,
        limit: int = 10,
    ) -> list[JobView]:
        self.guard.can_access(cluster_id=cluster_id)
        return self.services.jobs.latest_resulted(
            cluster_id=cluster_id,
            target_fn=target_fn,
            limit=limit,
        )

    # Runs

    def create_run(  # noqa: PLR0913
        self,
        *,
        cluster_id: str,
        run_id: str | None = None,
        name: str | None = None,
        initial_message: str | None = None,
        attached_functions: Sequence[str] | None = None,
        result_schema: dict[str, Any] | None = None,
        interactive: bool = True,
        system_prompt: str | None = None,
        on_status_change: StatusChangeHandler | None = None,
        tags: dict[str, str] | None = None,
        context: dict[str, Any] | None = None,
    ) -> CreatedRun:
        self.guard.can_create(cluster_id=cluster_id, kind="run")
        return self.services.run_service.create_run(
            RunCreate(
                cluster_id=cluster_id,
                run_id=run_id,
                name=name,
                attached_functions=(
                    tuple(attached_functions) if attached_functions is not None else None
                ),
                result_schema=result_schema,
                interactive=interactive,
                system_prompt=system_prompt,
                on_status_change=on_status_change,
                tags=tags,
                owner_id=(
                    self.auth.principal_id if self.auth.kind is PrincipalKind.USER else None
                ),
                auth_context=self.auth.to_dict(),
                context=context,
                initial_message=initial_message,
            ),
        )

    def add_message(self, *, cluster_id: str, run_id: str, message: str) -> RunMessage:
        self._require_run(cluster_id=cluster_id, run_id=run_id)
        return self.services.run_service.add_message_and_resume(
            cluster_id=cluster_id,
            run_id=run_id,
            message=message,
        )

    def get_run(self, *, cluster_id: str, run_id: str) -> RunDetails:
        self._require_run(cluster_id=cluster_id, run_id=run_id)
        return self.services.run_service.get_run_details(cluster_id=cluster_id, run_id=run_id)

    def list_runs(self, *, cluster_id: str, limit: int = 50) -> list[RunView]:
        self.guard.can_access(cluster_id=cluster_id)
        runs = self.services.run_service.list_runs(cluster_id=cluster_id, limit=limit)
        if self.auth.kind is PrincipalKind.USER:
            return [run for run in runs if run.owner_id in {None, self.auth.principal_id}]
        return runs

    def retry_run(self, *, cluster_id: str, run_id: str) -> RunView:
        self._require_run(cluster_id=cluster_id, run_id=run_id)
        return self.services.run_service.create_retry(cluster_id=cluster_id, run_id=run_id)

    def _require_run(self, *, cluster_id: str, run_id: str) -> RunView:
        self.guard.can_access(cluster_id=cluster_id)
        run = self.services.runs.get_run(cluster_id=cluster_id, run_id=run_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found in cluster {cluster_id}.")
        self.guard.can_access(cluster_id=cluster_id, run_owner_id=run.owner_id)
        return run

    def _manageable_job(self, *, cluster_id: str, job_id: str) -> JobView:
        job = self.get_job(cluster_id=cluster_id, job_id=job_id)
        owner_id = None
        if job.run_id is not None:
            run = self.services.runs.get_run(cluster_id=cluster_id, run_id=job.run_id)
            owner_id = run.owner_id if run is not None else None
        self.guard.can_manage(cluster_id=cluster_id, run_owner_id=owner_id)
        return job
