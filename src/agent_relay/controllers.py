"""Controllers for relay CLI commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_relay.api import RESULT_ACCEPTED, RelayApi
from agent_relay.auth import AuthContext, PrincipalKind
from agent_relay.config import Settings
from agent_relay.errors import BadRequestError, JobPollTimeoutError
from agent_relay.jobs.models import JobStatus, JobView, ResultType
from agent_relay.jobs.packer import unpack
from agent_relay.runs.models import StatusChangeHandler
from agent_relay.services import RelayServices
from agent_relay.storage.database import RelayDatabase
from agent_relay.tools.registry import CachePolicy, ToolConfig

logger = logging.getLogger(__name__)

CLI_PRINCIPAL = "cli"


@dataclass(slots=True)
class DbInitCommand:
    db_path: Path | None


@dataclass(slots=True)
class ToolRegisterCommand:
    """CLI input for tool registration."""

    db_path: Path | None
    cluster_id: str | None
    name: str
    description: str
    schema: str | None
    timeout_seconds: int | None
    retry_count_on_stall: int | None
    cache_key_path: str | None
    cache_ttl_seconds: int | None


@dataclass(slots=True)
class JobCreateCommand:
    db_path: Path | None
    cluster_id: str | None
    tool: str
    arguments: str
    run_id: str | None
    job_id: str | None


@dataclass(slots=True)
class JobPollCommand:
    """CLI input for claiming jobs as a machine."""

    db_path: Path | None
    cluster_id: str | None
    machine_id: str
    tools: tuple[str, ...]
    limit: int
    wait_seconds: float


@dataclass(slots=True)
class JobResultCommand:
    db_path: Path | None
    cluster_id: str | None
    job_id: str
    machine_id: str
    result: str
    result_type: str


@dataclass(slots=True)
class JobRefCommand:
    """CLI input for commands addressing one job."""

    db_path: Path | None
    cluster_id: str | None
    job_id: str


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    cluster_id: str | None
    status: str | None
    tool: str | None
    limit: int


@dataclass(slots=True)
class JobWaitCommand:
    db_path: Path | None
    cluster_id: str | None
    job_id: str
    ttl_seconds: float


@dataclass(slots=True)
class SupervisorRunCommand:
    db_path: Path | None
    once: bool
    iterations: int | None


@dataclass(slots=True)
class RunCreateCommand:
    """CLI input for run creation."""

    db_path: Path | None
    cluster_id: str | None
    run_id: str | None
    name: str | None
    message: str | None
    tools: tuple[str, ...]
    result_schema: str | None
    interactive: bool
    system_prompt: str | None
    webhook_url: str | None
    process: bool


@dataclass(slots=True)
class RunRefCommand:
    """CLI input for commands addressing one run."""

    db_path: Path | None
    cluster_id: str | None
    run_id: str
    process: bool = True


@dataclass(slots=True)
class RunMessageCommand:
    db_path: Path | None
    cluster_id: str | None
    run_id: str
    message: str
    process: bool


class RelayCliController:
    """Coordinates tool, job, supervisor and run CLI operations."""

    def init_db(self, command: DbInitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        database = RelayDatabase(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
        try:
            database.init_schema()
            database.ensure_cluster(settings.cluster.cluster_id, name=settings.cluster.cluster_name)
        finally:
            database.close()
        return [f"Database ready: {settings.db_path}"]

    def register_tool(self, command: ToolRegisterCommand) -> list[str]:
        cache = None
        if command.cache_key_path is not None:
            if command.cache_ttl_seconds is None:
                raise BadRequestError("--cache-ttl-seconds is required with --cache-key-path.")
            cache = CachePolicy(
                key_path=command.cache_key_path,
                ttl_seconds=command.cache_ttl_seconds,
            )
        schema = _parse_json_option(command.schema, option="--schema")
        with _api(command.db_path, command.cluster_id) as api:
            definition = api.register_tool(
                cluster_id=api.auth.cluster_id,
                name=command.name,
                description=command.description,
                schema=schema,
                config=ToolConfig(
                    timeout_seconds=command.timeout_seconds,
                    retry_count_on_stall=command.retry_count_on_stall,
                    cache=cache,
                ),
            )
        return [
            f"Tool registered: {definition.name} cluster={definition.cluster_id} "
            f"config={json.dumps(definition.config.to_dict(), sort_keys=True)}",
        ]

    def create_job(self, command: JobCreateCommand) -> list[str]:
        arguments = _parse_json_option(command.arguments, option="--args")
        with _api(command.db_path, command.cluster_id) as api:
            created = api.create_job(
                cluster_id=api.auth.cluster_id,
                target_fn=command.tool,
                arguments=arguments if arguments is not None else {},
                run_id=command.run_id,
                job_id=command.job_id,
            )
        return [f"Job: {created.id} created={str(created.created).lower()}"]

    def poll_jobs(self, command: JobPollCommand) -> list[str]:
        with _api(command.db_path, command.cluster_id) as api:
            jobs = api.poll_jobs(
                cluster_id=api.auth.cluster_id,
                machine_id=command.machine_id,
                tools=command.tools,
                limit=command.limit,
                wait_seconds=command.wait_seconds,
            )
        lines = [f"Claimed: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.id} tool={job.target_fn} args={job.target_args} "
                f"approved={_format_optional_bool(job.approved)}",
            )
        return lines

    def submit_result(self, command: JobResultCommand) -> list[str]:
        result = _parse_json_option(command.result, option="--result")
        with _api(command.db_path, command.cluster_id) as api:
            status = api.submit_job_result(
                cluster_id=api.auth.cluster_id,
                job_id=command.job_id,
                machine_id=command.machine_id,
                result=result,
                result_type=ResultType(command.result_type),
            )
            api.services.run_queue.run_pending()
        if status == RESULT_ACCEPTED:
            return [f"Result accepted: {command.job_id} ({status})"]
        return [f"Result rejected: {command.job_id} ({status}, claim no longer held)"]

    def inspect_job(self, command: JobRefCommand) -> list[str]:
        with _api(command.db_path, command.cluster_id) as api:
            job = api.get_job(cluster_id=api.auth.cluster_id, job_id=command.job_id)
        return _job_lines(job)

    def list_jobs(self, command: JobListCommand) -> list[str]:
        status = JobStatus(command.status) if command.status else None
        with _api(command.db_path, command.cluster_id) as api:
            jobs = api.list_jobs(
                cluster_id=api.auth.cluster_id,
                status=status,
                target_fn=command.tool,
                limit=command.limit,
            )
        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.id} tool={job.target_fn} status={job.status.value} "
                f"attempts_left={job.remaining_attempts} run={job.run_id or '-'}",
            )
        return lines

    def cancel_job(self, command: JobRefCommand) -> list[str]:
        with _api(command.db_path, command.cluster_id) as api:
            cancelled = api.cancel_job(cluster_id=api.auth.cluster_id, job_id=command.job_id)
            api.services.run_queue.run_pending()
        if cancelled:
            return [f"Job cancelled: {command.job_id}"]
        return [f"Job already finished: {command.job_id}"]

    def decide_approval(self, command: JobRefCommand, *, approved: bool) -> list[str]:
        with _api(command.db_path, command.cluster_id) as api:
            changed = api.submit_approval(
                cluster_id=api.auth.cluster_id,
                job_id=command.job_id,
                approved=approved,
            )
            api.services.run_queue.run_pending()
        decision = "approved" if approved else "denied"
        if changed:
            return [f"Job {decision}: {command.job_id}"]
        return [f"Approval already decided: {command.job_id}"]

    def wait_job(self, command: JobWaitCommand) -> list[str]:
        with _api(command.db_path, command.cluster_id) as api:
            try:
                job = api.get_job_status_sync(
                    cluster_id=api.auth.cluster_id,
                    job_id=command.job_id,
                    ttl_seconds=command.ttl_seconds,
                )
            except JobPollTimeoutError as error:
                return [f"Timed out: {error}"]
        return _job_lines(job)

    def run_supervisor(self, command: SupervisorRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            if command.once:
                report = services.supervisor.run_once()
                services.run_queue.run_pending()
                return [
                    "Sweep: "
                    f"stalled={len(report.stalled)} "
                    f"recovered={len(report.stalled_recovered)} "
                    f"failed={len(report.stalled_failed_by_timeout)} "
                    f"interruptions_recovered={len(report.interruptions_recovered)} "
                    f"abandoned={len(report.abandoned_interruptions)}",
                ]
            services.run_queue.start()
            try:
                sweeps = services.supervisor.run_loop(iterations=command.iterations)
            except KeyboardInterrupt:
                sweeps = 0
                logger.info("Supervisor interrupted")
            finally:
                services.run_queue.wait_idle()
        return [f"Supervisor finished after {sweeps} sweep(s)"]

    def create_run(self, command: RunCreateCommand) -> list[str]:
        result_schema = _parse_json_option(command.result_schema, option="--result-schema")
        on_status_change = (
            StatusChangeHandler(type="webhook", target=command.webhook_url)
            if command.webhook_url
            else None
        )
        with _api(command.db_path, command.cluster_id) as api:
            created = api.create_run(
                cluster_id=api.auth.cluster_id,
                run_id=command.run_id,
                name=command.name,
                initial_message=command.message,
                attached_functions=command.tools or None,
                result_schema=result_schema,
                interactive=command.interactive,
                system_prompt=command.system_prompt,
                on_status_change=on_status_change,
            )
            if command.process:
                api.services.run_queue.run_pending()
            details = api.get_run(cluster_id=api.auth.cluster_id, run_id=created.run.id)
        return [
            f"Run: {created.run.id} created={str(created.created).lower()}",
            *_run_lines(details.run.status.value, details.run.failure_reason, details.result),
        ]

    def inspect_run(self, command: RunRefCommand) -> list[str]:
        with _api(command.db_path, command.cluster_id) as api:
            details = api.get_run(cluster_id=api.auth.cluster_id, run_id=command.run_id)
        lines = [
            f"Run: {details.run.id}",
            f"Name: {details.run.name or '-'}",
            *_run_lines(details.run.status.value, details.run.failure_reason, details.result),
            f"Waiting on: {', '.join(details.waiting_job_ids) or '-'}",
            f"Messages: {len(details.messages)}",
        ]
        for message in details.messages:
            lines.append(
                f"  {message.type.value}: {json.dumps(message.data, sort_keys=True, default=str)}",
            )
        return lines

    def process_run(self, command: RunRefCommand) -> list[str]:
        with _api(command.db_path, command.cluster_id) as api:
            api.get_run(cluster_id=api.auth.cluster_id, run_id=command.run_id)
            api.services.run_service.resume_run(
                cluster_id=api.auth.cluster_id,
                run_id=command.run_id,
            )
            processed = api.services.run_queue.run_pending()
            details = api.get_run(cluster_id=api.auth.cluster_id, run_id=command.run_id)
        return [
            f"Processed wake-ups: {processed}",
            *_run_lines(details.run.status.value, details.run.failure_reason, details.result),
        ]

    def retry_run(self, command: RunRefCommand) -> list[str]:
        with _api(command.db_path, command.cluster_id) as api:
            run = api.retry_run(cluster_id=api.auth.cluster_id, run_id=command.run_id)
            if command.process:
                api.services.run_queue.run_pending()
            details = api.get_run(cluster_id=api.auth.cluster_id, run_id=run.id)
        return [
            f"Run retried: {run.id}",
            *_run_lines(details.run.status.value, details.run.failure_reason, details.result),
        ]

    def add_message(self, command: RunMessageCommand) -> list[str]:
        with _api(command.db_path, command.cluster_id) as api:
            message = api.add_message(
                cluster_id=api.auth.cluster_id,
                run_id=command.run_id,
                message=command.message,
            )
            if command.process:
                api.services.run_queue.run_pending()
            details = api.get_run(cluster_id=api.auth.cluster_id, run_id=command.run_id)
        return [
            f"Message added: {message.id}",
            *_run_lines(details.run.status.value, details.run.failure_reason, details.result),
        ]


def _job_lines(job: JobView) -> list[str]:
    result: Any = None
    if job.result is not None:
        result = unpack(job.result)
    return [
        f"Job: {job.id}",
        f"Tool: {job.target_fn}",
        f"Status: {job.status.value}",
        f"Attempts left: {job.remaining_attempts}",
        f"Machine: {job.executing_machine_id or '-'}",
        f"Run: {job.run_id or '-'}",
        f"Approval: requested={str(job.approval_requested).lower()} "
        f"approved={_format_optional_bool(job.approved)}",
        f"Result type: {job.result_type.value if job.result_type else '-'}",
        f"Result: {json.dumps(result, sort_keys=True) if result is not None else '-'}",
    ]


def _run_lines(status: str, failure_reason: str | None, result: Any) -> list[str]:
    return [
        f"Status: {status}",
        f"Failure: {failure_reason or '-'}",
        f"Result: {json.dumps(result, sort_keys=True) if result is not None else '-'}",
    ]


def _format_optional_bool(value: bool | None) -> str:
    if value is None:
        return "-"
    return str(value).lower()


def _parse_json_option(raw: str | None, *, option: str) -> Any:
    if raw is None:
        return None
    text = raw
    if raw.startswith("@"):
        text = Path(raw[1:]).read_text("utf-8")
    try:
        return json.loads(text)
    except json.JSONDecodeError as error:
        raise BadRequestError(f"{option} is not valid JSON: {error.msg}") from error


@contextmanager
def _services(settings: Settings) -> Iterator[RelayServices]:
    services = RelayServices.build(settings)
    services.events.start()
    try:
        yield services
    finally:
        services.close()


@contextmanager
def _api(db_path: Path | None, cluster_id: str | None) -> Iterator[RelayApi]:
    settings = Settings.from_env(db_path=db_path)
    if cluster_id:
        settings.cluster.cluster_id = cluster_id
        settings.cluster.cluster_name = cluster_id
    with _services(settings) as services:
        yield RelayApi(
            services,
            AuthContext(
                principal_id=CLI_PRINCIPAL,
                kind=PrincipalKind.ADMIN,
                cluster_id=settings.cluster.cluster_id,
            ),
        )
