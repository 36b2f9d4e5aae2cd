"""CLI entrypoint for agent-relay."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from agent_relay import __version__
from agent_relay.controllers import (
    DbInitCommand,
    JobCreateCommand,
    JobListCommand,
    JobPollCommand,
    JobRefCommand,
    JobResultCommand,
    JobWaitCommand,
    RelayCliController,
    RunCreateCommand,
    RunMessageCommand,
    RunRefCommand,
    SupervisorRunCommand,
    ToolRegisterCommand,
)
from agent_relay.errors import RelayError
from agent_relay.jobs.models import JobStatus, ResultType

click.rich_click.USE_MARKDOWN = True
CONTROLLER = RelayCliController()

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
cluster_option = click.option(
    "--cluster-id",
    default=None,
    help="Cluster to operate on; defaults to AGENT_RELAY_CLUSTER_ID.",
)
process_option = click.option(
    "--process/--no-process",
    default=True,
    show_default=True,
    help="Process the run in this command instead of leaving it to a worker.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-relay")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def agent_relay(log_level: str) -> None:
    """Job dispatch and resumable reasoning runs."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_relay.group()
def db() -> None:
    """Database commands."""


@db.command("init")
@db_path_option
def db_init(db_path: Path | None) -> None:
    """Apply migrations and create the default cluster."""

    _run(lambda: CONTROLLER.init_db(DbInitCommand(db_path=db_path)))


@agent_relay.group()
def tools() -> None:
    """Tool definition commands."""


@tools.command("register")
@db_path_option
@cluster_option
@click.argument("name")
@click.option("--description", default="", help="What the tool does.")
@click.option("--schema", default=None, help="JSON schema for arguments, inline or @file.")
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Stall timeout for a claimed call.",
)
@click.option(
    "--retry-count-on-stall",
    type=click.IntRange(min=0),
    default=None,
    help="How many times a stalled call is handed out again.",
)
@click.option("--cache-key-path", default=None, help="Argument path used as the cache key.")
@click.option(
    "--cache-ttl-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="How long a resolved result is reused.",
)
def tools_register(  # noqa: PLR0913
    db_path: Path | None,
    cluster_id: str | None,
    name: str,
    description: str,
    schema: str | None,
    timeout_seconds: int | None,
    retry_count_on_stall: int | None,
    cache_key_path: str | None,
    cache_ttl_seconds: int | None,
) -> None:
    """Register or replace a tool definition."""

    _run(
        lambda: CONTROLLER.register_tool(
            ToolRegisterCommand(
                db_path=db_path,
                cluster_id=cluster_id,
                name=name,
                description=description,
                schema=schema,
                timeout_seconds=timeout_seconds,
                retry_count_on_stall=retry_count_on_stall,
                cache_key_path=cache_key_path,
                cache_ttl_seconds=cache_ttl_seconds,
            ),
        ),
    )


@agent_relay.group()
def jobs() -> None:
    """Job commands."""


@jobs.command("create")
@db_path_option
@cluster_option
@click.argument("tool")
@click.option("--args", "arguments", default="{}", show_default=True, help="JSON arguments.")
@click.option("--run-id", default=None, help="Run owning the job.")
@click.option("--job-id", default=None, help="Explicit id; repeating it is idempotent.")
def jobs_create(  # noqa: PLR0913
    db_path: Path | None,
    cluster_id: str | None,
    tool: str,
    arguments: str,
    run_id: str | None,
    job_id: str | None,
) -> None:
    """Create a job for a registered tool."""

    _run(
        lambda: CONTROLLER.create_job(
            JobCreateCommand(
                db_path=db_path,
                cluster_id=cluster_id,
                tool=tool,
                arguments=arguments,
                run_id=run_id,
                job_id=job_id,
            ),
        ),
    )


@jobs.command("poll")
@db_path_option
@cluster_option
@click.option("--machine-id", required=True, help="Claiming machine id.")
@click.option("--tool", "tool_names", multiple=True, required=True, help="Tool name. Repeatable.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=100),
    default=10,
    show_default=True,
    help="Max jobs to claim.",
)
@click.option(
    "--wait-seconds",
    type=click.FloatRange(min=0),
    default=0.0,
    show_default=True,
    help="How long to wait for pending work.",
)
def jobs_poll(  # noqa: PLR0913
    db_path: Path | None,
    cluster_id: str | None,
    machine_id: str,
    tool_names: tuple[str, ...],
    limit: int,
    wait_seconds: float,
) -> None:
    """Claim pending jobs as a machine."""

    _run(
        lambda: CONTROLLER.poll_jobs(
            JobPollCommand(
                db_path=db_path,
                cluster_id=cluster_id,
                machine_id=machine_id,
                tools=tool_names,
                limit=limit,
                wait_seconds=wait_seconds,
            ),
        ),
    )


@jobs.command("result")
@db_path_option
@cluster_option
@click.argument("job_id")
@click.option("--machine-id", required=True, help="Machine holding the claim.")
@click.option("--result", "result", required=True, help="JSON result payload.")
@click.option(
    "--result-type",
    type=click.Choice([item.value for item in ResultType]),
    default=ResultType.RESOLUTION.value,
    show_default=True,
    help="Kind of result.",
)
def jobs_result(  # noqa: PLR0913
    db_path: Path | None,
    cluster_id: str | None,
    job_id: str,
    machine_id: str,
    result: str,
    result_type: str,
) -> None:
    """Submit a result for a claimed job."""

    _run(
        lambda: CONTROLLER.submit_result(
            JobResultCommand(
                db_path=db_path,
                cluster_id=cluster_id,
                job_id=job_id,
                machine_id=machine_id,
                result=result,
                result_type=result_type,
            ),
        ),
    )


@jobs.command("inspect")
@db_path_option
@cluster_option
@click.argument("job_id")
def jobs_inspect(db_path: Path | None, cluster_id: str | None, job_id: str) -> None:
    """Show one job."""

    _run(
        lambda: CONTROLLER.inspect_job(
            JobRefCommand(db_path=db_path, cluster_id=cluster_id, job_id=job_id),
        ),
    )


@jobs.command("list")
@db_path_option
@cluster_option
@click.option(
    "--status",
    type=click.Choice([item.value for item in JobStatus]),
    default=None,
    help="Optional status filter.",
)
@click.option("--tool", default=None, help="Optional tool filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(
    db_path: Path | None,
    cluster_id: str | None,
    status: str | None,
    tool: str | None,
    limit: int,
) -> None:
    """List recent jobs."""

    _run(
        lambda: CONTROLLER.list_jobs(
            JobListCommand(
                db_path=db_path,
                cluster_id=cluster_id,
                status=status,
                tool=tool,
                limit=limit,
            ),
        ),
    )


@jobs.command("cancel")
@db_path_option
@cluster_option
@click.argument("job_id")
def jobs_cancel(db_path: Path | None, cluster_id: str | None, job_id: str) -> None:
    """Cancel an unfinished job."""

    _run(
        lambda: CONTROLLER.cancel_job(
            JobRefCommand(db_path=db_path, cluster_id=cluster_id, job_id=job_id),
        ),
    )


@jobs.command("approve")
@db_path_option
@cluster_option
@click.argument("job_id")
def jobs_approve(db_path: Path | None, cluster_id: str | None, job_id: str) -> None:
    """Approve a job waiting for approval."""

    _run(
        lambda: CONTROLLER.decide_approval(
            JobRefCommand(db_path=db_path, cluster_id=cluster_id, job_id=job_id),
            approved=True,
        ),
    )


@jobs.command("deny")
@db_path_option
@cluster_option
@click.argument("job_id")
def jobs_deny(db_path: Path | None, cluster_id: str | None, job_id: str) -> None:
    """Deny a job waiting for approval."""

    _run(
        lambda: CONTROLLER.decide_approval(
            JobRefCommand(db_path=db_path, cluster_id=cluster_id, job_id=job_id),
            approved=False,
        ),
    )


@jobs.command("wait")
@db_path_option
@cluster_option
@click.argument("job_id")
@click.option(
    "--ttl-seconds",
    type=click.FloatRange(min=0),
    default=60.0,
    show_default=True,
    help="How long to wait for a terminal result.",
)
def jobs_wait(
    db_path: Path | None,
    cluster_id: str | None,
    job_id: str,
    ttl_seconds: float,
) -> None:
    """Wait until a job finishes."""

    _run(
        lambda: CONTROLLER.wait_job(
            JobWaitCommand(
                db_path=db_path,
                cluster_id=cluster_id,
                job_id=job_id,
                ttl_seconds=ttl_seconds,
            ),
        ),
    )


@agent_relay.group()
def supervisor() -> None:
    """Self-healing sweep commands."""


@supervisor.command("run")
@db_path_option
@click.option("--once", is_flag=True, default=False, help="Run a single sweep and exit.")
@click.option(
    "--iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many sweeps.",
)
def supervisor_run(db_path: Path | None, once: bool, iterations: int | None) -> None:
    """Sweep stalled and abandoned jobs."""

    _run(
        lambda: CONTROLLER.run_supervisor(
            SupervisorRunCommand(db_path=db_path, once=once, iterations=iterations),
        ),
    )


@agent_relay.group()
def runs() -> None:
    """Reasoning run commands."""


@runs.command("create")
@db_path_option
@cluster_option
@click.option("--run-id", default=None, help="Explicit id; repeating it is idempotent.")
@click.option("--name", default=None, help="Run name.")
@click.option("--message", default=None, help="Initial human message.")
@click.option("--tool", "tool_names", multiple=True, help="Allowed tool. Repeatable.")
@click.option("--result-schema", default=None, help="JSON schema of the result, inline or @file.")
@click.option(
    "--interactive/--no-interactive",
    default=True,
    show_default=True,
    help="Whether the run accepts follow-up messages.",
)
@click.option("--system-prompt", default=None, help="Extra instructions for the model.")
@click.option("--webhook-url", default=None, help="Notified when the run is done or failed.")
@process_option
def runs_create(  # noqa: PLR0913
    db_path: Path | None,
    cluster_id: str | None,
    run_id: str | None,
    name: str | None,
    message: str | None,
    tool_names: tuple[str, ...],
    result_schema: str | None,
    interactive: bool,
    system_prompt: str | None,
    webhook_url: str | None,
    process: bool,
) -> None:
    """Create a run."""

    _run(
        lambda: CONTROLLER.create_run(
            RunCreateCommand(
                db_path=db_path,
                cluster_id=cluster_id,
                run_id=run_id,
                name=name,
                message=message,
                tools=tool_names,
                result_schema=result_schema,
                interactive=interactive,
                system_prompt=system_prompt,
                webhook_url=webhook_url,
                process=process,
            ),
        ),
    )


@runs.command("inspect")
@db_path_option
@cluster_option
@click.argument("run_id")
def runs_inspect(db_path: Path | None, cluster_id: str | None, run_id: str) -> None:
    """Show a run with its message history."""

    _run(
        lambda: CONTROLLER.inspect_run(
            RunRefCommand(db_path=db_path, cluster_id=cluster_id, run_id=run_id),
        ),
    )


@runs.command("process")
@db_path_option
@cluster_option
@click.argument("run_id")
def runs_process(db_path: Path | None, cluster_id: str | None, run_id: str) -> None:
    """Wake a run and process it now."""

    _run(
        lambda: CONTROLLER.process_run(
            RunRefCommand(db_path=db_path, cluster_id=cluster_id, run_id=run_id),
        ),
    )


@runs.command("retry")
@db_path_option
@cluster_option
@click.argument("run_id")
@process_option
def runs_retry(db_path: Path | None, cluster_id: str | None, run_id: str, process: bool) -> None:
    """Retry a failed run."""

    _run(
        lambda: CONTROLLER.retry_run(
            RunRefCommand(db_path=db_path, cluster_id=cluster_id, run_id=run_id, process=process),
        ),
    )


@runs.command("message")
@db_path_option
@cluster_option
@click.argument("run_id")
@click.argument("message")
@process_option
def runs_message(  # noqa: PLR0913
    db_path: Path | None,
    cluster_id: str | None,
    run_id: str,
    message: str,
    process: bool,
) -> None:
    """Add a human message to an idle run and resume it."""

    _run(
        lambda: CONTROLLER.add_message(
            RunMessageCommand(
                db_path=db_path,
                cluster_id=cluster_id,
                run_id=run_id,
                message=message,
                process=process,
            ),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (RelayError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_relay()
