"""Wiring of stores, protocols and the run loop from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from agent_relay.config import Settings
from agent_relay.events.sink import EventSink
from agent_relay.jobs.approval import ApprovalGate, ApprovalNotifier, WebhookApprovalNotifier
from agent_relay.jobs.creation import JobCreationService
from agent_relay.jobs.dispatch import DispatchProtocol
from agent_relay.jobs.store import JobStore
from agent_relay.jobs.supervisor import SelfHealingSupervisor
from agent_relay.reasoning.base import ReasoningModel, UnconfiguredModel
from agent_relay.reasoning.cli_model import CliReasoningModel
from agent_relay.runs.lock import RunLockManager
from agent_relay.runs.model_step import ModelStep
from agent_relay.runs.notify import StatusChangeNotifier
from agent_relay.runs.orchestrator import RunOrchestrator
from agent_relay.runs.queue import RunProcessQueue
from agent_relay.runs.service import RunService
from agent_relay.runs.store import RunStore
from agent_relay.runs.tool_calls import ToolCallStep
from agent_relay.storage.database import RelayDatabase
from agent_relay.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RelayServices:
    """Every component sharing one database and event sink."""

    settings: Settings
    database: RelayDatabase
    events: EventSink
    registry: ToolRegistry
    jobs: JobStore
    creation: JobCreationService
    dispatch: DispatchProtocol
    approvals: ApprovalGate
    supervisor: SelfHealingSupervisor
    runs: RunStore
    run_queue: RunProcessQueue
    run_service: RunService
    orchestrator: RunOrchestrator
    status_notifier: StatusChangeNotifier
    approval_notifier: ApprovalNotifier | None = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        model: ReasoningModel | None = None,
        approval_notifier: ApprovalNotifier | None = None,
        init_schema: bool = True,
    ) -> RelayServices:
        settings.validate()
        database = RelayDatabase(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
        if init_schema:
            database.init_schema()
        database.ensure_cluster(settings.cluster.cluster_id, name=settings.cluster.cluster_name)
        engine = database.engine

        events = EventSink(
            engine,
            flush_interval_seconds=settings.events.flush_interval_seconds,
            max_batch_size=settings.events.max_batch_size,
            max_buffer_size=settings.events.max_buffer_size,
            write_retries=settings.events.write_retries,
            write_backoff_seconds=settings.events.write_backoff_seconds,
        )
        registry = ToolRegistry(engine)
        jobs = JobStore(engine)
        runs = RunStore(engine)

        run_queue = RunProcessQueue(
            lock_manager=RunLockManager(
                engine,
                stale_after=timedelta(seconds=settings.runs.lock_stale_after_seconds),
            ),
            concurrency=settings.runs.queue_concurrency,
            max_lock_attempts=settings.runs.lock_max_attempts,
            backoff_base_seconds=settings.runs.lock_backoff_base_seconds,
        )
        run_service = RunService(runs=runs, jobs=jobs, queue=run_queue)

        def wake_run(cluster_id: str, run_id: str) -> None:
            run_service.resume_run(cluster_id=cluster_id, run_id=run_id)

        creation = JobCreationService(
            store=jobs,
            registry=registry,
            events=events,
            default_retry_count_on_stall=settings.jobs.default_retry_count_on_stall,
            schema_unavailable_retries=settings.jobs.schema_unavailable_retries,
            schema_unavailable_backoff_seconds=settings.jobs.schema_unavailable_backoff_seconds,
        )
        dispatch = DispatchProtocol(
            store=jobs,
            events=events,
            poll_interval_seconds=settings.jobs.long_poll_interval_seconds,
            max_poll_limit=settings.jobs.max_poll_limit,
            wake_run=wake_run,
        )
        if approval_notifier is None and settings.notifications.approval_webhook_url:
            approval_notifier = WebhookApprovalNotifier(
                url=settings.notifications.approval_webhook_url,
                timeout_seconds=settings.notifications.request_timeout_seconds,
                max_retries=settings.notifications.webhook_retries,
            )
        approvals = ApprovalGate(
            store=jobs,
            events=events,
            notifier=approval_notifier,
            wake_run=wake_run,
        )
        supervisor = SelfHealingSupervisor(
            store=jobs,
            events=events,
            interval_seconds=settings.supervisor.interval_seconds,
            interrupt_recover_after_seconds=settings.supervisor.interrupt_recover_after_seconds,
            interrupt_abandon_after_seconds=settings.supervisor.interrupt_abandon_after_seconds,
            wake_run=wake_run,
        )
        status_notifier = StatusChangeNotifier(
            creation=creation,
            events=events,
            timeout_seconds=settings.notifications.request_timeout_seconds,
            max_retries=settings.notifications.webhook_retries,
        )
        orchestrator = RunOrchestrator(
            runs=runs,
            jobs=jobs,
            registry=registry,
            model_step=ModelStep(
                model=model or _default_model(settings),
                max_messages=settings.runs.max_messages,
                cycle_window=settings.runs.cycle_window,
            ),
            tool_step=ToolCallStep(
                creation=creation,
                dispatch=dispatch,
                wait_seconds=settings.runs.tool_result_wait_seconds,
            ),
            notifier=status_notifier,
            events=events,
            max_steps=settings.runs.max_steps,
        )
        run_queue.bind(orchestrator.process_run)
        run_service.ensure_background_run(settings.cluster.cluster_id)

        return cls(
            settings=settings,
            database=database,
            events=events,
            registry=registry,
            jobs=jobs,
            creation=creation,
            dispatch=dispatch,
            approvals=approvals,
            supervisor=supervisor,
            runs=runs,
            run_queue=run_queue,
            run_service=run_service,
            orchestrator=orchestrator,
            status_notifier=status_notifier,
            approval_notifier=approval_notifier,
        )

    def start(self) -> None:
        """Start background threads: event writer, run workers and the sweep."""

        self.events.start()
        self.run_queue.start()
        self.supervisor.start()

    def close(self) -> None:
        self.supervisor.stop()
        self.run_queue.stop()
        self.events.close()
        self.status_notifier.close()
        if isinstance(self.approval_notifier, WebhookApprovalNotifier):
            self.approval_notifier.close()
        self.database.close()


def _default_model(settings: Settings) -> ReasoningModel:
    if settings.reasoning.command_template:
        return CliReasoningModel(
            command_template=settings.reasoning.command_template,
            timeout_seconds=settings.reasoning.timeout_seconds,
        )
    logger.debug("No reasoning command configured; runs will fail when they need the model")
    return UnconfiguredModel()

