"""Runtime configuration for job dispatch, supervision and run processing."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


@dataclass(slots=True)
class ClusterSettings:
    """Default tenant used by the CLI."""

    cluster_id: str = "default"
    cluster_name: str = "Default cluster"


@dataclass(slots=True)
class JobSettings:
    """Job creation and long-poll dispatch settings."""

    long_poll_timeout_seconds: float = 20.0
    long_poll_interval_seconds: float = 0.5
    max_poll_limit: int = 50
    default_retry_count_on_stall: int = 0
    schema_unavailable_retries: int = 3
    schema_unavailable_backoff_seconds: float = 1.0
    sync_result_ttl_seconds: float = 60.0


@dataclass(slots=True)
class SupervisorSettings:
    """Self-healing sweep settings."""

    interval_seconds: float = 5.0
    interrupt_recover_after_seconds: int = 300
    interrupt_abandon_after_seconds: int = 86_400


@dataclass(slots=True)
class RunSettings:
    """Reasoning loop and wake-up queue settings."""

    max_steps: int = 100
    max_messages: int = 100
    cycle_window: int = 10
    tool_result_wait_seconds: float = 0.5
    lock_max_attempts: int = 5
    lock_backoff_base_seconds: float = 5.0
    lock_stale_after_seconds: int = 900
    queue_concurrency: int = 5


@dataclass(slots=True)
class EventSettings:
    """Buffered event sink settings."""

    flush_interval_seconds: float = 1.0
    max_batch_size: int = 100
    max_buffer_size: int = 10_000
    write_retries: int = 3
    write_backoff_seconds: float = 0.5


@dataclass(slots=True)
class NotificationSettings:
    """Outbound webhook settings."""

    approval_webhook_url: str | None = None
    request_timeout_seconds: float = 10.0
    webhook_retries: int = 5


@dataclass(slots=True)
class ReasoningSettings:
    """External CLI agent used as the reasoning capability."""

    command_template: str | None = None
    timeout_seconds: int = 300


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_relay.db")
    sqlite_busy_timeout_ms: int = 5_000
    cluster: ClusterSettings = field(default_factory=ClusterSettings)
    jobs: JobSettings = field(default_factory=JobSettings)
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)
    runs: RunSettings = field(default_factory=RunSettings)
    events: EventSettings = field(default_factory=EventSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    reasoning: ReasoningSettings = field(default_factory=ReasoningSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_RELAY_DB_PATH", ".agent_relay.db")),
            sqlite_busy_timeout_ms=int(os.getenv("AGENT_RELAY_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cluster=ClusterSettings(
                cluster_id=os.getenv("AGENT_RELAY_CLUSTER_ID", "default"),
                cluster_name=os.getenv("AGENT_RELAY_CLUSTER_NAME", "Default cluster"),
            ),
            jobs=JobSettings(
                long_poll_timeout_seconds=float(
                    os.getenv("AGENT_RELAY_LONG_POLL_TIMEOUT_SECONDS", "20"),
                ),
                long_poll_interval_seconds=float(
                    os.getenv("AGENT_RELAY_LONG_POLL_INTERVAL_SECONDS", "0.5"),
                ),
                max_poll_limit=int(os.getenv("AGENT_RELAY_MAX_POLL_LIMIT", "50")),
                default_retry_count_on_stall=int(
                    os.getenv("AGENT_RELAY_DEFAULT_RETRY_COUNT_ON_STALL", "0"),
                ),
                schema_unavailable_retries=int(
                    os.getenv("AGENT_RELAY_SCHEMA_UNAVAILABLE_RETRIES", "3"),
                ),
                schema_unavailable_backoff_seconds=float(
                    os.getenv("AGENT_RELAY_SCHEMA_UNAVAILABLE_BACKOFF_SECONDS", "1.0"),
                ),
                sync_result_ttl_seconds=float(
                    os.getenv("AGENT_RELAY_SYNC_RESULT_TTL_SECONDS", "60"),
                ),
            ),
            supervisor=SupervisorSettings(
                interval_seconds=float(os.getenv("AGENT_RELAY_SUPERVISOR_INTERVAL_SECONDS", "5")),
                interrupt_recover_after_seconds=int(
                    os.getenv("AGENT_RELAY_INTERRUPT_RECOVER_AFTER_SECONDS", "300"),
                ),
                interrupt_abandon_after_seconds=int(
                    os.getenv("AGENT_RELAY_INTERRUPT_ABANDON_AFTER_SECONDS", "86400"),
                ),
            ),
            runs=RunSettings(
                max_steps=int(os.getenv("AGENT_RELAY_RUN_MAX_STEPS", "100")),
                max_messages=int(os.getenv("AGENT_RELAY_RUN_MAX_MESSAGES", "100")),
                cycle_window=int(os.getenv("AGENT_RELAY_RUN_CYCLE_WINDOW", "10")),
                tool_result_wait_seconds=float(
                    os.getenv("AGENT_RELAY_TOOL_RESULT_WAIT_SECONDS", "0.5"),
                ),
                lock_max_attempts=int(os.getenv("AGENT_RELAY_RUN_LOCK_MAX_ATTEMPTS", "5")),
                lock_backoff_base_seconds=float(
                    os.getenv("AGENT_RELAY_RUN_LOCK_BACKOFF_BASE_SECONDS", "5"),
                ),
                lock_stale_after_seconds=int(
                    os.getenv("AGENT_RELAY_RUN_LOCK_STALE_AFTER_SECONDS", "900"),
                ),
                queue_concurrency=int(os.getenv("AGENT_RELAY_RUN_QUEUE_CONCURRENCY", "5")),
            ),
            events=EventSettings(
                flush_interval_seconds=float(
                    os.getenv("AGENT_RELAY_EVENT_FLUSH_INTERVAL_SECONDS", "1.0"),
                ),
                max_batch_size=int(os.getenv("AGENT_RELAY_EVENT_MAX_BATCH_SIZE", "100")),
                max_buffer_size=int(os.getenv("AGENT_RELAY_EVENT_MAX_BUFFER_SIZE", "10000")),
                write_retries=int(os.getenv("AGENT_RELAY_EVENT_WRITE_RETRIES", "3")),
                write_backoff_seconds=float(
                    os.getenv("AGENT_RELAY_EVENT_WRITE_BACKOFF_SECONDS", "0.5"),
                ),
            ),
            notifications=NotificationSettings(
                approval_webhook_url=os.getenv("AGENT_RELAY_APPROVAL_WEBHOOK_URL") or None,
                request_timeout_seconds=float(
                    os.getenv("AGENT_RELAY_NOTIFICATION_TIMEOUT_SECONDS", "10"),
                ),
                webhook_retries=int(os.getenv("AGENT_RELAY_WEBHOOK_RETRIES", "5")),
            ),
            reasoning=ReasoningSettings(
                command_template=os.getenv("AGENT_RELAY_MODEL_COMMAND") or None,
                timeout_seconds=int(os.getenv("AGENT_RELAY_MODEL_TIMEOUT_SECONDS", "300")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values the runtime cannot honour."""

        if not self.cluster.cluster_id.strip():
            raise ValueError("AGENT_RELAY_CLUSTER_ID must not be empty.")
        if self.jobs.long_poll_interval_seconds <= 0:
            raise ValueError("AGENT_RELAY_LONG_POLL_INTERVAL_SECONDS must be > 0.")
        if self.jobs.long_poll_timeout_seconds < 0:
            raise ValueError("AGENT_RELAY_LONG_POLL_TIMEOUT_SECONDS must be >= 0.")
        if self.jobs.max_poll_limit < 1:
            raise ValueError("AGENT_RELAY_MAX_POLL_LIMIT must be >= 1.")
        if self.jobs.default_retry_count_on_stall < 0:
            raise ValueError("AGENT_RELAY_DEFAULT_RETRY_COUNT_ON_STALL must be >= 0.")
        if self.supervisor.interval_seconds <= 0:
            raise ValueError("AGENT_RELAY_SUPERVISOR_INTERVAL_SECONDS must be > 0.")
        if (
            self.supervisor.interrupt_abandon_after_seconds
            <= self.supervisor.interrupt_recover_after_seconds
        ):
            raise ValueError(
                "AGENT_RELAY_INTERRUPT_ABANDON_AFTER_SECONDS must be greater than "
                "AGENT_RELAY_INTERRUPT_RECOVER_AFTER_SECONDS.",
            )
        if self.runs.max_steps < 1:
            raise ValueError("AGENT_RELAY_RUN_MAX_STEPS must be >= 1.")
        if self.runs.queue_concurrency < 1:
            raise ValueError("AGENT_RELAY_RUN_QUEUE_CONCURRENCY must be >= 1.")
        if self.runs.lock_max_attempts < 0:
            raise ValueError("AGENT_RELAY_RUN_LOCK_MAX_ATTEMPTS must be >= 0.")
        if self.events.max_batch_size < 1:
            raise ValueError("AGENT_RELAY_EVENT_MAX_BATCH_SIZE must be >= 1.")
        if self.events.write_retries < 1:
            raise ValueError("AGENT_RELAY_EVENT_WRITE_RETRIES must be >= 1.")
        if self.notifications.approval_webhook_url is not None and not _is_http_url(
            self.notifications.approval_webhook_url,
        ):
            raise ValueError(
                "Invalid AGENT_RELAY_APPROVAL_WEBHOOK_URL: "
                f"{self.notifications.approval_webhook_url}",
            )


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)
