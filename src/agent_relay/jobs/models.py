"""Domain models for the job lifecycle."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    STALLED = "stalled"
    INTERRUPTED = "interrupted"
    SUCCESS = "success"
    FAILURE = "failure"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.SUCCESS, JobStatus.FAILURE})


class ResultType(str, Enum):
    """Kind of payload a machine reported."""

    RESOLUTION = "resolution"
    REJECTION = "rejection"
    INTERRUPT = "interrupt"


RunWaker = Callable[[str, str], None]
"""Callback waking the run ``(cluster_id, run_id)`` owning a job."""


@dataclass(slots=True)
class JobInsert:
    """Fully resolved row for a new pending job."""

    cluster_id: str
    job_id: str
    target_fn: str
    target_args: str
    remaining_attempts: int
    timeout_interval_seconds: int | None = None
    cache_key: str | None = None
    run_id: str | None = None
    auth_context: dict[str, Any] | None = None
    run_context: dict[str, Any] | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for services and CLI."""

    cluster_id: str
    id: str
    target_fn: str
    target_args: str
    status: JobStatus
    cache_key: str | None
    remaining_attempts: int
    timeout_interval_seconds: int | None
    executing_machine_id: str | None
    last_retrieved_at: datetime | None
    approval_requested: bool
    approved: bool | None
    result: str | None
    result_type: ResultType | None
    resulted_at: datetime | None
    function_execution_time_ms: int | None
    run_id: str | None
    auth_context: dict[str, Any] | None
    run_context: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def awaiting_approval(self) -> bool:
        return self.approval_requested and self.approved is None


@dataclass(slots=True)
class ClaimedJob:
    """What a machine receives for each job it claimed."""

    id: str
    target_fn: str
    target_args: str
    auth_context: dict[str, Any] | None
    run_context: dict[str, Any] | None
    approved: bool | None


@dataclass(slots=True)
class JobRef:
    """Identity of a job touched by a bulk transition."""

    cluster_id: str
    id: str
    target_fn: str
    run_id: str | None
    remaining_attempts: int


@dataclass(slots=True)
class CreateJobRequest:
    """Input payload for job creation."""

    cluster_id: str
    target_fn: str
    target_args: Any
    run_id: str | None = None
    job_id: str | None = None
    auth_context: dict[str, Any] | None = None
    run_context: dict[str, Any] | None = None


@dataclass(slots=True)
class CreatedJob:
    id: str
    created: bool


@dataclass(slots=True)
class SweepReport:
    """Outcome of one self-healing sweep, job ids per transition."""

    stalled: list[str] = field(default_factory=list)
    stalled_recovered: list[str] = field(default_factory=list)
    stalled_failed_by_timeout: list[str] = field(default_factory=list)
    interruptions_recovered: list[str] = field(default_factory=list)
    abandoned_interruptions: list[str] = field(default_factory=list)
