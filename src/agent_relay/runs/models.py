"""Domain models for reasoning runs and their message history."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4


class RunStatus(str, Enum):
    """Persisted run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    DONE = "done"
    FAILED = "failed"


READY_RUN_STATUSES = frozenset(
    {RunStatus.DONE, RunStatus.FAILED, RunStatus.PENDING, RunStatus.PAUSED},
)


class MessageType(str, Enum):
    HUMAN = "human"
    AGENT = "agent"
    AGENT_INVALID = "agent-invalid"
    INVOCATION_RESULT = "invocation-result"
    SUPERVISOR = "supervisor"


def background_run_id(cluster_id: str) -> str:
    """Id of the per-cluster run that owns unattended jobs; it is never processed."""

    return f"{cluster_id}BACKGROUND"


def new_message_id() -> str:
    return uuid4().hex


@dataclass(slots=True)
class RunMessage:
    """One history entry. ``data`` layout depends on ``type``.

    - human / supervisor: ``{"message": str}``
    - agent: ``{"message", "result", "issue", "invocations": [{"id", "toolName", "input"}]}``
    - agent-invalid: ``{"message", "details"}``
    - invocation-result: ``{"id": tool call id, "toolName", "resultType", "result": {id: payload}}``
    """

    type: MessageType
    data: dict[str, Any]
    id: str = field(default_factory=new_message_id)
    persisted: bool = False
    created_at: datetime | None = None

    @property
    def invocations(self) -> list[dict[str, Any]]:
        if self.type is not MessageType.AGENT:
            return []
        return list(self.data.get("invocations") or [])

    @property
    def has_invocations(self) -> bool:
        return bool(self.invocations)


@dataclass(slots=True)
class StatusChangeHandler:
    """Notification fired when a run reaches one of ``statuses``.

    ``type`` is ``webhook`` (``target`` is a URL) or ``tool`` (``target`` is a
    tool name called on the cluster's background run).
    """

    type: str
    target: str
    statuses: tuple[RunStatus, ...] = (RunStatus.DONE, RunStatus.FAILED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "target": self.target,
            "statuses": [status.value for status in self.statuses],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> StatusChangeHandler | None:
        if not payload:
            return None
        raw_statuses = payload.get("statuses")
        if not raw_statuses:
            return cls(type=str(payload["type"]), target=str(payload["target"]))
        return cls(
            type=str(payload["type"]),
            target=str(payload["target"]),
            statuses=tuple(RunStatus(value) for value in raw_statuses),
        )


@dataclass(slots=True)
class RunCreate:
    """Input payload for run creation."""

    cluster_id: str
    run_id: str | None = None
    name: str | None = None
    attached_functions: tuple[str, ...] | None = None
    result_schema: dict[str, Any] | None = None
    interactive: bool = True
    system_prompt: str | None = None
    on_status_change: StatusChangeHandler | None = None
    tags: dict[str, str] | None = None
    owner_id: str | None = None
    auth_context: dict[str, Any] | None = None
    context: dict[str, Any] | None = None
    initial_message: str | None = None


@dataclass(slots=True)
class RunView:
    cluster_id: str
    id: str
    name: str | None
    status: RunStatus
    failure_reason: str | None
    attached_functions: tuple[str, ...] | None
    result_schema: dict[str, Any] | None
    interactive: bool
    system_prompt: str | None
    on_status_change: StatusChangeHandler | None
    tags: dict[str, str] | None
    owner_id: str | None
    auth_context: dict[str, Any] | None
    context: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class CreatedRun:
    run: RunView
    created: bool


@dataclass(slots=True)
class RunDetails:
    run: RunView
    messages: list[RunMessage]
    result: Any
    waiting_job_ids: list[str]
