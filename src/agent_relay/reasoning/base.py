"""Reasoning capability interface."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from agent_relay.errors import AgentError
from agent_relay.runs.models import RunMessage
from agent_relay.tools.registry import ToolDefinition


@dataclass(slots=True)
class ReasoningRequest:
    """Everything the model sees for one step."""

    messages: list[RunMessage]
    tools: list[ToolDefinition]
    output_schema: dict[str, Any]
    system_prompt: str


class ReasoningModel(Protocol):
    """Opaque synchronous call returning the structured step output."""

    def invoke(self, request: ReasoningRequest) -> dict[str, Any] | None:
        """Return the raw structured object, or ``None`` if the call produced nothing."""


class UnconfiguredModel:
    """Placeholder used when no reasoning command is configured."""

    def invoke(self, request: ReasoningRequest) -> dict[str, Any] | None:
        raise AgentError("No reasoning model configured, set AGENT_RELAY_MODEL_COMMAND.")
