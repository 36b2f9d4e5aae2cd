"""Deterministic reasoning model replaying prepared step outputs."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from typing import Any

from agent_relay.errors import AgentError
from agent_relay.reasoning.base import ReasoningRequest

ScriptedStep = dict[str, Any] | Callable[[ReasoningRequest], dict[str, Any] | None]


class ScriptedModel:
    """Returns queued outputs in order; callables receive the request."""

    def __init__(self, steps: Iterable[ScriptedStep] = ()) -> None:
        self._steps = list(steps)
        self._lock = threading.Lock()
        self.requests: list[ReasoningRequest] = []

    def add(self, step: ScriptedStep) -> None:
        with self._lock:
            self._steps.append(step)

    @property
    def remaining(self) -> int:
        with self._lock:
            return len(self._steps)

    def invoke(self, request: ReasoningRequest) -> dict[str, Any] | None:
        with self._lock:
            self.requests.append(request)
            if not self._steps:
                raise AgentError("Scripted model has no more responses.")
            step = self._steps.pop(0)
        if callable(step):
            return step(request)
        return dict(step)
