"""One reasoning step: ask the model for the next action and record it."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from jsonschema import Draft202012Validator

from agent_relay.errors import AgentError
from agent_relay.reasoning.base import ReasoningModel, ReasoningRequest
from agent_relay.runs.models import MessageType, RunMessage, RunStatus, RunView, new_message_id
from agent_relay.tools.registry import ToolDefinition

logger = logging.getLogger(__name__)

INVALID_OUTPUT_MESSAGE = "Provided object was invalid, check your input"
MISSING_INVOCATION_MESSAGE = (
    "If you are not done, please provide an invocation, otherwise return done."
)
MISSING_RESULT_MESSAGE = "Please provide a final result or a reason for stopping."

_BASE_PROMPT = """You are a helpful assistant with access to a set of tools.
Work towards the goal described in the conversation. To call tools, return one
or more invocations and set done to false; the tool results are appended to the
conversation and you will be asked again. When the goal is reached, set done to
true and provide the final result. If you cannot make progress, set done to true
and describe the problem in issue."""


@dataclass(slots=True)
class ModelStepOutcome:
    messages: list[RunMessage]
    status: RunStatus


def build_output_schema(
    tools: Sequence[ToolDefinition],
    result_schema: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Structured output the model must return for a step."""

    properties: dict[str, Any] = {
        "done": {
            "type": "boolean",
            "description": "Whether the goal has been reached and no more tool calls are needed.",
        },
        "issue": {
            "type": "string",
            "description": "Any problem that prevents reaching the goal.",
        },
    }
    if result_schema is not None:
        properties["result"] = result_schema
    else:
        properties["result"] = {
            "type": "object",
            "description": "Structured final result, only when done.",
        }
        properties["message"] = {
            "type": "string",
            "description": "Final answer or progress note for the user.",
        }
    if tools:
        properties["invocations"] = {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "toolName": {"type": "string", "enum": [tool.name for tool in tools]},
                    "input": {"type": "object"},
                },
                "required": ["toolName", "input"],
                "additionalProperties": False,
            },
        }
    return {
        "type": "object",
        "properties": properties,
        "required": ["done"],
        "additionalProperties": False,
    }


def build_system_prompt(run: RunView, tools: Sequence[ToolDefinition]) -> str:
    lines = [_BASE_PROMPT]
    if run.system_prompt:
        lines.extend(["", "<INSTRUCTIONS>", run.system_prompt, "</INSTRUCTIONS>"])
    if run.context:
        lines.extend(
            ["", "<CONTEXT>", json.dumps(run.context, ensure_ascii=False), "</CONTEXT>"],
        )
    if tools:
        lines.extend(["", "<TOOLS>"])
        for tool in tools:
            lines.append(
                json.dumps(
                    {
                        "name": tool.name,
                        "description": tool.description or "",
                        "inputSchema": tool.schema or {"type": "object"},
                    },
                    ensure_ascii=False,
                ),
            )
        lines.append("</TOOLS>")
    return "\n".join(lines)


def check_cycles(messages: Sequence[RunMessage], *, max_messages: int, window: int) -> None:
    """Raise ``AgentError`` when the history is too long or makes no progress."""

    if len(messages) >= max_messages:
        raise AgentError("Maximum workflow message length exceeded.")
    if len(messages) < window:
        return
    progress_types = {MessageType.INVOCATION_RESULT, MessageType.HUMAN}
    if not any(message.type in progress_types for message in messages[-window:]):
        raise AgentError("Detected cycle in workflow.")


class ModelStep:
    """Invokes the reasoning capability and turns its output into history entries."""

    def __init__(
        self,
        *,
        model: ReasoningModel,
        max_messages: int = 100,
        cycle_window: int = 10,
    ) -> None:
        self.model = model
        self.max_messages = max_messages
        self.cycle_window = cycle_window

    def run(
        self,
        *,
        run: RunView,
        messages: Sequence[RunMessage],
        tools: Sequence[ToolDefinition],
    ) -> ModelStepOutcome:
        check_cycles(messages, max_messages=self.max_messages, window=self.cycle_window)

        schema = build_output_schema(tools, run.result_schema)
        output = self.model.invoke(
            ReasoningRequest(
                messages=list(messages),
                tools=list(tools),
                output_schema=schema,
                system_prompt=build_system_prompt(run, tools),
            ),
        )

        errors = _schema_errors(schema, output)
        if output is None or errors:
            logger.info(
                "Model returned invalid output (cluster=%s run_id=%s): %s",
                run.cluster_id,
                run.id,
                "; ".join(errors) or "empty output",
            )
            return _correction(output, INVALID_OUTPUT_MESSAGE, details=errors)

        data = dict(output)
        invocations = list(data.get("invocations") or [])
        done = bool(data.get("done"))

        if done and invocations:
            # Tool calls win over a premature final answer.
            data["result"] = None
            data["message"] = None
            done = False
        if not done and not invocations:
            return _correction(output, MISSING_INVOCATION_MESSAGE)
        if done and data.get("result") is None and not data.get("message"):
            return _correction(output, MISSING_RESULT_MESSAGE)

        agent_message = RunMessage(
            type=MessageType.AGENT,
            data={
                "done": done,
                "issue": data.get("issue"),
                "result": data.get("result"),
                "message": data.get("message"),
                "invocations": [
                    {
                        "id": new_message_id(),
                        "toolName": invocation["toolName"],
                        "input": invocation.get("input") or {},
                    }
                    for invocation in invocations
                ],
            },
        )
        return ModelStepOutcome(
            messages=[agent_message],
            status=RunStatus.DONE if done else RunStatus.RUNNING,
        )


def _schema_errors(schema: dict[str, Any], output: Any) -> list[str]:
    if output is None:
        return []
    validator = Draft202012Validator(schema)
    return [
        f"{'/'.join(str(part) for part in error.absolute_path) or '<root>'}: {error.message}"
        for error in sorted(
            validator.iter_errors(output),
            key=lambda item: [str(part) for part in item.absolute_path],
        )
    ]


def _correction(
    output: Any,
    supervisor_message: str,
    *,
    details: list[str] | None = None,
) -> ModelStepOutcome:
    invalid_data: dict[str, Any] = {"message": supervisor_message, "output": output}
    if details:
        invalid_data["details"] = details
    return ModelStepOutcome(
        messages=[
            RunMessage(type=MessageType.AGENT_INVALID, data=invalid_data),
            RunMessage(type=MessageType.SUPERVISOR, data={"message": supervisor_message}),
        ],
        status=RunStatus.RUNNING,
    )
