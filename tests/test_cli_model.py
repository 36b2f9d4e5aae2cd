from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from agent_relay.errors import AgentError
from agent_relay.reasoning.base import ReasoningRequest
from agent_relay.reasoning.cli_model import (
    CliReasoningModel,
    build_run_args,
    parse_json_payload,
    render_prompt,
)
from agent_relay.runs.models import MessageType, RunMessage

pytestmark = [
    allure.epic("Reasoning"),
    allure.feature("CLI Reasoning Model"),
]


def _request() -> ReasoningRequest:
    return ReasoningRequest(
        messages=[RunMessage(type=MessageType.HUMAN, data={"message": "What's 2+2?"})],
        tools=[],
        output_schema={"type": "object", "required": ["done"]},
        system_prompt="Be brief.",
    )


def test_build_run_args_quotes_placeholders(tmp_path: Path) -> None:
    argv = build_run_args(
        command_template="agent exec --schema {schema_file} {prompt}",
        prompt="it's a prompt",
        prompt_file=tmp_path / "prompt.txt",
        schema_file=tmp_path / "schema file.json",
    )

    assert argv == [
        "agent",
        "exec",
        "--schema",
        str(tmp_path / "schema file.json"),
        "it's a prompt",
    ]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("agent --schema {schema_file}", "must include"),
        ("agent {prompt} {model}", "placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(
    tmp_path: Path,
    template: str,
    message: str,
) -> None:
    with pytest.raises(AgentError, match=message):
        build_run_args(
            command_template=template,
            prompt="p",
            prompt_file=tmp_path / "p.txt",
            schema_file=tmp_path / "s.json",
        )


@pytest.mark.parametrize(
    ("stdout", "expected"),
    [
        ('{"done": true}', {"done": True}),
        ('Here you go:\n```json\n{"done": false}\n```\n', {"done": False}),
        ('noise {"done": true, "message": "4"} trailing', {"done": True, "message": "4"}),
        ("", None),
        ("[1, 2]", None),
        ("no json here", None),
    ],
)
def test_parse_json_payload(stdout: str, expected: dict[str, object] | None) -> None:
    assert parse_json_payload(stdout) == expected


def test_render_prompt_includes_history_and_schema() -> None:
    prompt = render_prompt(_request())

    assert prompt.startswith("Be brief.")
    assert '"type": "human"' in prompt
    assert json.dumps({"type": "object", "required": ["done"]}) in prompt


def test_invoke_reads_structured_output_from_stdout() -> None:
    model = CliReasoningModel(command_template='sh -c \'cat "$0"\' {schema_file} {prompt_file}')

    output = model.invoke(_request())

    assert output == {"type": "object", "required": ["done"]}


def test_invoke_maps_process_failures_to_agent_error() -> None:
    with pytest.raises(AgentError, match="not found"):
        CliReasoningModel(command_template="agent-relay-missing-binary {prompt}").invoke(
            _request(),
        )
    with pytest.raises(AgentError, match="exit code"):
        CliReasoningModel(command_template="false {prompt}").invoke(_request())
