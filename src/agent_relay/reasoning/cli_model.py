"""Reasoning capability backed by an external CLI agent.

The command template is rendered with shell-quoted ``{prompt}``,
``{prompt_file}`` and ``{schema_file}`` placeholders, run as a subprocess, and
the structured step output is recovered from its stdout.
"""

from __future__ import annotations

import json
import logging
import re
import shlex
import subprocess
import tempfile
from pathlib import Path
from typing import Any

from agent_relay.errors import AgentError
from agent_relay.reasoning.base import ReasoningRequest

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)


class CliReasoningModel:
    """Runs one CLI agent invocation per reasoning step."""

    def __init__(self, *, command_template: str, timeout_seconds: int = 300) -> None:
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds

    def invoke(self, request: ReasoningRequest) -> dict[str, Any] | None:
        prompt = render_prompt(request)
        with tempfile.TemporaryDirectory(prefix="agent-relay-") as workdir:
            prompt_file = Path(workdir) / "prompt.txt"
            schema_file = Path(workdir) / "output_schema.json"
            prompt_file.write_text(prompt, "utf-8")
            schema_file.write_text(json.dumps(request.output_schema, indent=2), "utf-8")
            argv = build_run_args(
                command_template=self.command_template,
                prompt=prompt,
                prompt_file=prompt_file,
                schema_file=schema_file,
            )
            try:
                completed = subprocess.run(  # noqa: S603
                    argv,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout_seconds,
                    check=False,
                )
            except FileNotFoundError as error:
                raise AgentError(f"Reasoning command not found: {argv[0]}") from error
            except subprocess.TimeoutExpired as error:
                raise AgentError(
                    f"Reasoning command timed out after {self.timeout_seconds}s",
                ) from error

        if completed.returncode != 0:
            logger.warning(
                "Reasoning command exited with %d: %s",
                completed.returncode,
                completed.stderr.strip()[:500],
            )
            raise AgentError(f"Reasoning command failed with exit code {completed.returncode}")
        return parse_json_payload(completed.stdout)


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    schema_file: Path,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise AgentError("Reasoning command template is empty.")
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise AgentError("Reasoning command template must include {prompt} or {prompt_file}.")
    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            schema_file=shlex.quote(str(schema_file)),
        )
    except KeyError as error:
        raise AgentError(f"Unsupported command template placeholder: {error}") from error
    argv = shlex.split(rendered)
    if not argv:
        raise AgentError("Reasoning command template rendered empty command.")
    return argv


def render_prompt(request: ReasoningRequest) -> str:
    lines = [request.system_prompt, "", "<MESSAGES>"]
    for message in request.messages:
        lines.append(
            json.dumps({"type": message.type.value, "data": message.data}, ensure_ascii=False),
        )
    lines.extend(
        [
            "</MESSAGES>",
            "",
            "Reply with a single JSON object matching this schema:",
            json.dumps(request.output_schema, ensure_ascii=False),
        ],
    )
    return "\n".join(lines)


def parse_json_payload(text: str) -> dict[str, Any] | None:
    """Recover a JSON object from stdout: whole text, fenced block, or outer braces."""

    stripped = text.strip()
    if not stripped:
        return None
    direct = _try_load_dict(stripped)
    if direct is not None:
        return direct

    fenced = _FENCED_JSON.search(stripped)
    if fenced is not None:
        payload = _try_load_dict(fenced.group(1))
        if payload is not None:
            return payload

    start = stripped.find("{")
    end = stripped.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return _try_load_dict(stripped[start : end + 1])


def _try_load_dict(raw: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed
