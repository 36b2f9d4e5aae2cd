from __future__ import annotations

import re
import sys
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner, Result

from agent_relay.main import agent_relay

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Jobs, Runs, Supervisor"),
]


@pytest.fixture()
def db_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.delenv("AGENT_RELAY_MODEL_COMMAND", raising=False)
    monkeypatch.delenv("AGENT_RELAY_APPROVAL_WEBHOOK_URL", raising=False)
    monkeypatch.setenv("AGENT_RELAY_CLUSTER_ID", "default")
    path = tmp_path / "cli.db"
    result = CliRunner().invoke(agent_relay, ["db", "init", "--db-path", str(path)])
    assert result.exit_code == 0, result.output
    return path


def _invoke(db_path: Path, *args: str) -> Result:
    group, command, *rest = args
    return CliRunner().invoke(agent_relay, [group, command, "--db-path", str(db_path), *rest])


def test_job_lifecycle_through_cli(db_path: Path) -> None:
    registered = _invoke(db_path, "tools", "register", "echo", "--timeout-seconds", "30")
    assert registered.exit_code == 0, registered.output
    assert "Tool registered: echo" in registered.output
    assert '"timeoutSeconds": 30' in registered.output

    created = _invoke(db_path, "jobs", "create", "echo", "--args", '{"msg": "hi"}', "--job-id", "j1")
    repeated = _invoke(db_path, "jobs", "create", "echo", "--args", '{"msg": "hi"}', "--job-id", "j1")
    assert "Job: j1 created=true" in created.output
    assert "Job: j1 created=false" in repeated.output

    polled = _invoke(db_path, "jobs", "poll", "--machine-id", "m1", "--tool", "echo")
    assert polled.exit_code == 0, polled.output
    assert "Claimed: 1" in polled.output
    assert "j1 tool=echo" in polled.output

    accepted = _invoke(
        db_path,
        "jobs",
        "result",
        "j1",
        "--machine-id",
        "m1",
        "--result",
        '{"msg": "hi"}',
    )
    rejected = _invoke(db_path, "jobs", "result", "j1", "--machine-id", "m2", "--result", "1")
    assert "Result accepted: j1 (204)" in accepted.output
    assert "Result rejected: j1 (409" in rejected.output

    inspected = _invoke(db_path, "jobs", "inspect", "j1")
    assert "Status: success" in inspected.output
    assert "Result type: resolution" in inspected.output
    assert 'Result: {"msg": "hi"}' in inspected.output

    listed = _invoke(db_path, "jobs", "list")
    assert "Jobs: 1" in listed.output


def test_invalid_json_arguments_are_a_cli_error(db_path: Path) -> None:
    _invoke(db_path, "tools", "register", "echo")

    result = _invoke(db_path, "jobs", "create", "echo", "--args", "{oops")

    assert result.exit_code != 0
    assert "--args is not valid JSON" in result.output


def test_unknown_job_is_a_cli_error(db_path: Path) -> None:
    result = _invoke(db_path, "jobs", "inspect", "missing")

    assert result.exit_code != 0
    assert "not found" in result.output


def test_supervisor_single_sweep(db_path: Path) -> None:
    result = CliRunner().invoke(
        agent_relay,
        ["supervisor", "run", "--db-path", str(db_path), "--once"],
    )

    assert result.exit_code == 0, result.output
    assert "stalled=0 recovered=0 failed=0" in result.output


def test_run_without_model_fails_and_reports_reason(db_path: Path) -> None:
    created = _invoke(db_path, "runs", "create", "--run-id", "r1", "--message", "Hello")

    assert created.exit_code == 0, created.output
    assert "Run: r1 created=true" in created.output
    assert "Status: failed" in created.output
    assert "No reasoning model configured" in created.output


def test_run_with_command_model_completes(
    db_path: Path,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    script = tmp_path / "fake_agent.py"
    script.write_text(
        "import json\nprint(json.dumps({'done': True, 'result': {'reply': 'hello'}}))\n",
        "utf-8",
    )
    monkeypatch.setenv("AGENT_RELAY_MODEL_COMMAND", f"{sys.executable} {script} {{prompt_file}}")

    created = _invoke(db_path, "runs", "create", "--message", "Greet me", "--no-process")
    match = re.search(r"Run: (\S+) created=true", created.output)
    assert match is not None, created.output
    assert "Status: pending" in created.output

    processed = _invoke(db_path, "runs", "process", match.group(1))
    assert processed.exit_code == 0, processed.output
    assert "Status: done" in processed.output
    assert 'Result: {"reply": "hello"}' in processed.output

    inspected = _invoke(db_path, "runs", "inspect", match.group(1))
    assert "Messages: 2" in inspected.output
    assert "  human:" in inspected.output
    assert "  agent:" in inspected.output
