from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_relay.config import Settings

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Configuration"),
]


def test_from_env_uses_development_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "AGENT_RELAY_DB_PATH",
        "AGENT_RELAY_CLUSTER_ID",
        "AGENT_RELAY_MAX_POLL_LIMIT",
        "AGENT_RELAY_APPROVAL_WEBHOOK_URL",
        "AGENT_RELAY_MODEL_COMMAND",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".agent_relay.db")
    assert settings.cluster.cluster_id == "default"
    assert settings.jobs.max_poll_limit == 50
    assert settings.jobs.default_retry_count_on_stall == 0
    assert settings.supervisor.interrupt_recover_after_seconds == 300
    assert settings.runs.lock_max_attempts == 5
    assert settings.notifications.approval_webhook_url is None
    assert settings.reasoning.command_template is None
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_RELAY_CLUSTER_ID", "acme")
    monkeypatch.setenv("AGENT_RELAY_MAX_POLL_LIMIT", "7")
    monkeypatch.setenv("AGENT_RELAY_RUN_LOCK_BACKOFF_BASE_SECONDS", "3")
    monkeypatch.setenv("AGENT_RELAY_APPROVAL_WEBHOOK_URL", "https://hooks.example.com/approve")
    monkeypatch.setenv("AGENT_RELAY_MODEL_COMMAND", "agent --prompt-file {prompt_file}")

    settings = Settings.from_env(db_path=tmp_path / "custom.db")

    assert settings.db_path == tmp_path / "custom.db"
    assert settings.cluster.cluster_id == "acme"
    assert settings.jobs.max_poll_limit == 7
    assert settings.runs.lock_backoff_base_seconds == 3.0
    assert settings.notifications.approval_webhook_url == "https://hooks.example.com/approve"
    assert settings.reasoning.command_template == "agent --prompt-file {prompt_file}"
    settings.validate()


@pytest.mark.parametrize(
    ("variable", "value", "message"),
    [
        ("AGENT_RELAY_MAX_POLL_LIMIT", "0", "AGENT_RELAY_MAX_POLL_LIMIT"),
        ("AGENT_RELAY_LONG_POLL_INTERVAL_SECONDS", "0", "AGENT_RELAY_LONG_POLL_INTERVAL_SECONDS"),
        ("AGENT_RELAY_INTERRUPT_ABANDON_AFTER_SECONDS", "60", "ABANDON_AFTER"),
        ("AGENT_RELAY_EVENT_WRITE_RETRIES", "0", "AGENT_RELAY_EVENT_WRITE_RETRIES"),
        ("AGENT_RELAY_APPROVAL_WEBHOOK_URL", "ftp://example.com", "APPROVAL_WEBHOOK_URL"),
    ],
)
def test_validate_rejects_unusable_values(
    monkeypatch: pytest.MonkeyPatch,
    variable: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(variable, value)

    settings = Settings.from_env()

    with pytest.raises(ValueError, match=message):
        settings.validate()
