from __future__ import annotations

import logging
import os
from pathlib import Path

import pytest

import ci_workflow.secrets as secrets
from ci_workflow.logs import MASK, MaskingFilter, SecretMasker


@pytest.fixture()
def isolated_secrets(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(secrets, "_secret_specs", {})
    monkeypatch.setattr(secrets, "_resolvers", [])
    secrets.register_resolver(secrets.EnvResolver(), priority=0, name="env", source="env")
    return secrets


def test_env_resolution(monkeypatch: pytest.MonkeyPatch, isolated_secrets) -> None:
    monkeypatch.setenv("CACHIX_AUTH_TOKEN", "from-env")
    info = isolated_secrets.resolve_secret_info("CACHIX_AUTH_TOKEN")
    assert info.value == "from-env"
    assert info.source == "env"


def test_dotenv_resolution_does_not_export(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, isolated_secrets) -> None:
    monkeypatch.delenv("CACHIX_SIGNING_KEY", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text('CACHIX_SIGNING_KEY="signing-key"\n')
    isolated_secrets.use_dotenv(env_file)

    info = isolated_secrets.resolve_secret_info("CACHIX_SIGNING_KEY")

    assert info.value == "signing-key"
    assert info.source == "dotenv"
    assert [attempt.resolver for attempt in info.attempts] == ["env", f"dotenv:{env_file}"]
    assert "CACHIX_SIGNING_KEY" not in os.environ


def test_env_wins_over_dotenv_and_mapping_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, isolated_secrets) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("TOKEN=dotenv-value\n")
    isolated_secrets.use_dotenv(env_file)
    monkeypatch.setenv("TOKEN", "env-value")
    assert isolated_secrets.resolve_secret("TOKEN") == "env-value"

    isolated_secrets.use_mapping({"TOKEN": "cli-value"})
    assert isolated_secrets.resolve_secret("TOKEN") == "cli-value"


def test_register_secret_merges_workflows(isolated_secrets) -> None:
    isolated_secrets.register_secret(secrets.SecretSpec(name="CACHIX_AUTH_TOKEN", workflows=("build holochain",)))
    isolated_secrets.register_secret(
        secrets.SecretSpec(name="CACHIX_AUTH_TOKEN", description="cache token", workflows=("holonix integration test",))
    )

    [spec] = isolated_secrets.list_secrets()
    assert spec.workflows == ("build holochain", "holonix integration test")
    assert spec.description == "cache token"


def test_describe_missing_secret(monkeypatch: pytest.MonkeyPatch, isolated_secrets) -> None:
    monkeypatch.delenv("MISSING_SECRET", raising=False)
    payload = isolated_secrets.describe_secret("MISSING_SECRET")
    assert payload["present"] is False
    assert payload["attempts"] == [{"resolver": "env", "source": "env", "success": False, "details": {"type": "env"}}]


def test_secrets_context_reads_missing_as_empty_and_reports_values(monkeypatch: pytest.MonkeyPatch, isolated_secrets) -> None:
    monkeypatch.setenv("CACHIX_AUTH_TOKEN", "abc-token")
    monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
    seen: list[str] = []
    context = isolated_secrets.SecretsContext(on_resolve=seen.append)

    assert "CACHIX_AUTH_TOKEN" in context
    assert context["CACHIX_AUTH_TOKEN"] == "abc-token"
    assert context["NOT_SET_ANYWHERE"] == ""
    assert context["CACHIX_AUTH_TOKEN"] == "abc-token"
    assert seen == ["abc-token"]


def test_masker_replaces_longest_values_first() -> None:
    masker = SecretMasker(["abc", "abcdef", "x"])
    assert masker.mask("token=abcdef and abc and x") == f"token={MASK} and {MASK} and x"


def test_masking_filter_rewrites_records() -> None:
    masker = SecretMasker(["hunter22"])
    record = logging.LogRecord("test", logging.INFO, __file__, 1, "password is %s", ("hunter22",), None)

    assert MaskingFilter(masker).filter(record)
    assert record.getMessage() == f"password is {MASK}"
