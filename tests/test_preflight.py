from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from conductor_mcp.adapters.preflight import ProviderProbe, find_token, hydrate_credential, locate_cli, run_preflight

ENV_VAR = "CONDUCTOR_TEST_PROVIDER_KEY"
TOKEN = "tok_0123456789abcdefghijklmnop"


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # setenv first so the undo removes whatever hydration writes
    monkeypatch.setenv(ENV_VAR, "placeholder")
    monkeypatch.delenv(ENV_VAR)


def _cli(tmp_path: Path, exit_code: int) -> Path:
    script = tmp_path / "fake-cli"
    script.write_text(f"#!/bin/sh\nexit {exit_code}\n", encoding="utf-8")
    script.chmod(0o755)
    return script


def _probe(command: str, *config_dirs: Path) -> ProviderProbe:
    return ProviderProbe(
        provider="cursor",
        command=command,
        identity_args=("status",),
        env_var=ENV_VAR,
        config_dirs=tuple(config_dirs),
        install_hint="Install the fake CLI",
        login_hint="Log in to the fake CLI",
    )


def test_identity_command_means_cli_login(tmp_path: Path) -> None:
    script = _cli(tmp_path, 0)

    result = asyncio.run(run_preflight(_probe(str(script))))

    assert result.ready is True
    assert result.auth_source == "cli_login"
    assert result.cli_path == str(script)
    assert result.instructions == []
    assert result.diagnostics["cli_login_detection_method"] == "identity_command"


def test_missing_cli_reports_install_steps(tmp_path: Path) -> None:
    result = asyncio.run(run_preflight(_probe(str(tmp_path / "nowhere" / "cli"))))

    assert result.ready is False
    assert result.cli_path is None
    assert result.auth_source == "missing"
    assert result.instructions[0] == "Install the fake CLI"
    assert any(ENV_VAR in line for line in result.instructions)


def test_env_key_counts_when_cli_is_logged_out(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(ENV_VAR, TOKEN)
    script = _cli(tmp_path, 1)

    result = asyncio.run(run_preflight(_probe(str(script))))

    assert result.ready is True
    assert result.auth_source == "env"


def test_config_file_token_is_hydrated(tmp_path: Path) -> None:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "settings.json").write_text(json.dumps({"profile": {"apiKey": TOKEN}}), encoding="utf-8")

    source = hydrate_credential([config_dir], ENV_VAR)

    assert source == str(config_dir / "settings.json")
    import os

    assert os.environ[ENV_VAR] == TOKEN


def test_hydration_skips_short_values(tmp_path: Path) -> None:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "config.json").write_text(json.dumps({"token": "short"}), encoding="utf-8")
    (config_dir / "notes.txt").write_text("not a token at all", encoding="utf-8")

    assert hydrate_credential([config_dir], ENV_VAR) is None


def test_find_token_searches_nested_documents() -> None:
    document = {"accounts": [{"name": "work"}, {"auth": {"access_token": TOKEN}}]}

    assert find_token(document) == TOKEN
    assert find_token({"apiKey": "   "}) is None
    assert find_token(["plain", 3]) is None


def test_locate_cli_with_explicit_path(tmp_path: Path) -> None:
    script = _cli(tmp_path, 0)

    assert locate_cli(str(script)) == str(script)
    assert locate_cli(str(tmp_path / "missing")) is None
