"""Readiness checks for providers backed by an external CLI."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from .utils import augmented_path, sanitize_environment

logger = logging.getLogger(__name__)

AuthSource = Literal["cli_login", "env", "config_file", "missing"]

CREDENTIAL_FILE_NAMES = (
    "config.json",
    "settings.json",
    "credentials.json",
    ".credentials.json",
    "auth.json",
    ".auth.json",
    "session.json",
)
MAX_SCAN_BYTES = 1024 * 1024
_TOKEN_KEY = re.compile(r"^([a-z]+_)?(api[_-]?key|token|access[_-]?token)$", re.IGNORECASE)


@dataclass(slots=True)
class ProviderProbe:
    """What to look for when checking one provider."""

    provider: str
    command: str
    identity_args: tuple[str, ...]
    env_var: str
    config_dirs: tuple[Path, ...]
    install_hint: str
    login_hint: str


@dataclass(slots=True)
class PreflightResult:
    provider: str
    ready: bool
    cli_path: str | None
    auth_source: AuthSource
    instructions: list[str] = field(default_factory=list)
    diagnostics: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "ready": self.ready,
            "cli_path": self.cli_path,
            "auth_source": self.auth_source,
            "instructions": list(self.instructions),
            "diagnostics": dict(self.diagnostics),
        }


def default_probes(*, claude_command: str = "claude", cursor_command: str = "agent") -> dict[str, ProviderProbe]:
    home = Path.home()
    return {
        "claude": ProviderProbe(
            provider="claude",
            command=claude_command,
            identity_args=("--version",),
            env_var="ANTHROPIC_API_KEY",
            config_dirs=(
                home / ".claude",
                home / ".config" / "claude",
                home / "Library" / "Application Support" / "Claude",
            ),
            install_hint="Install the Claude Code CLI: npm install -g @anthropic-ai/claude-code",
            login_hint="Run `claude` once and complete `/login` to authenticate the CLI (preferred).",
        ),
        "cursor": ProviderProbe(
            provider="cursor",
            command=cursor_command,
            identity_args=("status",),
            env_var="CURSOR_API_KEY",
            config_dirs=(
                home / ".cursor",
                home / ".config" / "cursor",
                home / "Library" / "Application Support" / "Cursor",
            ),
            install_hint="Install the Cursor agent CLI: curl https://cursor.com/install -fsS | bash",
            login_hint="Run `agent login` to authenticate the CLI (preferred).",
        ),
    }


def locate_cli(command: str) -> str | None:
    candidate = Path(command).expanduser()
    if "/" in command:
        return str(candidate) if candidate.is_file() else None
    return shutil.which(command, path=augmented_path())


async def probe_identity(cli_path: str, args: tuple[str, ...], *, timeout: float) -> bool:
    """Run a cheap identity command; any failure or timeout counts as not logged in."""

    try:
        process = await asyncio.create_subprocess_exec(
            cli_path,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(),
        )
    except OSError as exc:
        logger.debug("Identity probe could not start", extra={"cli": cli_path, "error": str(exc)})
        return False

    try:
        await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            pass
        return False
    return process.returncode == 0


def find_token(document: Any) -> str | None:
    """Depth-first search for a credential-looking string in parsed config."""

    if isinstance(document, dict):
        for key, value in document.items():
            if isinstance(value, str) and _TOKEN_KEY.match(str(key)) and len(value.strip()) >= 20:
                return value.strip()
        for value in document.values():
            found = find_token(value)
            if found:
                return found
    elif isinstance(document, list):
        for item in document:
            found = find_token(item)
            if found:
                return found
    return None


def hydrate_credential(config_dirs: list[Path], env_var: str) -> str | None:
    """Copy a token found in local CLI config into ``env_var``; return the source file."""

    for directory in config_dirs:
        known = [directory / name for name in CREDENTIAL_FILE_NAMES]
        extra = sorted(
            path
            for pattern in ("*.json", "*.txt")
            for path in directory.glob(pattern)
            if path not in known
        )
        for path in [*known, *extra]:
            try:
                if not path.is_file() or path.stat().st_size > MAX_SCAN_BYTES:
                    continue
                raw = path.read_text(encoding="utf-8")
            except OSError:
                continue

            token: str | None
            if path.suffix == ".json":
                try:
                    token = find_token(json.loads(raw))
                except json.JSONDecodeError:
                    continue
            else:
                stripped = raw.strip()
                token = stripped if len(stripped) >= 20 and " " not in stripped else None

            if token:
                os.environ[env_var] = token
                return str(path)
    return None


async def run_preflight(probe: ProviderProbe, *, timeout: float = 1.5) -> PreflightResult:
    """Check whether ``probe.provider`` can run on this machine."""

    instructions: list[str] = []
    cli_path = locate_cli(probe.command)
    has_env_key = bool(os.environ.get(probe.env_var))
    existing_dirs = [directory for directory in probe.config_dirs if directory.is_dir()]

    if cli_path is None:
        instructions.append(probe.install_hint)
        instructions.append("After installing, restart the Conductor server so it picks up the new PATH.")

    cli_login = False
    detection = "none"
    if cli_path is not None:
        if await probe_identity(cli_path, probe.identity_args, timeout=timeout):
            cli_login = True
            detection = "identity_command"
        elif any(any(directory.iterdir()) for directory in existing_dirs):
            cli_login = True
            detection = "config_files"

    hydrated_from: str | None = None
    if not has_env_key:
        hydrated_from = hydrate_credential(existing_dirs, probe.env_var)

    auth_source: AuthSource
    if cli_login:
        auth_source = "cli_login"
    elif has_env_key:
        auth_source = "env"
    elif hydrated_from:
        auth_source = "config_file"
    else:
        auth_source = "missing"

    ready = cli_path is not None and auth_source != "missing"

    if not cli_login:
        instructions.append(probe.login_hint)
    if not os.environ.get(probe.env_var):
        instructions.append(f"Alternatively, set `{probe.env_var}` in your environment.")
    if not ready:
        instructions.append("After fixing auth/install, run provider_preflight again to re-check readiness.")

    result = PreflightResult(
        provider=probe.provider,
        ready=ready,
        cli_path=cli_path,
        auth_source=auth_source,
        instructions=instructions if not ready else [],
        diagnostics={
            "has_env_key": has_env_key,
            "cli_login_detected": cli_login,
            "cli_login_detection_method": detection,
            "hydrated_from": hydrated_from,
            "config_dirs": [str(directory) for directory in existing_dirs],
        },
    )
    logger.info(
        "Provider preflight finished",
        extra={"provider": probe.provider, "ready": ready, "auth_source": auth_source},
    )
    return result


__all__ = [
    "PreflightResult",
    "ProviderProbe",
    "default_probes",
    "find_token",
    "hydrate_credential",
    "locate_cli",
    "probe_identity",
    "run_preflight",
]
