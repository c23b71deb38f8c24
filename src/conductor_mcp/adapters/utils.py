"""Utility helpers shared by the agent adapters."""

from __future__ import annotations

import asyncio
import os
import re
from pathlib import Path
from typing import Iterable, Mapping

from ..memory.models import ContextData

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}

# Values used to mean "authenticated through the CLI login", never real keys.
PLACEHOLDER_CREDENTIALS = frozenset({"", "cli-login", "cursor-cli-login", "simulator-key", "mock-key"})

COMMON_CLI_DIRS = (
    Path.home() / ".local" / "bin",
    Path.home() / ".npm-global" / "bin",
    Path.home() / ".bun" / "bin",
    Path.home() / ".cargo" / "bin",
    Path.home() / ".claude" / "local",
    Path("/usr/local/bin"),
    Path("/opt/homebrew/bin"),
)

_ANSI_PATTERN = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")

PLANNING_MARKERS = ("PLANNING PHASE", "Question Generation", "PLAN GENERATION")
SUBTASK_MARKERS = ("SUBTASK GENERATION",)


def sanitize_environment(
    additional: Mapping[str, str] | None = None,
    *,
    drop: Iterable[str] = (),
) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in (*_SANITIZED_VARS, *drop):
        env.pop(key, None)
    env["PATH"] = augmented_path(env.get("PATH"))
    if additional:
        env.update(additional)
    return env


def augmented_path(current: str | None = None) -> str:
    """Append common CLI install directories to a PATH string."""

    raw = current if current is not None else os.environ.get("PATH", "")
    parts = [part for part in raw.split(os.pathsep) if part]
    for directory in COMMON_CLI_DIRS:
        if str(directory) not in parts:
            parts.append(str(directory))
    return os.pathsep.join(parts)


def is_real_credential(value: str | None) -> bool:
    return bool(value) and value not in PLACEHOLDER_CREDENTIALS


def strip_ansi(text: str) -> str:
    return _ANSI_PATTERN.sub("", text)


def is_planning_prompt(prompt: str) -> bool:
    return any(marker in prompt for marker in PLANNING_MARKERS)


def is_subtask_prompt(prompt: str) -> bool:
    return any(marker in prompt for marker in SUBTASK_MARKERS)


def build_context_prompt(prompt: str, context: ContextData | None) -> str:
    """Prefix ``prompt`` with a rendered memory section."""

    if context is None or context.is_empty():
        return prompt

    sections = ["# Context from Memory System\n"]

    if context.patterns:
        sections.append("## Learned Patterns\n")
        by_category: dict[str, list[str]] = {}
        for pattern in context.patterns:
            entry = f"- {pattern.description}"
            if pattern.example:
                entry += f"\n  Example: {pattern.example}"
            by_category.setdefault(pattern.category, []).append(entry)
        for category, entries in by_category.items():
            sections.append(f"### {category}\n" + "\n".join(entries) + "\n")

    if context.gotchas:
        sections.append("## Known Issues\n")
        for gotcha in context.gotchas:
            entry = f"- **Issue:** {gotcha.issue}\n  **Solution:** {gotcha.solution}"
            if gotcha.context:
                entry += f"\n  Context: {gotcha.context}"
            sections.append(entry)
        sections.append("")

    if context.history:
        sections.append("## Recent History\n")
        for item in context.history[-5:]:
            outcome = "Success" if item.success else "Failed"
            sections.append(
                f"- Task {item.task_id} ({item.phase}): {outcome} in {item.duration_ms}ms"
            )
        sections.append("")

    return "\n".join(sections) + "\n---\n\n# User Request\n\n" + prompt


async def terminate_process(process: asyncio.subprocess.Process, *, grace: float = 2.0) -> None:
    """Send SIGTERM and reap ``process``, escalating to SIGKILL after ``grace`` seconds."""

    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
    except asyncio.TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


__all__ = [
    "COMMON_CLI_DIRS",
    "PLACEHOLDER_CREDENTIALS",
    "augmented_path",
    "build_context_prompt",
    "is_planning_prompt",
    "is_real_credential",
    "is_subtask_prompt",
    "sanitize_environment",
    "strip_ansi",
    "terminate_process",
]
