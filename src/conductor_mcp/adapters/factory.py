"""Provider resolution and adapter construction."""

from __future__ import annotations

from enum import Enum
from typing import Any

from ..config import ConductorSettings
from .base import CLIAdapter
from .claude_sdk import ClaudeSDKAdapter
from .cursor import CursorCLIAdapter
from .simulator import SimulatorAdapter


class Provider(str, Enum):
    SIMULATOR = "simulator"
    CLAUDE = "claude"
    CURSOR = "cursor"


DEFAULT_PROVIDER = Provider.SIMULATOR

# Older task records and UIs used these names.
_ALIASES = {"mock": Provider.SIMULATOR, "claude-sdk": Provider.CLAUDE, "cursor-agent": Provider.CURSOR}

PROVIDER_DISPLAY_NAMES = {
    Provider.SIMULATOR: "Simulator (no external calls)",
    Provider.CLAUDE: "Claude Agent SDK",
    Provider.CURSOR: "Cursor Agent CLI",
}


def resolve_provider(name: str | Provider | None) -> Provider:
    """Map any input onto a known provider, defaulting to the simulator."""

    if isinstance(name, Provider):
        return name
    normalized = (name or "").strip().lower()
    if not normalized:
        return DEFAULT_PROVIDER
    if normalized in _ALIASES:
        return _ALIASES[normalized]
    try:
        return Provider(normalized)
    except ValueError:
        return DEFAULT_PROVIDER


def requires_preflight(provider: Provider) -> bool:
    return provider is not Provider.SIMULATOR


def create_adapter(provider: Provider | str, settings: ConductorSettings, **overrides: Any) -> CLIAdapter:
    resolved = resolve_provider(provider)
    if resolved is Provider.CLAUDE:
        return ClaudeSDKAdapter(max_concurrent_agents=settings.max_concurrent_agents, **overrides)
    if resolved is Provider.CURSOR:
        return CursorCLIAdapter(
            command=settings.cursor_agent_command,
            model=settings.cursor_model,
            max_concurrent_agents=settings.max_concurrent_agents,
            **overrides,
        )
    return SimulatorAdapter(
        delay_scale=settings.simulator_delay_scale,
        max_concurrent_agents=settings.max_concurrent_agents,
        **overrides,
    )


def available_providers() -> list[dict[str, str]]:
    return [
        {"name": provider.value, "display_name": PROVIDER_DISPLAY_NAMES[provider]}
        for provider in Provider
    ]


__all__ = [
    "DEFAULT_PROVIDER",
    "Provider",
    "available_providers",
    "create_adapter",
    "requires_preflight",
    "resolve_provider",
]
