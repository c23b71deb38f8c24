"""Agent backends behind one streaming contract."""

from .base import (
    AdapterCapabilities,
    AdapterConfig,
    AdapterError,
    AdapterNotReadyError,
    CLIAdapter,
    ExecuteRequest,
    StreamEvent,
    StreamEventType,
)
from .claude_sdk import ClaudeSDKAdapter
from .cursor import CursorCLIAdapter
from .factory import Provider, available_providers, create_adapter, resolve_provider
from .preflight import PreflightResult, run_preflight
from .simulator import SimulatorAdapter

__all__ = [
    "AdapterCapabilities",
    "AdapterConfig",
    "AdapterError",
    "AdapterNotReadyError",
    "CLIAdapter",
    "ClaudeSDKAdapter",
    "CursorCLIAdapter",
    "ExecuteRequest",
    "PreflightResult",
    "Provider",
    "SimulatorAdapter",
    "StreamEvent",
    "StreamEventType",
    "available_providers",
    "create_adapter",
    "resolve_provider",
    "run_preflight",
]
