"""In-process backend driving the Claude Agent SDK."""

from __future__ import annotations

import logging
from fnmatch import fnmatchcase
from typing import Any, AsyncIterator, Callable

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    PermissionResultAllow,
    PermissionResultDeny,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolUseBlock,
)

from .base import (
    AdapterCapabilities,
    AdapterConfig,
    AdapterNotReadyError,
    CLIAdapter,
    ExecuteRequest,
    StreamEvent,
    StreamEventType,
)
from .utils import build_context_prompt, is_planning_prompt, is_real_credential

logger = logging.getLogger(__name__)

PLANNING_READ_ONLY_MESSAGE = (
    "Planning phase is read-only. Do not modify files or run commands until the plan is approved."
)

# First matching rule wins; anything unmatched is rejected.
READ_ONLY_RULES: tuple[dict[str, Any], ...] = (
    {"tool": "Read", "action": "allow"},
    {"tool": "Glob", "action": "allow"},
    {"tool": "Grep", "action": "allow"},
    {"tool": "LS", "action": "allow"},
    {"tool": "Write", "action": "reject", "message": PLANNING_READ_ONLY_MESSAGE},
    {"tool": "Edit", "action": "reject", "message": PLANNING_READ_ONLY_MESSAGE},
    {"tool": "MultiEdit", "action": "reject", "message": PLANNING_READ_ONLY_MESSAGE},
    {"tool": "NotebookEdit", "action": "reject", "message": PLANNING_READ_ONLY_MESSAGE},
    {"tool": "Bash", "action": "reject", "message": PLANNING_READ_ONLY_MESSAGE},
    {"tool": "*", "action": "reject", "message": PLANNING_READ_ONLY_MESSAGE},
)

ClientFactory = Callable[[ClaudeAgentOptions], Any]


def evaluate_permission(
    rules: tuple[dict[str, Any], ...] | list[dict[str, Any]],
    tool_name: str,
    *,
    default_allow: bool,
) -> tuple[bool, str | None]:
    """Return ``(allowed, message)`` for ``tool_name`` under ``rules``."""

    for rule in rules:
        if fnmatchcase(tool_name, str(rule.get("tool", ""))):
            allowed = rule.get("action", "allow") == "allow"
            return allowed, None if allowed else rule.get("message")
    return default_allow, None if default_allow else f"Tool '{tool_name}' is not permitted"


class ClaudeSDKAdapter(CLIAdapter):
    """Translate Claude Agent SDK messages into stream events."""

    name = "claude"
    display_name = "Claude Agent SDK"
    thread_prefix = "claude"

    def __init__(
        self,
        *,
        client_factory: ClientFactory | None = None,
        max_concurrent_agents: int = 12,
    ) -> None:
        super().__init__()
        self._client_factory = client_factory or (lambda options: ClaudeSDKClient(options=options))
        self._max_concurrent = max_concurrent_agents
        self._clients: dict[str, Any] = {}
        self._sdk_sessions: dict[str, str] = {}

    async def initialize(self, config: AdapterConfig) -> None:
        if not config.working_dir.exists():
            raise AdapterNotReadyError(
                f"Working directory {config.working_dir} does not exist",
                ["Create the worktree before starting an agent on it."],
            )
        await super().initialize(config)

    def build_options(self, request: ExecuteRequest, thread_id: str) -> ClaudeAgentOptions:
        config = self.config
        env: dict[str, str] = {}
        if is_real_credential(config.credential):
            env["ANTHROPIC_API_KEY"] = config.credential

        options: dict[str, Any] = {
            "cwd": str(self.working_dir_for(thread_id)),
            "env": env,
        }
        if config.model:
            options["model"] = config.model
        if thread_id in self._sdk_sessions:
            options["resume"] = self._sdk_sessions[thread_id]

        if is_planning_prompt(request.prompt):
            options["permission_mode"] = "default"
            options["allowed_tools"] = ["Read", "Glob", "Grep", "LS"]
            options["disallowed_tools"] = ["Write", "Edit", "MultiEdit", "NotebookEdit", "Bash"]
            options["can_use_tool"] = self._permission_callback(READ_ONLY_RULES, default_allow=False)
        else:
            rules = request.permissions or config.permissions
            if rules:
                options["permission_mode"] = "default"
                options["can_use_tool"] = self._permission_callback(tuple(rules), default_allow=True)
            else:
                options["permission_mode"] = "bypassPermissions"

        return ClaudeAgentOptions(**options)

    @staticmethod
    def _permission_callback(rules: tuple[dict[str, Any], ...], *, default_allow: bool):
        async def _can_use_tool(tool_name: str, tool_input: dict[str, Any], context: Any):
            allowed, message = evaluate_permission(rules, tool_name, default_allow=default_allow)
            if allowed:
                return PermissionResultAllow()
            logger.info("Rejected tool use", extra={"tool": tool_name})
            return PermissionResultDeny(message=message or "Tool use rejected")

        return _can_use_tool

    async def _stream(self, request: ExecuteRequest, thread_id: str) -> AsyncIterator[StreamEvent]:
        prompt = build_context_prompt(request.prompt, request.context)
        client = self._client_factory(self.build_options(request, thread_id))
        self._clients[thread_id] = client
        try:
            async with client:
                await client.query(prompt)
                async for message in client.receive_response():
                    for event in self._translate(message, thread_id):
                        yield event
        finally:
            self._clients.pop(thread_id, None)

    def _translate(self, message: Any, thread_id: str) -> list[StreamEvent]:
        if isinstance(message, SystemMessage):
            data = dict(getattr(message, "data", {}) or {})
            if message.subtype == "init" and data.get("session_id"):
                self._sdk_sessions[thread_id] = data["session_id"]
            return [self.event(StreamEventType.SYSTEM, thread_id, subtype=message.subtype, data=data)]

        if isinstance(message, AssistantMessage):
            events: list[StreamEvent] = []
            text_parts: list[str] = []
            for block in message.content:
                if isinstance(block, TextBlock):
                    text_parts.append(block.text)
                elif isinstance(block, ToolUseBlock):
                    events.append(
                        self.event(
                            StreamEventType.TOOL,
                            thread_id,
                            tool=block.name,
                            input=block.input,
                            call_id=block.id,
                        )
                    )
            if text_parts:
                events.insert(0, self.event(StreamEventType.ASSISTANT, thread_id, content="".join(text_parts)))
            return events

        if isinstance(message, ResultMessage):
            if message.session_id:
                self._sdk_sessions[thread_id] = message.session_id
            output = message.result or ""
            if message.is_error:
                return [
                    self.event(
                        StreamEventType.ERROR,
                        thread_id,
                        error=output or f"Claude run ended with {message.subtype}",
                        subtype=message.subtype,
                    )
                ]
            return [
                self.event(
                    StreamEventType.RESULT,
                    thread_id,
                    success=True,
                    message=message.subtype,
                    output=output,
                    num_turns=message.num_turns,
                    cost_usd=message.total_cost_usd,
                )
            ]

        # User echoes and tool results carry nothing the event log needs.
        return []

    async def stop_thread(self, thread_id: str) -> None:
        client = self._clients.get(thread_id)
        if client is None:
            return
        try:
            await client.interrupt()
        except Exception as exc:
            logger.debug("Interrupt failed", extra={"thread_id": thread_id, "error": str(exc)})

    def get_capabilities(self) -> AdapterCapabilities:
        return AdapterCapabilities(
            supports_threads=True,
            supported_modes=("smart", "rush"),
            max_concurrent_agents=self._max_concurrent,
            supports_permissions=True,
        )


__all__ = ["ClaudeSDKAdapter", "READ_ONLY_RULES", "evaluate_permission"]
