"""Deterministic in-process backend used for workflow testing."""

from __future__ import annotations

import asyncio
import json
from collections import deque
from typing import AsyncIterator, Iterable

from .base import (
    AdapterCapabilities,
    CLIAdapter,
    ExecuteRequest,
    StreamEvent,
    StreamEventType,
)
from .utils import is_planning_prompt, is_subtask_prompt

SIMULATED_TOOLS = ("read_file", "write_file", "bash", "search")

SIMULATED_PLAN = """# Implementation Plan

## Overview
Deliver the requested change in small, reviewable steps inside the task worktree.

## Technical Approach
Extend the existing modules rather than introducing new layers, keeping public interfaces stable.

## Implementation Steps
1. Read the affected modules and note the current behaviour.
2. Implement the change behind the existing interfaces.
3. Add or update tests that cover the new behaviour.

## Files to Modify
- `src/app/main.py`
- `tests/test_main.py`

## Testing Strategy
Run the unit test suite and add focused tests for the new code paths.

## Potential Issues
Existing callers may depend on undocumented behaviour; keep the old defaults.

## Success Criteria
All tests pass and the new behaviour is covered by at least one test.
"""

SIMULATED_QUESTIONS = {
    "questions": [
        {
            "id": "q1",
            "question": "Which area should the change prioritise?",
            "options": ["Correctness", "Performance", "Developer experience"],
            "required": True,
            "order": 1,
        },
        {
            "id": "q2",
            "question": "How should failures be reported?",
            "options": ["Raise exceptions", "Return error values", "Log and continue"],
            "required": True,
            "order": 2,
        },
    ]
}

SIMULATED_SUBTASKS = {
    "subtasks": [
        {
            "id": "subtask-1",
            "content": "Read the affected modules and document the current behaviour in the task notes",
            "label": "Survey current code",
            "activeForm": "Surveying current code",
            "type": "dev",
        },
        {
            "id": "subtask-2",
            "content": "Implement the change in src/app/main.py behind the existing public interface",
            "label": "Implement change",
            "activeForm": "Implementing change",
            "type": "dev",
        },
        {
            "id": "subtask-qa-1",
            "content": "Run the test suite and report any failures without changing production code",
            "label": "Verify tests pass",
            "activeForm": "Verifying tests pass",
            "type": "qa",
        },
    ]
}


def canned_response(prompt: str) -> str | None:
    """Return the JSON payload the simulator answers generation prompts with."""

    if is_subtask_prompt(prompt):
        return json.dumps(SIMULATED_SUBTASKS)
    if "Question Generation" in prompt:
        return json.dumps(SIMULATED_QUESTIONS)
    if is_planning_prompt(prompt) or '"plan"' in prompt:
        return json.dumps({"plan": SIMULATED_PLAN})
    return None


class SimulatorAdapter(CLIAdapter):
    """Emits a fixed event sequence without touching any external service.

    ``responses`` scripts the assistant text of successive invocations; once
    exhausted the adapter falls back to its canned behaviour.
    """

    name = "simulator"
    display_name = "Simulator"
    thread_prefix = "simulator"

    def __init__(
        self,
        *,
        delay_scale: float = 1.0,
        responses: Iterable[str] | None = None,
        max_concurrent_agents: int = 12,
    ) -> None:
        super().__init__()
        self._delay_scale = delay_scale
        self._responses: deque[str] = deque(responses or [])
        self._max_concurrent = max_concurrent_agents
        self._stopped: set[str] = set()
        self._live: set[str] = set()
        self.prompts: list[str] = []

    def queue_response(self, text: str) -> None:
        self._responses.append(text)

    async def _pause(self, seconds: float) -> None:
        if self._delay_scale > 0:
            await asyncio.sleep(seconds * self._delay_scale)

    async def _stream(self, request: ExecuteRequest, thread_id: str) -> AsyncIterator[StreamEvent]:
        self._live.add(thread_id)
        try:
            self.prompts.append(request.prompt)
            mode = self.config.mode

            yield self.event(
                StreamEventType.SYSTEM,
                thread_id,
                message="Simulator agent initialized",
                tools=list(SIMULATED_TOOLS),
                mode=mode,
            )

            scripted = self._responses.popleft() if self._responses else None
            if scripted is None:
                scripted = canned_response(request.prompt)

            if scripted is not None:
                await self._pause(0.5)
                yield self.event(StreamEventType.TOOL, thread_id, tool="search", args={"pattern": "*"})
                await self._pause(0.5)
                if thread_id in self._stopped:
                    return
                yield self.event(StreamEventType.ASSISTANT, thread_id, content=scripted)
                yield self.event(
                    StreamEventType.RESULT,
                    thread_id,
                    success=True,
                    message="Simulated generation complete",
                    output=scripted,
                )
                return

            await self._pause(0.5)
            yield self.event(
                StreamEventType.ASSISTANT,
                thread_id,
                content=f'[SIMULATOR] Processing: "{request.prompt[:50]}..."',
            )
            await self._pause(1.0)
            yield self.event(StreamEventType.TOOL, thread_id, tool="search", args={"pattern": "*.py"})
            await self._pause(0.8)
            yield self.event(
                StreamEventType.ASSISTANT,
                thread_id,
                content="[SIMULATOR] Analysis complete, applying changes.",
            )
            await self._pause(1.2)
            yield self.event(
                StreamEventType.TOOL,
                thread_id,
                tool="write_file",
                args={"path": "src/example.py"},
            )
            await self._pause(0.5)
            if thread_id in self._stopped:
                return
            yield self.event(
                StreamEventType.RESULT,
                thread_id,
                success=True,
                message="Task completed successfully",
                summary="Simulated run finished",
                files_modified=["src/example.py"],
                context={"tokens_used": 1500, "cost": 0.0},
            )
        finally:
            self._live.discard(thread_id)
            self._stopped.discard(thread_id)

    async def stop_thread(self, thread_id: str) -> None:
        if thread_id in self._live:
            self._stopped.add(thread_id)

    def get_capabilities(self) -> AdapterCapabilities:
        return AdapterCapabilities(
            supports_threads=True,
            supported_modes=("smart", "rush"),
            max_concurrent_agents=self._max_concurrent,
            supports_permissions=True,
        )


__all__ = ["SimulatorAdapter", "canned_response"]
