"""Subprocess backend for the Cursor agent CLI."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable

from .base import (
    AdapterCapabilities,
    AdapterConfig,
    AdapterNotReadyError,
    CLIAdapter,
    ExecuteRequest,
    StreamEvent,
    StreamEventType,
)
from .utils import (
    augmented_path,
    build_context_prompt,
    is_real_credential,
    sanitize_environment,
    strip_ansi,
    terminate_process,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "opus-4.5-thinking"
MODELS_CACHE_TTL = 60 * 60.0
READ_CHUNK_SIZE = 64 * 1024

FALLBACK_MODELS: tuple[dict[str, str], ...] = (
    {"value": "auto", "label": "Auto"},
    {"value": "composer-1", "label": "Composer 1"},
    {"value": "opus-4.5-thinking", "label": "Claude 4.5 Opus (Thinking)"},
    {"value": "sonnet-4.5", "label": "Claude 4.5 Sonnet"},
    {"value": "sonnet-4.5-thinking", "label": "Claude 4.5 Sonnet (Thinking)"},
    {"value": "gpt-5.2", "label": "GPT-5.2"},
    {"value": "gpt-5.2-high", "label": "GPT-5.2 High"},
)

_MODEL_LINE = re.compile(r"^([a-z0-9.-]+)\s+-\s+(.+?)\s*(?:\s+\((default|current)\))?$", re.IGNORECASE)


class LineBuffer:
    """Split a byte stream into complete lines, keeping the partial tail."""

    def __init__(self) -> None:
        self._pending = b""

    def feed(self, chunk: bytes) -> list[str]:
        data = self._pending + chunk
        *lines, self._pending = data.split(b"\n")
        return [line.decode("utf-8", errors="replace") for line in lines if line.strip()]

    def flush(self) -> list[str]:
        remainder, self._pending = self._pending, b""
        text = remainder.decode("utf-8", errors="replace")
        return [text] if text.strip() else []

    def discard(self) -> None:
        self._pending = b""


@dataclass(slots=True)
class _ModelCache:
    models: list[dict[str, str]]
    fetched_at: float


def parse_models_output(stdout: str) -> list[dict[str, str]]:
    """Parse ``agent models`` output lines such as ``sonnet-4.5 - Claude 4.5 Sonnet  (current)``."""

    models: list[dict[str, str]] = []
    for line in strip_ansi(stdout).strip().splitlines():
        match = _MODEL_LINE.match(line.strip())
        if match is None:
            continue
        entry = {"value": match.group(1).strip(), "label": match.group(2).strip()}
        if "(default)" in line:
            entry["default"] = "true"
        models.append(entry)
    return models


class CursorCLIAdapter(CLIAdapter):
    """Run ``agent --print --output-format stream-json`` and normalize its NDJSON output."""

    name = "cursor"
    display_name = "Cursor Agent CLI"
    thread_prefix = "cursor"

    def __init__(
        self,
        *,
        command: str = "agent",
        model: str = DEFAULT_MODEL,
        max_concurrent_agents: int = 12,
        clock: Callable[[], float] | None = None,
    ) -> None:
        super().__init__()
        self._command = command
        self._model = model
        self._max_concurrent = max_concurrent_agents
        self._clock = clock or time.monotonic
        self._executable: Path | None = None
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._chat_ids: dict[str, str] = {}
        self._models_cache: _ModelCache | None = None

    @staticmethod
    def _resolve_executable(command: str) -> Path:
        candidate = Path(command).expanduser()
        if candidate.is_absolute() or "/" in command:
            if candidate.exists() and candidate.is_file():
                return candidate
            raise AdapterNotReadyError(
                f"Cursor agent executable not found at {candidate}",
                ["Set CURSOR_AGENT_CMD to the path of the Cursor agent CLI."],
            )

        binary = shutil.which(command, path=augmented_path())
        if binary is None:
            raise AdapterNotReadyError(
                f"Cursor agent CLI '{command}' not found on PATH",
                [
                    "Install the Cursor agent CLI: curl https://cursor.com/install -fsS | bash",
                    "Or set CURSOR_AGENT_CMD to its full path.",
                ],
            )
        return Path(binary)

    @property
    def executable(self) -> Path:
        if self._executable is None:
            self._executable = self._resolve_executable(self._command)
        return self._executable

    async def initialize(self, config: AdapterConfig) -> None:
        self._executable = self._resolve_executable(self._command)
        if config.model:
            self._model = config.model
        await super().initialize(config)

    def build_args(self, thread_id: str) -> list[str]:
        args = [
            str(self.executable),
            "--print",
            "--output-format",
            "stream-json",
            "--workspace",
            str(self.working_dir_for(thread_id)),
            "--model",
            self._model,
        ]
        chat_id = self._chat_ids.get(thread_id)
        if chat_id:
            args.extend(["--resume", chat_id])
        return args

    def build_env(self) -> dict[str, str]:
        additional: dict[str, str] = {}
        if is_real_credential(self.config.credential):
            additional["CURSOR_API_KEY"] = self.config.credential
        return sanitize_environment(additional, drop=("CURSOR_API_KEY",))

    async def _stream(self, request: ExecuteRequest, thread_id: str) -> AsyncIterator[StreamEvent]:
        prompt = build_context_prompt(request.prompt, request.context)
        args = self.build_args(thread_id)
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self.working_dir_for(thread_id)),
            env=self.build_env(),
        )
        self._processes[thread_id] = process
        logger.info("Spawned Cursor agent", extra={"thread_id": thread_id, "pid": process.pid})

        stderr_task = asyncio.create_task(process.stderr.read())
        buffer = LineBuffer()
        output_parts: list[str] = []
        try:
            process.stdin.write(prompt.encode("utf-8"))
            await process.stdin.drain()
            process.stdin.close()

            while True:
                chunk = await process.stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                for line in buffer.feed(chunk):
                    for event in self.classify_line(line, thread_id):
                        if event.type is StreamEventType.ASSISTANT:
                            output_parts.append(str(event.payload.get("content", "")))
                        yield event
            for line in buffer.flush():
                for event in self.classify_line(line, thread_id):
                    if event.type is StreamEventType.ASSISTANT:
                        output_parts.append(str(event.payload.get("content", "")))
                    yield event

            returncode = await process.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
            if stderr:
                yield self.event(StreamEventType.SYSTEM, thread_id, message=f"[stderr] {stderr}")

            if returncode == 0:
                yield self.event(
                    StreamEventType.RESULT,
                    thread_id,
                    success=True,
                    message="Cursor agent completed",
                    output="\n".join(output_parts),
                    exit_code=returncode,
                )
            else:
                yield self.event(
                    StreamEventType.ERROR,
                    thread_id,
                    error=stderr or f"Cursor agent exited with code {returncode}",
                    exit_code=returncode,
                    stderr=stderr,
                )
        finally:
            buffer.discard()
            self._processes.pop(thread_id, None)
            if not stderr_task.done():
                stderr_task.cancel()
            await terminate_process(process)

    def classify_line(self, line: str, thread_id: str) -> list[StreamEvent]:
        """Map one NDJSON line from the CLI onto the event taxonomy."""

        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            return [self.event(StreamEventType.ASSISTANT, thread_id, content=line)]
        if not isinstance(message, dict):
            return [self.event(StreamEventType.ASSISTANT, thread_id, content=line)]

        chat_id = message.get("session_id") or message.get("chatId")
        if isinstance(chat_id, str) and chat_id:
            self._chat_ids[thread_id] = chat_id

        kind = message.get("type")
        if kind == "assistant":
            text = _assistant_text(message)
            if not text:
                return []
            return [self.event(StreamEventType.ASSISTANT, thread_id, content=text)]

        if kind == "thinking":
            text = message.get("text") or message.get("content") or ""
            if not text:
                return []
            return [self.event(StreamEventType.SYSTEM, thread_id, message=f"[thinking] {text}")]

        if kind == "tool_call":
            tool_call = message.get("tool_call") or {}
            tool_name = next(iter(tool_call), "unknown") if isinstance(tool_call, dict) else "unknown"
            return [
                self.event(
                    StreamEventType.TOOL,
                    thread_id,
                    tool=tool_name,
                    status=message.get("subtype"),
                    call_id=message.get("call_id"),
                    details=tool_call.get(tool_name) if isinstance(tool_call, dict) else None,
                )
            ]

        if kind == "error":
            error = message.get("error") or message.get("message") or "Cursor agent reported an error"
            if isinstance(error, dict):
                error = error.get("message") or json.dumps(error)
            return [self.event(StreamEventType.ERROR, thread_id, error=str(error))]

        # system/user echoes and the CLI's own result line are folded into the exit status
        return []

    async def stop_thread(self, thread_id: str) -> None:
        process = self._processes.get(thread_id)
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            pass

    async def list_models(self, *, timeout: float = 5.0) -> list[dict[str, str]]:
        """Return models reported by ``agent models``, cached for an hour."""

        now = self._clock()
        cache = self._models_cache
        if cache is not None and now - cache.fetched_at < MODELS_CACHE_TTL:
            return list(cache.models)

        try:
            process = await asyncio.create_subprocess_exec(
                str(self.executable),
                "models",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=sanitize_environment(),
            )
        except (AdapterNotReadyError, OSError) as exc:
            logger.warning("Failed to fetch Cursor models", extra={"error": str(exc)})
            return [dict(model) for model in FALLBACK_MODELS]

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out fetching Cursor models", extra={"timeout": timeout})
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            return [dict(model) for model in FALLBACK_MODELS]

        models = parse_models_output(stdout.decode("utf-8", errors="replace"))
        if not models:
            return [dict(model) for model in FALLBACK_MODELS]
        self._models_cache = _ModelCache(models=models, fetched_at=now)
        return list(models)

    def get_capabilities(self) -> AdapterCapabilities:
        return AdapterCapabilities(
            supports_threads=True,
            supported_modes=("normal", "plan"),
            max_concurrent_agents=self._max_concurrent,
            supports_permissions=False,
        )


def _assistant_text(message: dict[str, Any]) -> str:
    inner = message.get("message")
    if isinstance(inner, dict):
        content = inner.get("content")
        if isinstance(content, list):
            return "".join(
                str(item.get("text", ""))
                for item in content
                if isinstance(item, dict) and item.get("type", "text") == "text"
            )
        if isinstance(content, str):
            return content
    text = message.get("text")
    return text if isinstance(text, str) else ""


__all__ = [
    "CursorCLIAdapter",
    "DEFAULT_MODEL",
    "FALLBACK_MODELS",
    "LineBuffer",
    "parse_models_output",
]
