from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest

from conductor_mcp.adapters import AdapterConfig, AdapterNotReadyError, CursorCLIAdapter, ExecuteRequest, StreamEventType
from conductor_mcp.adapters.cursor import FALLBACK_MODELS, LineBuffer, parse_models_output


def _script(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "agent"
    script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    script.chmod(0o755)
    return script


async def _run(adapter: CursorCLIAdapter, tmp_path: Path, prompt: str = "hello"):
    await adapter.initialize(AdapterConfig(credential="cursor-cli-login", working_dir=tmp_path))
    thread_id = await adapter.create_thread(tmp_path)
    events = [event async for event in adapter.execute(ExecuteRequest(prompt=prompt, thread_id=thread_id))]
    return thread_id, events


def test_ndjson_stream_is_normalized(tmp_path: Path) -> None:
    script = _script(
        tmp_path,
        "cat > /dev/null\n"
        "echo '{\"type\":\"system\",\"session_id\":\"chat-1\"}'\n"
        "echo '{\"type\":\"assistant\",\"message\":{\"content\":[{\"type\":\"text\",\"text\":\"Hello\"}]}}'\n"
        "echo '{\"type\":\"tool_call\",\"subtype\":\"started\",\"call_id\":\"c1\","
        "\"tool_call\":{\"readToolCall\":{\"args\":{\"path\":\"a.py\"}}}}'\n"
        "echo 'plain text line'\n"
        "echo 'careful' >&2\n",
    )
    adapter = CursorCLIAdapter(command=str(script))

    thread_id, events = asyncio.run(_run(adapter, tmp_path))

    kinds = [event.type for event in events]
    assert kinds == [
        StreamEventType.ASSISTANT,
        StreamEventType.TOOL,
        StreamEventType.ASSISTANT,
        StreamEventType.SYSTEM,
        StreamEventType.RESULT,
    ]
    assert events[1].payload["tool"] == "readToolCall"
    assert events[3].payload["message"] == "[stderr] careful"
    assert events[-1].payload["output"] == "Hello\nplain text line"
    assert adapter.build_args(thread_id)[-2:] == ["--resume", "chat-1"]


def test_nonzero_exit_becomes_error(tmp_path: Path) -> None:
    script = _script(tmp_path, "cat > /dev/null\necho 'boom' >&2\nexit 3\n")
    adapter = CursorCLIAdapter(command=str(script))

    _thread_id, events = asyncio.run(_run(adapter, tmp_path))

    assert events[-1].type is StreamEventType.ERROR
    assert events[-1].payload["error"] == "boom"
    assert events[-1].payload["exit_code"] == 3


def test_error_line_is_terminal(tmp_path: Path) -> None:
    script = _script(
        tmp_path,
        "cat > /dev/null\necho '{\"type\":\"error\",\"error\":{\"message\":\"quota exceeded\"}}'\n",
    )
    adapter = CursorCLIAdapter(command=str(script))

    _thread_id, events = asyncio.run(_run(adapter, tmp_path))

    assert [event.type for event in events] == [StreamEventType.ERROR]
    assert events[0].payload["error"] == "quota exceeded"


def test_build_args_and_model_override(tmp_path: Path) -> None:
    script = _script(tmp_path, "exit 0\n")
    adapter = CursorCLIAdapter(command=str(script))

    async def scenario():
        await adapter.initialize(AdapterConfig(credential="", working_dir=tmp_path, model="sonnet-4.5"))
        return adapter.build_args(await adapter.create_thread(tmp_path))

    args = asyncio.run(scenario())

    assert args[1:4] == ["--print", "--output-format", "stream-json"]
    assert args[args.index("--workspace") + 1] == str(tmp_path)
    assert args[args.index("--model") + 1] == "sonnet-4.5"


def test_missing_binary_is_not_ready(tmp_path: Path) -> None:
    adapter = CursorCLIAdapter(command=str(tmp_path / "bin" / "agent"))

    with pytest.raises(AdapterNotReadyError) as excinfo:
        asyncio.run(adapter.initialize(AdapterConfig(credential="", working_dir=tmp_path)))

    assert excinfo.value.instructions


def test_line_buffer_keeps_partial_tail() -> None:
    buffer = LineBuffer()

    assert buffer.feed(b'{"a"') == []
    assert buffer.feed(b':1}\n\n{"b"') == ['{"a":1}']
    assert buffer.flush() == ['{"b"']
    assert buffer.flush() == []


def test_parse_models_output() -> None:
    stdout = (
        "\x1b[1mAvailable models\x1b[0m\n"
        "auto - Auto\n"
        "sonnet-4.5 - Claude 4.5 Sonnet  (current)\n"
        "opus-4.5-thinking - Claude 4.5 Opus (Thinking) (default)\n"
    )

    models = parse_models_output(stdout)

    assert [model["value"] for model in models] == ["auto", "sonnet-4.5", "opus-4.5-thinking"]
    assert models[1]["label"] == "Claude 4.5 Sonnet"
    assert models[2] == {"value": "opus-4.5-thinking", "label": "Claude 4.5 Opus (Thinking)", "default": "true"}


def test_list_models_caches_and_falls_back(tmp_path: Path) -> None:
    script = _script(tmp_path, 'echo "$1" >> "$0.calls"\necho "auto - Auto"\n')
    now = [0.0]
    adapter = CursorCLIAdapter(command=str(script), clock=lambda: now[0])

    first = asyncio.run(adapter.list_models())
    second = asyncio.run(adapter.list_models())

    assert first == second == [{"value": "auto", "label": "Auto"}]
    assert (tmp_path / "agent.calls").read_text(encoding="utf-8").split() == ["models"]

    broken = CursorCLIAdapter(command=str(tmp_path / "missing"))
    assert asyncio.run(broken.list_models()) == [dict(model) for model in FALLBACK_MODELS]


_HELLO_LINE = "echo '{\"type\":\"assistant\",\"message\":{\"content\":[{\"type\":\"text\",\"text\":\"Hello\"}]}}'\n"


def test_abandoning_stream_terminates_process(tmp_path: Path) -> None:
    script = _script(tmp_path, "cat > /dev/null\n" + _HELLO_LINE + "exec sleep 30\n")
    adapter = CursorCLIAdapter(command=str(script))

    async def scenario():
        await adapter.initialize(AdapterConfig(credential="", working_dir=tmp_path))
        thread_id = await adapter.create_thread(tmp_path)
        stream = adapter.execute(ExecuteRequest(prompt="hello", thread_id=thread_id))
        first = await stream.__anext__()
        process = adapter._processes[thread_id]
        await stream.aclose()
        return first, process

    first, process = asyncio.run(scenario())

    assert first.type is StreamEventType.ASSISTANT
    assert process.returncode is not None
    assert adapter._processes == {}


def test_stop_thread_ends_stream_with_error(tmp_path: Path) -> None:
    script = _script(tmp_path, "cat > /dev/null\n" + _HELLO_LINE + "exec sleep 30\n")
    adapter = CursorCLIAdapter(command=str(script))

    async def scenario():
        await adapter.initialize(AdapterConfig(credential="", working_dir=tmp_path))
        thread_id = await adapter.create_thread(tmp_path)
        events = []
        async for event in adapter.execute(ExecuteRequest(prompt="hello", thread_id=thread_id)):
            events.append(event)
            if len(events) == 1:
                await adapter.stop_thread(thread_id)
        return events

    events = asyncio.run(asyncio.wait_for(scenario(), timeout=10))

    assert events[0].type is StreamEventType.ASSISTANT
    assert events[-1].type is StreamEventType.ERROR
    assert events[-1].payload["exit_code"] != 0
    assert adapter._processes == {}


def test_list_models_timeout_kills_child(tmp_path: Path) -> None:
    script = _script(tmp_path, 'echo $$ > "$0.pid"\nexec sleep 30\n')
    adapter = CursorCLIAdapter(command=str(script))

    models = asyncio.run(adapter.list_models(timeout=0.5))

    assert models == [dict(model) for model in FALLBACK_MODELS]
    pid = int((tmp_path / "agent.pid").read_text(encoding="utf-8"))
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
