import asyncio
from pathlib import Path
from typing import Any

import pytest

from moss.agent import Agent, AgentConfig, AgentObserver, StepResult
from moss.exceptions import LLMAPIError
from moss.llm import CompletionRequest, LLMProvider, StepFinish, TextDelta, ToolCallRequest
from moss.memory import MessageLog
from moss.tools.registry import FunctionTool, ToolRegistry

ECHO_SCHEMA = {
    "type": "object",
    "properties": {"text": {"type": "string"}},
    "required": ["text"],
}


class ScriptedProvider(LLMProvider):
    """Replays one scripted list of events (or an exception) per step."""

    def __init__(self, steps: list[Any]):
        self.steps = list(steps)
        self.requests: list[CompletionRequest] = []

    async def stream(self, request: CompletionRequest):
        self.requests.append(request)
        step = self.steps.pop(0)
        if isinstance(step, Exception):
            raise step
        for event in step:
            if isinstance(event, Exception):
                raise event
            yield event


class RecordingObserver(AgentObserver):
    def __init__(self):
        self.events: list[str] = []
        self.steps: list[StepResult] = []
        self.errors: list[BaseException] = []

    def on_stream_text_reset(self) -> None:
        self.events.append("reset")

    def on_stream_text(self, text: str) -> None:
        self.events.append(f"text:{text}")

    def on_tool_start(self, name: str, args: dict[str, Any]) -> None:
        self.events.append(f"tool_start:{name}")

    def on_tool_finish(self, name: str, args: dict[str, Any], result: Any) -> None:
        self.events.append(f"tool_finish:{name}")

    def on_step_finish(self, step: StepResult) -> None:
        self.events.append(f"step:{step.step_number}")
        self.steps.append(step)

    def on_finish(self, reason: str) -> None:
        self.events.append(f"finish:{reason}")

    def on_error(self, error: BaseException) -> None:
        self.events.append("error")
        self.errors.append(error)


def _echo(**kwargs: Any) -> dict[str, Any]:
    return {"echo": kwargs["text"]}


def _agent(tmp_path: Path, provider: LLMProvider, registry: ToolRegistry | None = None) -> Agent:
    if registry is None:
        registry = ToolRegistry([FunctionTool("echo", "Echo text", ECHO_SCHEMA, _echo)])
    return Agent(
        AgentConfig(system="Be brief.", temperature=0.2, max_tokens=256, model="test/model"),
        provider,
        registry,
        MessageLog(tmp_path / "memory.jsonl"),
    )


def _tool_step(name: str = "echo", args: dict[str, Any] | None = None, **extra: Any) -> list[Any]:
    return [
        TextDelta("Let me check."),
        ToolCallRequest(id="call_1", name=name, arguments=args if args is not None else {"text": "hi"}, **extra),
        StepFinish(reason="tool-calls"),
    ]


FINAL_STEP = [TextDelta("All "), TextDelta("done."), StepFinish(reason="stop", usage={"total_tokens": 12})]


@pytest.mark.asyncio
async def test_tool_step_then_final_step(tmp_path: Path):
    provider = ScriptedProvider([_tool_step(), FINAL_STEP])
    agent = _agent(tmp_path, provider)
    observer = RecordingObserver()

    reason = await agent.run("echo hi", observer)

    assert reason == "stop"
    assert observer.events == [
        "reset",
        "text:Let me check.",
        "tool_start:echo",
        "tool_finish:echo",
        "step:1",
        "reset",
        "text:All ",
        "text:done.",
        "step:2",
        "finish:stop",
    ]
    assert observer.steps[0].tool_results[0].result == {"echo": "hi"}
    assert observer.steps[1].usage == {"total_tokens": 12}

    logged = await MessageLog(tmp_path / "memory.jsonl").load()
    assert [message.role for message in logged] == ["user", "assistant", "tool", "assistant"]
    assert logged[0].text == "echo hi"
    assert logged[1].tool_calls[0].tool_name == "echo"
    assert logged[2].tool_results[0].tool_call_id == "call_1"
    assert logged[3].text == "All done."
    assert agent.transcript == logged


@pytest.mark.asyncio
async def test_request_carries_settings_and_transcript(tmp_path: Path):
    provider = ScriptedProvider([_tool_step(), FINAL_STEP])
    agent = _agent(tmp_path, provider)

    await agent.run("echo hi")

    first, second = provider.requests
    assert first.system == "Be brief."
    assert first.temperature == 0.2
    assert first.max_tokens == 256
    assert [tool["name"] for tool in first.tools] == ["echo"]
    assert [message.role for message in first.messages] == ["user"]
    assert [message.role for message in second.messages] == ["user", "assistant", "tool"]


@pytest.mark.asyncio
async def test_failing_tool_result_carries_error(tmp_path: Path):
    def _broken(**kwargs: Any) -> None:
        raise RuntimeError("echo chamber collapsed")

    registry = ToolRegistry([FunctionTool("echo", "", ECHO_SCHEMA, _broken)])
    provider = ScriptedProvider([_tool_step(), FINAL_STEP])
    agent = _agent(tmp_path, provider, registry)

    reason = await agent.run("echo hi", RecordingObserver())

    assert reason == "stop"
    tool_message = agent.transcript[2]
    assert tool_message.tool_results[0].result == {"error": "echo chamber collapsed"}
    assert tool_message.tool_results[0].is_error


@pytest.mark.asyncio
async def test_backend_error_stops_loop_without_raising(tmp_path: Path):
    provider = ScriptedProvider([LLMAPIError("rate limited", status_code=429)])
    agent = _agent(tmp_path, provider)
    observer = RecordingObserver()

    reason = await agent.run("hello", observer)

    assert reason == "error"
    assert observer.events == ["error", "finish:error"]
    assert isinstance(observer.errors[0], LLMAPIError)
    assert [message.role for message in agent.transcript] == ["user"]


@pytest.mark.asyncio
async def test_backend_error_mid_stream_keeps_earlier_steps(tmp_path: Path):
    provider = ScriptedProvider([_tool_step(), [TextDelta("partial"), ConnectionError("socket closed")]])
    agent = _agent(tmp_path, provider)
    observer = RecordingObserver()

    reason = await agent.run("hello", observer)

    assert reason == "error"
    assert "socket closed" in str(observer.errors[0])
    logged = await MessageLog(tmp_path / "memory.jsonl").load()
    assert [message.role for message in logged] == ["user", "assistant", "tool"]


@pytest.mark.asyncio
async def test_registry_changes_are_seen_next_step(tmp_path: Path):
    registry = ToolRegistry()

    def _install(**kwargs: Any) -> dict[str, Any]:
        registry.register(FunctionTool("late", "Registered mid-run", None, lambda **kw: {}))
        return {"installed": True}

    registry.register(FunctionTool("echo", "", ECHO_SCHEMA, _install))
    provider = ScriptedProvider([_tool_step(), FINAL_STEP])

    await _agent(tmp_path, provider, registry).run("install")

    assert [tool["name"] for tool in provider.requests[0].tools] == ["echo"]
    assert [tool["name"] for tool in provider.requests[1].tools] == ["echo", "late"]


@pytest.mark.asyncio
async def test_unknown_tool_and_bad_arguments_become_errors(tmp_path: Path):
    calls: list[Any] = []
    registry = ToolRegistry([FunctionTool("echo", "", ECHO_SCHEMA, lambda **kw: calls.append(kw))])
    provider = ScriptedProvider([
        _tool_step(name="ghost"),
        _tool_step(args={}, parse_error="Invalid tool arguments JSON: Expecting value"),
        FINAL_STEP,
    ])
    agent = _agent(tmp_path, provider, registry)

    await agent.run("go")

    assert agent.transcript[2].tool_results[0].result == {"error": "Tool not found: ghost"}
    assert agent.transcript[4].tool_results[0].result == {"error": "Invalid tool arguments JSON: Expecting value"}
    assert calls == []


@pytest.mark.asyncio
async def test_unserializable_tool_result_becomes_error(tmp_path: Path):
    circular: dict[str, Any] = {}
    circular["self"] = circular
    registry = ToolRegistry([
        FunctionTool("pairs", "", ECHO_SCHEMA, lambda **kw: {(1, 2): kw["text"]}),
        FunctionTool("loop", "", ECHO_SCHEMA, lambda **kw: circular),
    ])
    provider = ScriptedProvider([_tool_step(name="pairs"), _tool_step(name="loop"), FINAL_STEP])
    agent = _agent(tmp_path, provider, registry)

    assert await agent.run("go") == "stop"

    assert "tuple" in agent.transcript[2].tool_results[0].result["error"]
    assert "error" in agent.transcript[4].tool_results[0].result
    logged = await MessageLog(tmp_path / "memory.jsonl").load()
    assert len(logged) == len(agent.transcript)


@pytest.mark.asyncio
async def test_tool_calls_reason_without_calls_ends_loop(tmp_path: Path):
    provider = ScriptedProvider([[TextDelta("hmm"), StepFinish(reason="tool-calls")]])
    agent = _agent(tmp_path, provider)

    assert await agent.run("go") == "tool-calls"
    assert len(provider.requests) == 1


@pytest.mark.asyncio
async def test_load_replays_log_and_clear_forgets(tmp_path: Path):
    await _agent(tmp_path, ScriptedProvider([FINAL_STEP])).run("first")

    provider = ScriptedProvider([FINAL_STEP])
    agent = _agent(tmp_path, provider)
    await agent.run("second")

    assert [message.text for message in provider.requests[0].messages] == ["first", "All done.", "second"]

    await agent.clear()
    assert agent.transcript == []
    assert await MessageLog(tmp_path / "memory.jsonl").load() == []


@pytest.mark.asyncio
async def test_started_tool_survives_cancellation(tmp_path: Path):
    started = asyncio.Event()
    release = asyncio.Event()
    finished: list[bool] = []

    async def _slow(**kwargs: Any) -> dict[str, Any]:
        started.set()
        await release.wait()
        finished.append(True)
        return {}

    registry = ToolRegistry([FunctionTool("echo", "", ECHO_SCHEMA, _slow)])
    agent = _agent(tmp_path, ScriptedProvider([_tool_step(), FINAL_STEP]), registry)

    task = asyncio.create_task(agent.run("slow"))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    release.set()
    for _ in range(10):
        await asyncio.sleep(0)
    assert finished == [True]
