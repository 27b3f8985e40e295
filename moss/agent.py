"""Agent loop: stream a step, run requested tools, repeat while the model asks for more."""

import asyncio
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from moss.exceptions import ToolNotFoundError
from moss.llm import (
    FINISH_ERROR,
    FINISH_TOOL_CALLS,
    FINISH_UNKNOWN,
    CompletionRequest,
    LLMProvider,
    StepFinish,
    TextDelta,
    ToolCallRequest,
    ensure_llm_error,
)
from moss.logging import get_logger
from moss.memory import MessageLog
from moss.messages import Message, ToolCallPart, ToolResultPart
from moss.tools.registry import ToolDescriptor, ToolRegistry, error_payload

log = get_logger(__name__)


@dataclass
class AgentConfig:
    """Per-agent sampling settings."""

    system: str
    temperature: float = 0.5
    max_tokens: int = 32000
    model: str = ""

    @classmethod
    def from_config(cls, config: Any) -> "AgentConfig":
        """Build from the application `Config`."""
        return cls(
            system=config.agent.system_prompt,
            temperature=config.model.temperature,
            max_tokens=config.model.max_tokens,
            model=config.model.model,
        )


@dataclass
class StepResult:
    """Everything one step produced."""

    step_number: int
    text: str
    tool_calls: list[ToolCallPart] = field(default_factory=list)
    tool_results: list[ToolResultPart] = field(default_factory=list)
    finish_reason: str = FINISH_UNKNOWN
    usage: dict[str, int] = field(default_factory=dict)
    messages: list[Message] = field(default_factory=list)


class AgentObserver:
    """Receives progress callbacks from `Agent.run`. Every hook is a no-op by default."""

    def on_stream_text_reset(self) -> None:
        pass

    def on_stream_text(self, text: str) -> None:
        pass

    def on_tool_start(self, name: str, args: dict[str, Any]) -> None:
        pass

    def on_tool_finish(self, name: str, args: dict[str, Any], result: Any) -> None:
        pass

    def on_step_finish(self, step: StepResult) -> None:
        pass

    def on_finish(self, reason: str) -> None:
        pass

    def on_error(self, error: BaseException) -> None:
        pass


def _json_safe(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


class Agent:
    """Conversational agent over one transcript.

    Not reentrant: one `run` at a time per instance.
    """

    def __init__(
        self,
        config: AgentConfig,
        provider: LLMProvider,
        registry: ToolRegistry,
        memory: MessageLog,
    ):
        self.config = config
        self.provider = provider
        self.registry = registry
        self.memory = memory
        self._transcript: list[Message] = []
        self._loaded = False

    @property
    def transcript(self) -> list[Message]:
        return list(self._transcript)

    async def load(self) -> None:
        """Replay the message log into the transcript (first call only)."""
        if self._loaded:
            return
        self._transcript = list(await self.memory.load())
        self._loaded = True
        log.debug("Transcript loaded", messages=len(self._transcript))

    async def clear(self) -> None:
        """Forget the conversation, on disk too."""
        await self.memory.clear()
        self._transcript.clear()
        self._loaded = True

    async def _append(self, message: Message) -> None:
        self._transcript.append(message)
        await self.memory.append(message)

    async def _execute_tool(self, call: ToolCallRequest, tools: Mapping[str, ToolDescriptor]) -> Any:
        if call.parse_error:
            return {"error": call.parse_error}
        descriptor = tools.get(call.name)
        if descriptor is None:
            return error_payload(ToolNotFoundError(call.name))
        log.info("Executing tool", tool=call.name, args=call.arguments)
        # A started tool runs to completion even if the run is cancelled.
        result = await asyncio.shield(descriptor.run(dict(call.arguments)))
        try:
            return _json_safe(result)
        except (TypeError, ValueError) as e:
            log.warning("Tool result is not JSON-serializable", tool=call.name, error=str(e))
            return error_payload(e)

    async def run(self, prompt: str, observer: AgentObserver | None = None) -> str:
        """Send `prompt` and keep stepping while the model requests tools.

        Backend failures end the run quietly: they are logged and passed to
        `observer.on_error`.

        Returns:
            The final finish reason
        """
        observer = observer or AgentObserver()
        await self.load()
        await self._append(Message.user(prompt))

        finish_reason = FINISH_UNKNOWN
        step_number = 0
        while True:
            step_number += 1
            tools = self.registry.snapshot()
            request = CompletionRequest(
                system=self.config.system,
                messages=list(self._transcript),
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
                tools=[descriptor.definition() for descriptor in tools.values()],
            )

            text_parts: list[str] = []
            calls: list[ToolCallRequest] = []
            reason = FINISH_UNKNOWN
            usage: dict[str, int] = {}
            try:
                async for event in self.provider.stream(request):
                    if isinstance(event, TextDelta):
                        if not text_parts:
                            observer.on_stream_text_reset()
                        text_parts.append(event.text)
                        observer.on_stream_text(event.text)
                    elif isinstance(event, ToolCallRequest):
                        calls.append(event)
                    elif isinstance(event, StepFinish):
                        reason = event.reason
                        usage = dict(event.usage)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = ensure_llm_error(e)
                log.error(
                    "Backend step failed",
                    step=step_number,
                    error=str(error),
                    request=request.to_payload(self.config.model),
                )
                observer.on_error(error)
                finish_reason = FINISH_ERROR
                break

            call_parts = [
                ToolCallPart(tool_call_id=call.id, tool_name=call.name, args=call.arguments)
                for call in calls
            ]
            result_parts: list[ToolResultPart] = []
            for call in calls:
                observer.on_tool_start(call.name, call.arguments)
                result = await self._execute_tool(call, tools)
                observer.on_tool_finish(call.name, call.arguments, result)
                result_parts.append(
                    ToolResultPart(
                        tool_call_id=call.id,
                        tool_name=call.name,
                        args=call.arguments,
                        result=result,
                    )
                )

            step_messages = [Message.assistant("".join(text_parts), call_parts)]
            if result_parts:
                step_messages.append(Message.tool(result_parts))
            for message in step_messages:
                await self._append(message)

            observer.on_step_finish(
                StepResult(
                    step_number=step_number,
                    text="".join(text_parts),
                    tool_calls=call_parts,
                    tool_results=result_parts,
                    finish_reason=reason,
                    usage=usage,
                    messages=step_messages,
                )
            )
            log.debug("Step finished", step=step_number, reason=reason, tool_calls=len(calls))

            finish_reason = reason
            if reason != FINISH_TOOL_CALLS or not calls:
                break

        observer.on_finish(finish_reason)
        return finish_reason
