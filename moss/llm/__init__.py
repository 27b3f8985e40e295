"""OpenRouter provider - streaming chat completions over HTTP."""

import json
import os
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from moss.config import OPENROUTER_BASE_URL
from moss.exceptions import ConfigurationError, LLMAPIError, LLMError
from moss.logging import get_logger
from moss.messages import Message

log = get_logger(__name__)


# Finish reasons reported at the end of every step.
FINISH_STOP = "stop"
FINISH_LENGTH = "length"
FINISH_CONTENT_FILTER = "content-filter"
FINISH_TOOL_CALLS = "tool-calls"
FINISH_ERROR = "error"
FINISH_OTHER = "other"
FINISH_UNKNOWN = "unknown"

_FINISH_REASON_MAP = {
    "stop": FINISH_STOP,
    "end_turn": FINISH_STOP,
    "length": FINISH_LENGTH,
    "max_tokens": FINISH_LENGTH,
    "tool_calls": FINISH_TOOL_CALLS,
    "function_call": FINISH_TOOL_CALLS,
    "tool_use": FINISH_TOOL_CALLS,
    "content_filter": FINISH_CONTENT_FILTER,
    "error": FINISH_ERROR,
}


def map_finish_reason(raw: str | None, has_tool_calls: bool = False) -> str:
    """Normalize a provider finish reason."""
    if raw is None:
        return FINISH_TOOL_CALLS if has_tool_calls else FINISH_UNKNOWN
    return _FINISH_REASON_MAP.get(raw, FINISH_OTHER)


@dataclass
class TextDelta:
    """A fragment of assistant text."""

    text: str


@dataclass
class ToolCallRequest:
    """A tool call from the LLM."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    parse_error: str | None = None


@dataclass
class StepFinish:
    """Terminal event of one streamed step."""

    reason: str
    usage: dict[str, int] = field(default_factory=dict)


StreamEvent = TextDelta | ToolCallRequest | StepFinish


@dataclass
class CompletionRequest:
    """Everything the backend needs for one step."""

    system: str
    messages: list[Message]
    temperature: float
    max_tokens: int
    tools: list[dict[str, Any]] = field(default_factory=list)

    def to_payload(self, model: str = "") -> dict[str, Any]:
        """Render the request as an OpenAI-style chat completion body."""
        body: dict[str, Any] = {
            "model": model,
            "messages": convert_messages(self.system, self.messages),
            "stream": True,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "top_p": 1,
            "frequency_penalty": 0,
            "presence_penalty": 0,
        }
        if self.tools:
            body["tools"] = [{"type": "function", "function": definition} for definition in self.tools]
        return body


def convert_messages(system: str, messages: list[Message]) -> list[dict[str, Any]]:
    """Convert transcript messages to OpenAI chat format."""
    result: list[dict[str, Any]] = []
    if system:
        result.append({"role": "system", "content": system})

    for msg in messages:
        if msg.role == "user":
            result.append({"role": "user", "content": msg.text})
        elif msg.role == "assistant":
            entry: dict[str, Any] = {"role": "assistant", "content": msg.text or None}
            calls = msg.tool_calls
            if calls:
                entry["tool_calls"] = [
                    {
                        "id": call.tool_call_id,
                        "type": "function",
                        "function": {
                            "name": call.tool_name,
                            "arguments": json.dumps(call.args),
                        },
                    }
                    for call in calls
                ]
            elif entry["content"] is None:
                entry["content"] = ""
            result.append(entry)
        elif msg.role == "tool":
            for part in msg.tool_results:
                result.append({
                    "role": "tool",
                    "tool_call_id": part.tool_call_id,
                    "content": json.dumps(part.result, default=str),
                })
    return result


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    model: str = ""

    @abstractmethod
    def stream(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        """Stream one step: text deltas, tool calls, then a `StepFinish`."""
        pass

    async def close(self) -> None:
        return None


class OpenRouterProvider(LLMProvider):
    """OpenAI-compatible streaming chat completions (OpenRouter by default)."""

    def __init__(
        self,
        model: str,
        api_key: str,
        base_url: str = OPENROUTER_BASE_URL,
        timeout: float = 120.0,
        http_referer: str | None = None,
        app_name: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the provider.

        Args:
            model: Model id (e.g. 'anthropic/claude-sonnet-4')
            api_key: Bearer token
            base_url: API base URL
            timeout: Request timeout in seconds
            http_referer: Optional OpenRouter attribution header
            app_name: Optional OpenRouter attribution header
            transport: Optional httpx transport (tests)
        """
        self.model = model
        self.api_key = api_key
        self.base_url = (base_url or OPENROUTER_BASE_URL).rstrip("/")
        self.http_referer = http_referer
        self.app_name = app_name
        self.client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if self.http_referer:
            headers["HTTP-Referer"] = self.http_referer
        if self.app_name:
            headers["X-Title"] = self.app_name
        return headers

    @staticmethod
    def _parse_arguments(raw: str) -> tuple[dict[str, Any], str | None]:
        if not raw.strip():
            return {}, None
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            return {}, f"Invalid tool arguments JSON: {e}"
        if not isinstance(parsed, dict):
            return {}, f"Tool arguments must be a JSON object, got {type(parsed).__name__}"
        return parsed, None

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        """Stream a completion step."""
        url = f"{self.base_url}/chat/completions"
        body = request.to_payload(self.model)

        pending: dict[int, dict[str, str]] = {}
        finish_raw: str | None = None
        usage: dict[str, int] = {}

        try:
            log.debug("Calling backend", model=self.model, url=url, msg_count=len(body["messages"]))
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Backend API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        # Blank keep-alives and ": PROCESSING" comments.
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        continue

                    if chunk.get("error"):
                        error = chunk["error"]
                        message = error.get("message") if isinstance(error, dict) else str(error)
                        code = error.get("code") if isinstance(error, dict) else None
                        raise LLMAPIError(
                            f"Backend stream error: {message}",
                            status_code=code if isinstance(code, int) else None,
                        )

                    if isinstance(chunk.get("usage"), dict):
                        usage = {
                            key: int(value)
                            for key, value in chunk["usage"].items()
                            if isinstance(value, (int, float))
                        }

                    for choice in chunk.get("choices") or []:
                        delta = choice.get("delta") or {}
                        content = delta.get("content")
                        if content:
                            yield TextDelta(content)
                        for call in delta.get("tool_calls") or []:
                            entry = pending.setdefault(
                                int(call.get("index", 0)),
                                {"id": "", "name": "", "arguments": ""},
                            )
                            if call.get("id"):
                                entry["id"] = call["id"]
                            function = call.get("function") or {}
                            if function.get("name"):
                                entry["name"] += function["name"]
                            if function.get("arguments"):
                                entry["arguments"] += function["arguments"]
                        if choice.get("finish_reason"):
                            finish_raw = choice["finish_reason"]
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Backend HTTP error: {e}") from e

        for index in sorted(pending):
            entry = pending[index]
            arguments, parse_error = self._parse_arguments(entry["arguments"])
            yield ToolCallRequest(
                id=entry["id"] or f"call_{uuid.uuid4().hex[:12]}",
                name=entry["name"],
                arguments=arguments,
                parse_error=parse_error,
            )

        yield StepFinish(reason=map_finish_reason(finish_raw, bool(pending)), usage=usage)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(config: Any) -> LLMProvider:
    """Create an LLM provider from a `Config`.

    Raises:
        ConfigurationError for an unsupported provider or a missing API key
    """
    provider = (config.model.provider or "").strip().lower()
    if provider not in {"openrouter", "openai"}:
        raise ConfigurationError(f"Provider '{config.model.provider}' not supported. Use 'openrouter'.")

    return OpenRouterProvider(
        model=config.model.model,
        api_key=config.require_api_key(),
        base_url=config.model.base_url or OPENROUTER_BASE_URL,
        timeout=config.model.timeout,
        http_referer=os.environ.get("OPENROUTER_HTTP_REFERER") or None,
        app_name=os.environ.get("OPENROUTER_APP_NAME") or None,
    )


def ensure_llm_error(error: BaseException) -> LLMError:
    """Wrap unexpected backend failures as `LLMError`."""
    if isinstance(error, LLMError):
        return error
    return LLMError(f"Backend stream failed: {error}")
