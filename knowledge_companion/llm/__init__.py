"""Chat-completion provider - direct HTTP calls to OpenAI-compatible APIs."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from knowledge_companion.config import PROVIDER_DEFAULTS
from knowledge_companion.exceptions import LLMAPIError, LLMError
from knowledge_companion.logging import get_logger

log = get_logger(__name__)


@dataclass
class ToolCall:
    """A tool call from the LLM."""

    id: str
    name: str
    arguments: str = "{}"  # JSON text, exactly as the model produced it


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    timestamp: str | None = None


@dataclass
class LLMResponse:
    """Response from the LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class ToolCallDelta:
    """A fragment of a streamed tool call, addressed by index."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass
class StreamDelta:
    """One increment of a streamed completion."""

    content: str = ""
    tool_calls: list[ToolCallDelta] = field(default_factory=list)


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        pass

    @abstractmethod
    async def complete_streaming(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamDelta]:
        pass

    @abstractmethod
    def count_tokens(self, text: str) -> int:
        pass


def parse_sse_line(line: str) -> StreamDelta | None:
    """Decode one ``data: {...}`` SSE line into a delta.

    Returns None for blank lines, comments, the ``[DONE]`` marker and
    anything that is not valid JSON.
    """
    stripped = line.strip()
    if not stripped.startswith("data:"):
        return None
    data = stripped[5:].strip()
    if not data or data == "[DONE]":
        return None
    try:
        chunk = json.loads(data)
    except json.JSONDecodeError:
        return None
    choices = chunk.get("choices") if isinstance(chunk, dict) else None
    if not isinstance(choices, list) or not choices:
        return None
    delta = choices[0].get("delta") or {}
    if not isinstance(delta, dict):
        return None

    result = StreamDelta(content=str(delta.get("content") or ""))
    for raw_call in delta.get("tool_calls") or []:
        if not isinstance(raw_call, dict):
            continue
        function = raw_call.get("function") or {}
        result.tool_calls.append(
            ToolCallDelta(
                index=int(raw_call.get("index") or 0),
                id=raw_call.get("id"),
                name=function.get("name"),
                arguments=str(function.get("arguments") or ""),
            )
        )
    return result


class ChatCompletionProvider(LLMProvider):
    """OpenAI-compatible chat-completion provider (MiniMax, Grok, OpenAI)."""

    def __init__(
        self,
        model: str,
        base_url: str,
        api_key: str = "",
        temperature: float = 1.0,
        top_p: float = 0.95,
        max_tokens: int = 8192,
        stream_max_tokens: int = 32768,
        timeout: float = 120.0,
        stream_timeout: float = 300.0,
    ):
        """Initialize provider.

        Args:
            model: Model name sent with every request
            base_url: API root, ``/chat/completions`` is appended
            api_key: Bearer token
            temperature: Sampling temperature
            top_p: Nucleus sampling value
            max_tokens: Max tokens for buffered completions
            stream_max_tokens: Max tokens for streamed completions
            timeout: Buffered request timeout in seconds
            stream_timeout: Streamed request timeout in seconds
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.temperature = temperature
        self.top_p = top_p
        self.max_tokens = max_tokens
        self.stream_max_tokens = stream_max_tokens
        self.stream_timeout = stream_timeout

        self.client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _convert_messages(messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to the chat-completions wire format."""
        result = []
        for msg in messages:
            entry: dict[str, Any] = {"role": msg.role, "content": msg.content or ""}
            if msg.role == "assistant" and msg.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": tc.arguments},
                    }
                    for tc in msg.tool_calls
                ]
            if msg.role == "tool" and msg.tool_call_id:
                entry["tool_call_id"] = msg.tool_call_id
            result.append(entry)
        return result

    def _build_body(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None,
        temperature: float | None,
        max_tokens: int | None,
        stream: bool,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "max_tokens": max_tokens or (self.stream_max_tokens if stream else self.max_tokens),
            "temperature": self.temperature if temperature is None else temperature,
            "top_p": self.top_p,
        }
        if tools:
            body["tools"] = tools
        if stream:
            body["stream"] = True
        return body

    @staticmethod
    def _parse_tool_calls(raw_calls: Any) -> list[ToolCall]:
        tool_calls: list[ToolCall] = []
        if not isinstance(raw_calls, list):
            return tool_calls
        for call in raw_calls:
            if not isinstance(call, dict):
                continue
            function = call.get("function") or {}
            name = function.get("name")
            if not name or "arguments" not in function:
                continue
            args = function["arguments"]
            arguments = args if isinstance(args, str) else json.dumps(args)
            tool_calls.append(ToolCall(id=str(call.get("id") or ""), name=name, arguments=arguments))
        return tool_calls

    async def complete(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a buffered completion."""
        url = f"{self.base_url}/chat/completions"
        body = self._build_body(messages, tools, temperature, max_tokens, stream=False)

        try:
            log.debug("Calling completion API", model=self.model, url=url, msg_count=len(messages))
            response = await self.client.post(url, json=body, headers=self._headers())

            if not response.is_success:
                raise LLMAPIError(
                    f"API error: {response.text}",
                    status_code=response.status_code,
                )

            data = response.json()
            message = (data.get("choices") or [{}])[0].get("message")
            if not isinstance(message, dict):
                raise LLMError("Invalid response format: missing choices[0].message")

            return LLMResponse(
                content=str(message.get("content") or ""),
                tool_calls=self._parse_tool_calls(message.get("tool_calls")),
                model=str(data.get("model") or self.model),
                usage=dict(data.get("usage") or {}),
            )

        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Request failed: {e}")
        except json.JSONDecodeError as e:
            raise LLMError(f"Failed to parse response: {e}")
        except Exception as e:
            raise LLMError(f"Completion call failed: {e}")

    async def complete_streaming(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamDelta]:
        """Stream a completion as content and tool-call deltas."""
        url = f"{self.base_url}/chat/completions"
        body = self._build_body(messages, tools, temperature, max_tokens, stream=True)

        try:
            async with self.client.stream(
                "POST",
                url,
                json=body,
                headers=self._headers(),
                timeout=self.stream_timeout,
            ) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"API error: {error_text}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    if line.strip() == "data: [DONE]":
                        break
                    delta = parse_sse_line(line)
                    if delta is not None:
                        yield delta

        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Stream error: {e}")
        except Exception as e:
            raise LLMError(f"Stream failed: {e}")

    def count_tokens(self, text: str) -> int:
        """Count tokens (rough estimate: ~1 token per 4 characters)."""
        return len(text) // 4

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "minimax",
    model: str = "",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 1.0,
    top_p: float = 0.95,
    max_tokens: int = 8192,
    stream_max_tokens: int = 32768,
    timeout: float = 120.0,
    stream_timeout: float = 300.0,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (minimax, grok, openai)
        model: Model name, provider default when empty
        api_key: Optional API key
        base_url: Optional base URL, provider default when empty

    Returns:
        Configured LLMProvider instance
    """
    key = (provider or "").strip().lower()
    if key not in PROVIDER_DEFAULTS:
        raise ValueError(
            f"Provider '{provider}' not supported. Use one of: {', '.join(PROVIDER_DEFAULTS)}."
        )
    default_base, default_model = PROVIDER_DEFAULTS[key]
    return ChatCompletionProvider(
        model=model or default_model,
        base_url=base_url or default_base,
        api_key=api_key or "",
        temperature=temperature,
        top_p=top_p,
        max_tokens=max_tokens,
        stream_max_tokens=stream_max_tokens,
        timeout=timeout,
        stream_timeout=stream_timeout,
    )


def create_provider_from_config(cfg: Any) -> LLMProvider:
    """Build the provider described by a ``Config`` instance."""
    return create_provider(
        provider=cfg.model.provider,
        model=cfg.model.model,
        api_key=cfg.model.api_key or None,
        base_url=cfg.model.base_url or None,
        temperature=cfg.model.temperature,
        top_p=cfg.model.top_p,
        max_tokens=cfg.model.max_tokens,
        stream_max_tokens=cfg.model.stream_max_tokens,
        timeout=cfg.model.timeout,
        stream_timeout=cfg.model.stream_timeout,
    )
