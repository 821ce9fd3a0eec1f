"""Model API handlers - streaming HTTP calls to OpenAI-compatible endpoints."""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from maxian.exceptions import LLMAPIError, LLMError
from maxian.logging import get_logger
from maxian.messages import ApiMessage, ToolCall

log = get_logger(__name__)


DASHSCOPE_COMPATIBLE_BASE_URL = "https://dashscope.aliyuncs.com/compatible-mode/v1"


@dataclass
class StreamChunk:
    """One item of a streamed completion."""

    type: str  # "text", "tool_call", "usage"
    text: str = ""
    tool_call: ToolCall | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int | None = None
    cache_read_tokens: int | None = None


@dataclass
class LLMResponse:
    """Fully collected completion."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


class ApiHandler(ABC):
    """Abstract base class for model API handlers."""

    model: str = ""
    # Whether the handler sends tool schemas and emits native tool calls.
    supports_native_tools: bool = False

    @abstractmethod
    async def stream_completion(
        self,
        system_prompt: str,
        messages: list[ApiMessage],
        tools: list[ToolDefinition] | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        pass

    def count_tokens(self, text: str) -> int:
        """Rough estimate: ~1 token per 4 characters."""
        return (len(text) + 3) // 4

    async def complete(
        self,
        system_prompt: str,
        messages: list[ApiMessage],
        abort_event: asyncio.Event | None = None,
    ) -> LLMResponse:
        """Collect a streamed completion into one response."""
        parts: list[str] = []
        tool_calls: list[ToolCall] = []
        usage = {"prompt_tokens": 0, "completion_tokens": 0}
        async for chunk in self.stream_completion(system_prompt, messages, abort_event=abort_event):
            if chunk.type == "text":
                parts.append(chunk.text)
            elif chunk.type == "tool_call" and chunk.tool_call is not None:
                tool_calls.append(chunk.tool_call)
            elif chunk.type == "usage":
                usage["prompt_tokens"] += chunk.input_tokens
                usage["completion_tokens"] += chunk.output_tokens
        return LLMResponse(content="".join(parts), tool_calls=tool_calls, model=self.model, usage=usage)

    async def close(self) -> None:
        return None


def _convert_block(block: dict[str, Any]) -> dict[str, Any] | None:
    """Convert one content block to OpenAI chat format."""
    block_type = block.get("type")
    if block_type == "text":
        return {"type": "text", "text": str(block.get("text", ""))}
    if block_type == "image":
        source = block.get("source") or {}
        media_type = source.get("media_type", "image/png")
        data = source.get("data", "")
        return {"type": "image_url", "image_url": {"url": f"data:{media_type};base64,{data}"}}
    return None


class OpenAICompatibleHandler(ApiHandler):
    """Streaming chat-completions client (DashScope, OpenAI and compatibles)."""

    def __init__(
        self,
        model: str = "qwen-plus",
        base_url: str = DASHSCOPE_COMPATIBLE_BASE_URL,
        api_key: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 8192,
        native_tools: bool = False,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the handler.

        Args:
            model: Model name (e.g., 'qwen-plus', 'gpt-4')
            base_url: API base URL, without the /chat/completions suffix
            api_key: Bearer token
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            native_tools: Send tool schemas and accept native tool calls
            timeout: Request timeout in seconds
            client: Optional preconfigured httpx client
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.supports_native_tools = native_tools
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    def _convert_messages(self, system_prompt: str, messages: list[ApiMessage]) -> list[dict[str, Any]]:
        """Convert conversation turns to chat-completions messages."""
        result: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]

        for msg in messages:
            if isinstance(msg.content, str):
                result.append({"role": msg.role, "content": msg.content})
                continue

            parts: list[dict[str, Any]] = []
            tool_calls: list[dict[str, Any]] = []
            tool_results: list[dict[str, Any]] = []
            for block in msg.content:
                if block.get("type") == "tool_use":
                    tool_calls.append({
                        "id": block.get("id", ""),
                        "type": "function",
                        "function": {
                            "name": block.get("name", ""),
                            "arguments": json.dumps(block.get("input", {}), ensure_ascii=False),
                        },
                    })
                elif block.get("type") == "tool_result":
                    content = block.get("content", "")
                    tool_results.append({
                        "role": "tool",
                        "tool_call_id": block.get("tool_use_id", ""),
                        "content": content if isinstance(content, str) else json.dumps(content),
                    })
                else:
                    converted = _convert_block(block)
                    if converted is not None:
                        parts.append(converted)

            result.extend(tool_results)
            if msg.role == "assistant":
                entry: dict[str, Any] = {
                    "role": "assistant",
                    "content": "".join(p.get("text", "") for p in parts if p["type"] == "text"),
                }
                if tool_calls:
                    entry["tool_calls"] = tool_calls
                result.append(entry)
            elif parts:
                result.append({"role": msg.role, "content": parts})

        return result

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": tool.parameters or {},
                },
            }
            for tool in tools
            if tool.name
        ]

    async def stream_completion(
        self,
        system_prompt: str,
        messages: list[ApiMessage],
        tools: list[ToolDefinition] | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a completion as text, tool-call and usage chunks."""
        url = f"{self.base_url}/chat/completions"

        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(system_prompt, messages),
            "stream": True,
            "stream_options": {"include_usage": True},
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if tools and self.supports_native_tools:
            body["tools"] = self._convert_tools(tools)

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        # Tool-call deltas arrive in fragments keyed by index.
        pending_calls: dict[int, dict[str, str]] = {}

        try:
            log.debug("Calling model", model=self.model, url=url, msg_count=len(messages))
            async with self.client.stream("POST", url, json=body, headers=headers) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    if abort_event is not None and abort_event.is_set():
                        log.info("Stream aborted", model=self.model)
                        return
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        payload = json.loads(data)
                    except json.JSONDecodeError:
                        continue

                    for choice in payload.get("choices") or []:
                        delta = choice.get("delta") or {}
                        if delta.get("content"):
                            yield StreamChunk(type="text", text=delta["content"])
                        for tc in delta.get("tool_calls") or []:
                            slot = pending_calls.setdefault(
                                int(tc.get("index", 0)), {"id": "", "name": "", "arguments": ""}
                            )
                            if tc.get("id"):
                                slot["id"] = tc["id"]
                            function = tc.get("function") or {}
                            if function.get("name"):
                                slot["name"] = function["name"]
                            if function.get("arguments"):
                                slot["arguments"] += function["arguments"]
                        if choice.get("finish_reason") == "tool_calls":
                            for chunk in self._flush_tool_calls(pending_calls):
                                yield chunk

                    usage = payload.get("usage")
                    if usage:
                        details = usage.get("prompt_tokens_details") or {}
                        yield StreamChunk(
                            type="usage",
                            input_tokens=int(usage.get("prompt_tokens", 0) or 0),
                            output_tokens=int(usage.get("completion_tokens", 0) or 0),
                            cache_read_tokens=details.get("cached_tokens"),
                        )

            for chunk in self._flush_tool_calls(pending_calls):
                yield chunk

        except httpx.HTTPError as e:
            raise LLMAPIError(f"HTTP error: {e}")
        except LLMError:
            raise
        except Exception as e:
            raise LLMError(f"Stream failed: {e}")

    @staticmethod
    def _flush_tool_calls(pending: dict[int, dict[str, str]]) -> list[StreamChunk]:
        chunks: list[StreamChunk] = []
        for index in sorted(pending):
            slot = pending[index]
            try:
                arguments = json.loads(slot["arguments"]) if slot["arguments"] else {}
            except json.JSONDecodeError:
                arguments = {"_raw_arguments": slot["arguments"]}
            chunks.append(StreamChunk(
                type="tool_call",
                tool_call=ToolCall(
                    id=slot["id"] or f"call_{index}",
                    name=slot["name"],
                    params=arguments if isinstance(arguments, dict) else {"_raw_arguments": slot["arguments"]},
                ),
            ))
        pending.clear()
        return chunks

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_handler(
    provider: str = "openai_compatible",
    model: str = "qwen-plus",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.2,
    max_tokens: int = 8192,
    native_tools: bool = False,
    timeout: float = 120.0,
) -> ApiHandler:
    """Create an API handler.

    Args:
        provider: Provider name (openai_compatible, qwen, openai)
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Default max tokens
        native_tools: Use native function calling
        timeout: Request timeout in seconds

    Returns:
        Configured ApiHandler instance
    """
    if provider in {"openai_compatible", "qwen", "openai"}:
        default_base = base_url or (
            "https://api.openai.com/v1" if provider == "openai" else DASHSCOPE_COMPATIBLE_BASE_URL
        )
        return OpenAICompatibleHandler(
            model=model,
            base_url=default_base,
            api_key=api_key,
            temperature=temperature,
            max_tokens=max_tokens,
            native_tools=native_tools,
            timeout=timeout,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'openai_compatible', 'qwen' or 'openai'.")

