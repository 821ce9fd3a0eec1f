"""Message log records shared by the task loop, combiners and storage."""

import json
import time
from dataclasses import dataclass, field
from typing import Any

SAY_TYPES = frozenset({
    "text",
    "completion_result",
    "error",
    "api_req_started",
    "api_req_finished",
    "api_req_retried",
    "user_feedback",
    "tool",
    "condense_context",
    "command_output",
    "mcp_server_response",
})

ASK_TYPES = frozenset({
    "followup",
    "completion_result",
    "api_req_failed",
    "tool",
    "command",
    "use_mcp_server",
    "resume_task",
    "resume_completed_task",
    "command_output",
    "mistake_limit_reached",
})

# Asks that may be answered by the operator while the task is waiting.
BLOCKING_ASKS = frozenset({
    "followup",
    "completion_result",
    "api_req_failed",
    "tool",
    "command",
    "use_mcp_server",
    "resume_task",
    "resume_completed_task",
    "mistake_limit_reached",
})

ASK_RESPONSES = frozenset({"yesButtonClicked", "noButtonClicked", "messageResponse"})


def now_ms() -> int:
    """Current wall clock in milliseconds."""
    return int(time.time() * 1000)


@dataclass
class ContextCondense:
    """Outcome of a condensation, attached to a ``condense_context`` say."""

    cost: float = 0.0
    prev_context_tokens: int = 0
    new_context_tokens: int = 0
    summary: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "cost": self.cost,
            "prevContextTokens": self.prev_context_tokens,
            "newContextTokens": self.new_context_tokens,
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContextCondense":
        return cls(
            cost=data.get("cost", 0.0),
            prev_context_tokens=data.get("prevContextTokens", 0),
            new_context_tokens=data.get("newContextTokens", 0),
            summary=data.get("summary", ""),
        )


@dataclass
class Message:
    """One entry of the operator-facing message log."""

    ts: int
    type: str  # "say" or "ask"
    say: str | None = None
    ask: str | None = None
    text: str | None = None
    partial: bool = False
    images: list[str] | None = None
    context_condense: ContextCondense | None = None

    @property
    def subtype(self) -> str | None:
        """The say or ask subtype, whichever applies."""
        return self.say if self.type == "say" else self.ask

    def is_say(self, subtype: str) -> bool:
        return self.type == "say" and self.say == subtype

    def is_ask(self, subtype: str) -> bool:
        return self.type == "ask" and self.ask == subtype

    def to_dict(self) -> dict[str, Any]:
        """Convert to the persisted dictionary shape."""
        data: dict[str, Any] = {"ts": self.ts, "type": self.type}
        if self.say is not None:
            data["say"] = self.say
        if self.ask is not None:
            data["ask"] = self.ask
        if self.text is not None:
            data["text"] = self.text
        if self.partial:
            data["partial"] = True
        if self.images:
            data["images"] = list(self.images)
        if self.context_condense is not None:
            data["contextCondense"] = self.context_condense.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        """Create from dictionary."""
        condense = data.get("contextCondense")
        return cls(
            ts=int(data.get("ts", 0)),
            type=data.get("type", "say"),
            say=data.get("say"),
            ask=data.get("ask"),
            text=data.get("text"),
            partial=bool(data.get("partial", False)),
            images=data.get("images"),
            context_condense=ContextCondense.from_dict(condense) if isinstance(condense, dict) else None,
        )


@dataclass
class ApiMessage:
    """A model-facing conversation turn."""

    role: str  # "user" or "assistant"
    content: str | list[dict[str, Any]]
    ts: int | None = None
    is_summary: bool = False

    def text_content(self) -> str:
        """Flatten text blocks into one string."""
        if isinstance(self.content, str):
            return self.content
        parts: list[str] = []
        for block in self.content:
            if block.get("type") == "text":
                parts.append(str(block.get("text", "")))
            elif block.get("type") == "tool_result":
                inner = block.get("content", "")
                parts.append(inner if isinstance(inner, str) else str(inner))
        return "\n".join(parts)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.ts is not None:
            data["ts"] = self.ts
        if self.is_summary:
            data["isSummary"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ApiMessage":
        return cls(
            role=data.get("role", "user"),
            content=data.get("content", ""),
            ts=data.get("ts"),
            is_summary=bool(data.get("isSummary", False)),
        )

    def tool_use_ids(self) -> set[str]:
        if isinstance(self.content, str):
            return set()
        return {str(block.get("id", "")) for block in self.content if block.get("type") == "tool_use"}

    def has_tool_results(self) -> bool:
        return isinstance(self.content, list) and any(
            block.get("type") == "tool_result" for block in self.content
        )


def tool_block_as_text(block: dict[str, Any]) -> dict[str, Any]:
    """Render a tool_use or tool_result block as a plain text block."""
    if block.get("type") == "tool_use":
        arguments = json.dumps(block.get("input", {}), ensure_ascii=False)
        return {"type": "text", "text": f"[Tool call {block.get('name', '')}] {arguments}"}
    if block.get("type") == "tool_result":
        inner = block.get("content", "")
        if not isinstance(inner, str):
            inner = json.dumps(inner, ensure_ascii=False)
        return {"type": "text", "text": f"[Tool result]\n{inner}"}
    return block


def flatten_tool_blocks(message: ApiMessage) -> ApiMessage:
    """Copy of ``message`` whose tool blocks are plain text."""
    if isinstance(message.content, str):
        return message
    return ApiMessage(
        role=message.role,
        content=[tool_block_as_text(block) for block in message.content],
        ts=message.ts,
        is_summary=message.is_summary,
    )


def repair_orphaned_tool_results(messages: list[ApiMessage]) -> list[ApiMessage]:
    """Turn tool results whose tool call is no longer in the list into text.

    Native tool-calling endpoints reject a result without its call.
    """
    seen: set[str] = set()
    repaired: list[ApiMessage] = []
    for message in messages:
        if message.has_tool_results() and any(
            block.get("type") == "tool_result" and str(block.get("tool_use_id", "")) not in seen
            for block in message.content
        ):
            message = ApiMessage(
                role=message.role,
                content=[
                    tool_block_as_text(block)
                    if block.get("type") == "tool_result" and str(block.get("tool_use_id", "")) not in seen
                    else block
                    for block in message.content
                ],
                ts=message.ts,
                is_summary=message.is_summary,
            )
        seen |= message.tool_use_ids()
        repaired.append(message)
    return repaired


@dataclass
class ToolCall:
    """A tool invocation normalized from native or XML format."""

    name: str
    params: dict[str, Any] = field(default_factory=dict)
    id: str | None = None
