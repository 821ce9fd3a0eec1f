"""Token and cost metrics derived from a combined message log."""

import json
from dataclasses import asdict, dataclass
from typing import Any

from maxian.combine import safe_json_parse
from maxian.logging import get_logger
from maxian.messages import Message

log = get_logger(__name__)


@dataclass
class TokenUsage:
    """Cumulative usage for a task.

    ``context_tokens`` is not a running total: it is the size of the context
    window as of the most recent request or condensation.
    """

    total_tokens_in: int = 0
    total_tokens_out: int = 0
    total_cache_writes: int | None = None
    total_cache_reads: int | None = None
    total_cost: float = 0.0
    context_tokens: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _number_or_zero(value: Any) -> float:
    return value if _is_number(value) else 0


def _parse_request_info(message: Message) -> dict[str, Any] | None:
    """Parse an ``api_req_started`` payload, or None when it is malformed."""
    try:
        info = json.loads(message.text or "")
    except (json.JSONDecodeError, TypeError, ValueError) as e:
        log.debug("Skipping malformed api_req_started", ts=message.ts, error=str(e))
        return None
    return info if isinstance(info, dict) else None


def get_api_metrics(messages: list[Message]) -> TokenUsage:
    """Aggregate usage over messages that went through ``combine_api_requests``.

    Args:
        messages: Combined message log

    Returns:
        TokenUsage with running totals and the current context size
    """
    usage = TokenUsage()

    for message in messages:
        if message.is_say("api_req_started") and message.text:
            info = _parse_request_info(message)
            if info is None:
                continue
            if _is_number(info.get("tokensIn")):
                usage.total_tokens_in += info["tokensIn"]
            if _is_number(info.get("tokensOut")):
                usage.total_tokens_out += info["tokensOut"]
            if _is_number(info.get("cacheWrites")):
                usage.total_cache_writes = (usage.total_cache_writes or 0) + info["cacheWrites"]
            if _is_number(info.get("cacheReads")):
                usage.total_cache_reads = (usage.total_cache_reads or 0) + info["cacheReads"]
            if _is_number(info.get("cost")):
                usage.total_cost += info["cost"]
        elif message.is_say("condense_context"):
            if message.context_condense is not None:
                usage.total_cost += _number_or_zero(message.context_condense.cost)
        elif message.is_ask("tool") and message.text:
            payload = safe_json_parse(message.text, {})
            fast_apply = payload.get("fastApplyResult") if isinstance(payload, dict) else None
            if isinstance(fast_apply, dict):
                usage.total_tokens_in += _number_or_zero(fast_apply.get("tokensIn"))
                usage.total_tokens_out += _number_or_zero(fast_apply.get("tokensOut"))
                usage.total_cost += _number_or_zero(fast_apply.get("cost"))

    for message in reversed(messages):
        if message.is_say("api_req_started") and message.text:
            info = _parse_request_info(message)
            if info is None:
                continue
            usage.context_tokens = int(
                _number_or_zero(info.get("tokensIn")) + _number_or_zero(info.get("tokensOut"))
            )
        elif message.is_say("condense_context"):
            condense = message.context_condense
            usage.context_tokens = int(_number_or_zero(condense.new_context_tokens)) if condense else 0
        if usage.context_tokens:
            break

    return usage


def has_token_usage_changed(current: TokenUsage, snapshot: TokenUsage | None) -> bool:
    """Return whether any tracked usage field differs from the snapshot."""
    if snapshot is None:
        return True
    return current.to_dict() != snapshot.to_dict()
