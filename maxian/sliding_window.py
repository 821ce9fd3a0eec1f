"""Keep the model-facing history inside the context window."""

import math
from dataclasses import dataclass, field
from typing import Any

from maxian.condense import (
    MAX_CONDENSE_THRESHOLD,
    MIN_CONDENSE_THRESHOLD,
    N_MESSAGES_TO_KEEP,
    summarize_conversation,
)
from maxian.llm import ApiHandler
from maxian.logging import get_logger
from maxian.messages import ApiMessage, repair_orphaned_tool_results

log = get_logger(__name__)

TOKEN_BUFFER_PERCENTAGE = 0.1
ANTHROPIC_DEFAULT_MAX_TOKENS = 8192


def estimate_token_count(content: list[Any] | str | None) -> int:
    """Estimate tokens as ceil(characters / 4) over text blocks."""
    if not content:
        return 0
    if isinstance(content, str):
        return math.ceil(len(content) / 4)
    total_chars = 0
    for block in content:
        if isinstance(block, str):
            total_chars += len(block)
        elif isinstance(block, dict):
            if block.get("type") == "text" and isinstance(block.get("text"), str):
                total_chars += len(block["text"])
            elif block.get("type") == "tool_result" and isinstance(block.get("content"), str):
                total_chars += len(block["content"])
    return math.ceil(total_chars / 4)


def truncate_conversation(
    messages: list[ApiMessage],
    frac_to_remove: float,
    task_id: str = "",
) -> list[ApiMessage]:
    """Drop the oldest turns after the first one.

    Removes ``floor((n - 1) * frac_to_remove)`` messages rounded down to an
    even count, so user/assistant pairs go together. The first message and
    the last ``N_MESSAGES_TO_KEEP`` messages always survive, and whenever
    there is anything between them at least one message is removed. When a
    single message goes, tool results left without their call become text.
    """
    if len(messages) <= 1:
        return list(messages)

    removable = max(0, len(messages) - 1 - N_MESSAGES_TO_KEEP)
    raw = math.floor((len(messages) - 1) * frac_to_remove)
    to_remove = min(raw - (raw % 2), removable)
    if to_remove <= 0 and removable > 0:
        to_remove = 2 if removable >= 2 else 1

    log.info("Truncating conversation", task_id=task_id, removed=to_remove, total=len(messages))
    return repair_orphaned_tool_results([messages[0], *messages[to_remove + 1:]])


@dataclass
class TruncateResponse:
    """Outcome of the window policy for one request."""

    messages: list[ApiMessage] = field(default_factory=list)
    prev_context_tokens: int = 0
    summary: str = ""
    cost: float = 0.0
    new_context_tokens: int | None = None
    error: str | None = None


def resolve_condense_threshold(
    auto_condense_context_percent: int,
    profile_thresholds: dict[str, int] | None,
    current_profile_id: str,
) -> int:
    """Per-profile threshold; -1 inherits and out-of-range values are ignored."""
    profile_threshold = (profile_thresholds or {}).get(current_profile_id)
    if profile_threshold is None or profile_threshold == -1:
        return auto_condense_context_percent
    if MIN_CONDENSE_THRESHOLD <= profile_threshold <= MAX_CONDENSE_THRESHOLD:
        return profile_threshold
    log.warning(
        "Invalid profile condense threshold, using global default",
        profile=current_profile_id,
        threshold=profile_threshold,
        default=auto_condense_context_percent,
    )
    return auto_condense_context_percent


async def truncate_conversation_if_needed(
    messages: list[ApiMessage],
    total_tokens: int,
    context_window: int,
    api_handler: ApiHandler,
    system_prompt: str,
    task_id: str,
    max_tokens: int | None = None,
    auto_condense_context: bool = True,
    auto_condense_context_percent: int = 100,
    custom_condensing_prompt: str | None = None,
    condensing_api_handler: ApiHandler | None = None,
    profile_thresholds: dict[str, int] | None = None,
    current_profile_id: str = "default",
) -> TruncateResponse:
    """Condense or truncate when the next request would not fit.

    ``total_tokens`` is the context size of the previous request; the last
    message, which that request did not include, is estimated and added.

    Returns:
        TruncateResponse with the (possibly unchanged) messages
    """
    if not messages:
        return TruncateResponse(messages=messages)

    reserved_tokens = max_tokens or ANTHROPIC_DEFAULT_MAX_TOKENS
    last_message_tokens = estimate_token_count(messages[-1].content)
    prev_context_tokens = total_tokens + last_message_tokens
    allowed_tokens = context_window * (1 - TOKEN_BUFFER_PERCENTAGE) - reserved_tokens

    threshold = resolve_condense_threshold(
        auto_condense_context_percent, profile_thresholds, current_profile_id
    )

    error: str | None = None
    cost = 0.0

    if auto_condense_context and context_window > 0:
        context_percent = 100 * prev_context_tokens / context_window
        if context_percent >= threshold or prev_context_tokens > allowed_tokens:
            result = await summarize_conversation(
                messages,
                api_handler,
                system_prompt,
                task_id,
                prev_context_tokens,
                is_automatic_trigger=True,
                custom_condensing_prompt=custom_condensing_prompt,
                condensing_api_handler=condensing_api_handler,
            )
            if result.error:
                error = result.error
                cost = result.cost
            else:
                return TruncateResponse(
                    messages=result.messages,
                    prev_context_tokens=prev_context_tokens,
                    summary=result.summary,
                    cost=result.cost,
                    new_context_tokens=result.new_context_tokens,
                )

    if prev_context_tokens > allowed_tokens:
        return TruncateResponse(
            messages=truncate_conversation(messages, 0.5, task_id),
            prev_context_tokens=prev_context_tokens,
            cost=cost,
            error=error,
        )

    return TruncateResponse(
        messages=messages,
        prev_context_tokens=prev_context_tokens,
        cost=cost,
        error=error,
    )
