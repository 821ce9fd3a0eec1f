"""LLM-generated summaries that stand in for older conversation turns."""

import math
from dataclasses import dataclass, field

from maxian.llm import ApiHandler
from maxian.logging import get_logger
from maxian.messages import ApiMessage, flatten_tool_blocks, now_ms
from maxian.pricing import calculate_cost

log = get_logger(__name__)

N_MESSAGES_TO_KEEP = 3
MIN_CONDENSE_THRESHOLD = 5  # percent of the context window
MAX_CONDENSE_THRESHOLD = 100

SUMMARY_PROMPT = """\
You are a helpful AI assistant tasked with summarizing conversations.

Your task is to create a detailed summary of the conversation so far, paying close attention to the user's explicit requests and your previous actions.
This summary should be thorough in capturing technical details, code patterns, and architectural decisions that would be essential for continuing with the conversation and supporting any continuing tasks.

Your summary should be structured as follows:
1. Previous Conversation: High level details about what was discussed throughout the entire conversation with the user.
2. Current Work: Describe in detail what was being worked on prior to this request to summarize the conversation.
3. Key Technical Concepts: List all important technical concepts, technologies, coding conventions, and frameworks discussed.
4. Relevant Files and Code: Enumerate specific files and code sections examined, modified, or created for the task continuation.
5. Problem Solving: Document problems solved thus far and any ongoing troubleshooting efforts.
6. Pending Tasks and Next Steps: Outline all pending tasks that you have explicitly been asked to work on, as well as the next steps you will take.

Output only the summary of the conversation so far, without any additional commentary or explanation.
"""

SUMMARY_REQUEST = "Summarize the conversation so far, as described in the prompt instructions."
CONTINUE_PREAMBLE = "Please continue from the following summary:"


@dataclass
class SummarizeResponse:
    """Result of a condensation attempt. ``error`` is set iff it failed."""

    messages: list[ApiMessage] = field(default_factory=list)
    summary: str = ""
    cost: float = 0.0
    new_context_tokens: int | None = None
    error: str | None = None


def get_messages_since_last_summary(messages: list[ApiMessage]) -> list[ApiMessage]:
    """Messages from the last summary onward, always starting with a user turn."""
    last_summary_index = next(
        (i for i in range(len(messages) - 1, -1, -1) if messages[i].is_summary),
        None,
    )
    if last_summary_index is None:
        return messages

    since_summary = messages[last_summary_index:]
    if since_summary and since_summary[0].role != "user":
        first = messages[0]
        if first.role == "user":
            return [first, *since_summary]
        preamble = ApiMessage(
            role="user",
            content=CONTINUE_PREAMBLE,
            ts=(first.ts - 1) if first.ts else now_ms(),
        )
        return [preamble, *since_summary]
    return since_summary


def _message_chars(message: ApiMessage) -> int:
    if isinstance(message.content, str):
        return len(message.content)
    total = 0
    for block in message.content:
        if block.get("type") == "text":
            total += len(str(block.get("text", "")))
        elif block.get("type") == "tool_result":
            inner = block.get("content", "")
            total += len(inner) if isinstance(inner, str) else len(str(inner))
        elif block.get("type") == "tool_use":
            total += len(str(block.get("input", "")))
    return total


def _split_index(messages: list[ApiMessage]) -> int:
    """Start of the kept tail, moved back so no kept tool result loses its call."""
    split = len(messages) - N_MESSAGES_TO_KEEP
    while split > 0 and messages[split].has_tool_results():
        split -= 1
    return split


async def summarize_conversation(
    messages: list[ApiMessage],
    api_handler: ApiHandler,
    system_prompt: str,
    task_id: str,
    prev_context_tokens: int,
    is_automatic_trigger: bool = False,
    custom_condensing_prompt: str | None = None,
    condensing_api_handler: ApiHandler | None = None,
) -> SummarizeResponse:
    """Summarize all but the first and the most recent turns.

    The returned list keeps every original message and inserts the summary
    before the kept tail; callers send ``get_messages_since_last_summary`` of
    it to the model. The tail is the last ``N_MESSAGES_TO_KEEP`` messages,
    extended back to the assistant turn whose tool calls it answers.

    Args:
        messages: Full conversation history
        api_handler: Handler for the main model
        system_prompt: System prompt, counted toward the new context size
        task_id: Task ID, for logging
        prev_context_tokens: Context size before condensing
        is_automatic_trigger: Whether the window policy triggered this
        custom_condensing_prompt: Replaces the default summary prompt
        condensing_api_handler: Dedicated handler for summarizing

    Returns:
        SummarizeResponse; failures are reported in ``error``
    """
    response = SummarizeResponse(messages=messages)

    split = _split_index(messages)
    to_summarize = get_messages_since_last_summary(messages[:split]) if split > 0 else []
    if len(to_summarize) <= 1:
        response.error = "Not enough messages to condense the context."
        return response

    keep = messages[split:]
    if any(message.is_summary for message in keep):
        response.error = "The context was condensed recently; skipping."
        return response

    handler = condensing_api_handler or api_handler
    prompt = (custom_condensing_prompt or "").strip() or SUMMARY_PROMPT
    request = [
        *(flatten_tool_blocks(m) for m in to_summarize),
        ApiMessage(role="user", content=SUMMARY_REQUEST, ts=now_ms()),
    ]

    try:
        result = await handler.complete(prompt, request)
    except Exception as e:
        log.error("Condensing failed", task_id=task_id, error=str(e))
        response.error = f"Failed to condense the context: {e}"
        return response

    input_tokens = int(result.usage.get("prompt_tokens", 0))
    output_tokens = int(result.usage.get("completion_tokens", 0))
    response.cost = calculate_cost(handler.model, input_tokens, output_tokens)

    summary = result.content.strip()
    if not summary:
        response.error = "Condensing produced an empty summary."
        return response

    summary_message = ApiMessage(
        role="user",
        content=summary,
        ts=keep[0].ts if keep[0].ts is not None else now_ms(),
        is_summary=True,
    )
    new_messages = [*messages[:split], summary_message, *keep]

    kept_chars = len(system_prompt) + sum(_message_chars(m) for m in keep)
    new_context_tokens = (output_tokens or api_handler.count_tokens(summary)) + math.ceil(kept_chars / 4)
    if new_context_tokens >= prev_context_tokens:
        response.error = "Condensing did not reduce the context size."
        return response

    log.info(
        "Condensed conversation",
        task_id=task_id,
        automatic=is_automatic_trigger,
        prev_tokens=prev_context_tokens,
        new_tokens=new_context_tokens,
    )
    return SummarizeResponse(
        messages=new_messages,
        summary=summary,
        cost=response.cost,
        new_context_tokens=new_context_tokens,
    )
