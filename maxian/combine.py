"""Collapse paired or streamed log records into single logical records.

Both combiners are pure: they never mutate their input and return new lists
in which untouched records keep their order. Running a combiner on its own
output is a no-op.
"""

import json
from dataclasses import replace
from typing import Any

from maxian.messages import Message

COMMAND_OUTPUT_STRING = "Output:"


def safe_json_parse(text: str | None, default: Any = None) -> Any:
    """Parse JSON, returning ``default`` instead of raising."""
    if not text:
        return default
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError, ValueError):
        return default


def combine_api_requests(messages: list[Message]) -> list[Message]:
    """Merge each ``api_req_finished`` into its matching ``api_req_started``.

    Finishes close the most recently opened unmatched start (LIFO). The merged
    payload replaces the start record's text and the finish records are
    dropped.
    """
    if not messages:
        return []

    has_started = any(m.is_say("api_req_started") for m in messages)
    has_finished = any(m.is_say("api_req_finished") for m in messages)
    if not has_started and not has_finished:
        return messages

    result: list[Message] = []
    open_starts: list[int] = []

    for message in messages:
        if message.is_say("api_req_started"):
            open_starts.append(len(result))
            result.append(message)
        elif message.is_say("api_req_finished"):
            if not open_starts:
                continue
            start_index = open_starts.pop()
            start = result[start_index]
            start_info = safe_json_parse(start.text, {})
            finish_info = safe_json_parse(message.text, {})
            if not isinstance(start_info, dict):
                start_info = {}
            if not isinstance(finish_info, dict):
                finish_info = {}
            merged = {**start_info, **finish_info}
            result[start_index] = replace(start, text=json.dumps(merged))
        else:
            result.append(message)

    return result


def _is_command_output(message: Message) -> bool:
    return message.ask == "command_output" or message.say == "command_output"


def combine_command_sequences(messages: list[Message]) -> list[Message]:
    """Fold command output into commands and MCP responses into MCP requests."""
    combined: dict[int, Message] = {}
    processed: set[int] = set()

    i = 0
    while i < len(messages):
        message = messages[i]

        if message.is_ask("use_mcp_server"):
            responses: list[str] = []
            j = i + 1
            while j < len(messages):
                following = messages[j]
                if following.say == "mcp_server_response":
                    responses.append(following.text or "")
                    processed.add(j)
                elif following.is_ask("use_mcp_server"):
                    break
                j += 1

            if responses:
                payload = safe_json_parse(message.text or "{}", {})
                if not isinstance(payload, dict):
                    payload = {}
                payload["response"] = "\n".join(responses)
                combined[message.ts] = replace(message, text=json.dumps(payload))
            else:
                combined[message.ts] = replace(message)

        elif message.is_ask("command"):
            combined_text = message.text or ""
            previous: tuple[str, str] | None = None
            last_processed = i
            j = i + 1
            while j < len(messages):
                following = messages[j]
                if following.is_ask("command"):
                    break
                if _is_command_output(following):
                    text = following.text or ""
                    if previous is None:
                        combined_text += f"\n{COMMAND_OUTPUT_STRING}"
                    # Same stdout reported through both the ask and the say channel.
                    is_duplicate = (
                        previous is not None
                        and previous[0] != following.type
                        and previous[1] == text
                    )
                    if text and not is_duplicate:
                        marker_end = combined_text.index(COMMAND_OUTPUT_STRING) + len(COMMAND_OUTPUT_STRING)
                        if previous is not None and len(combined_text) > marker_end:
                            combined_text += "\n"
                        combined_text += text
                    previous = (following.type, text)
                    processed.add(j)
                    last_processed = j
                j += 1

            combined[message.ts] = replace(message, text=combined_text)
            i = max(i, last_processed)

        i += 1

    result: list[Message] = []
    for index, message in enumerate(messages):
        if index in processed:
            continue
        if _is_command_output(message) or message.say == "mcp_server_response":
            continue
        result.append(combined.get(message.ts, message))

    return result
