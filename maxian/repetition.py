"""Detect consecutive identical tool calls."""

import json
from dataclasses import dataclass
from typing import Any

from maxian.logging import get_logger
from maxian.messages import ToolCall

log = get_logger(__name__)

_BROWSER_SCROLL_ACTIONS = {"scroll_down", "scroll_up"}


@dataclass
class RepetitionCheck:
    """Verdict for one tool call."""

    allow_execution: bool
    ask_user: dict[str, str] | None = None


def repetition_limit_message(tool_name: str) -> str:
    return (
        f"Maxian appears to be stuck in a loop, attempting the same action ({tool_name}) "
        "repeatedly. This might indicate a problem with its current strategy. Consider "
        "rephrasing the task, providing more specific instructions, or guiding it toward "
        "a different approach."
    )


class ToolRepetitionDetector:
    """Veto a tool call once it has been issued ``limit`` times in a row.

    A limit of zero or less disables the check.
    """

    def __init__(self, limit: int = 3):
        self.limit = limit
        self._previous: str | None = None
        self._count = 0

    @property
    def consecutive_count(self) -> int:
        return self._count

    def check(self, tool_call: ToolCall) -> RepetitionCheck:
        if self._is_browser_scroll(tool_call):
            return RepetitionCheck(allow_execution=True)

        serialized = self._serialize(tool_call)
        if serialized == self._previous:
            self._count += 1
        else:
            self._previous = serialized
            self._count = 1

        if self.limit > 0 and self._count >= self.limit:
            log.warning("Tool repetition limit reached", tool=tool_call.name, count=self._count)
            self.reset()
            return RepetitionCheck(
                allow_execution=False,
                ask_user={
                    "message_key": "mistake_limit_reached",
                    "message_detail": repetition_limit_message(tool_call.name),
                },
            )

        return RepetitionCheck(allow_execution=True)

    def reset(self) -> None:
        self._previous = None
        self._count = 0

    @staticmethod
    def _is_browser_scroll(tool_call: ToolCall) -> bool:
        return (
            tool_call.name == "browser_action"
            and tool_call.params.get("action") in _BROWSER_SCROLL_ACTIONS
        )

    @staticmethod
    def _serialize(tool_call: ToolCall) -> str:
        params: dict[str, Any] = tool_call.params or {}
        return json.dumps(
            {"name": tool_call.name, "parameters": params},
            sort_keys=True,
            ensure_ascii=False,
            default=str,
        )
