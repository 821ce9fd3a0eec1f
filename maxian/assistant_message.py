"""Parse model output into text and normalized tool calls.

Two tool-call formats are accepted:
- native function calls delivered by the API handler
- ``<TOOL_USE><tool_name>read_file</tool_name><path>a.py</path></TOOL_USE>`` blocks

Native calls win when both are present.
"""

import re
from dataclasses import dataclass, field

from maxian.messages import ToolCall

_TOOL_USE_RE = re.compile(r"<TOOL_USE>(.*?)</TOOL_USE>", re.DOTALL)
_TOOL_NAME_RE = re.compile(r"<tool_name>\s*(.*?)\s*</tool_name>", re.DOTALL)
_PARAM_RE = re.compile(r"<([A-Za-z_][\w]*)>(.*?)</\1>", re.DOTALL)

# Whitespace inside these parameters is significant.
_RAW_PARAMS = {"content", "diff", "replace", "search"}


@dataclass
class ParsedAssistantMessage:
    """Text and tool calls extracted from one assistant turn."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.text and not self.tool_calls


def _clean_param(name: str, value: str) -> str:
    if name in _RAW_PARAMS:
        if value.startswith("\n"):
            value = value[1:]
        if value.endswith("\n"):
            value = value[:-1]
        return value
    return value.strip()


def parse_xml_tool_calls(content: str) -> tuple[list[ToolCall], list[str]]:
    """Extract ``<TOOL_USE>`` blocks.

    Returns:
        Tuple of (tool calls, error descriptions for malformed blocks)
    """
    calls: list[ToolCall] = []
    errors: list[str] = []

    for match in _TOOL_USE_RE.finditer(content):
        body = match.group(1)
        name_match = _TOOL_NAME_RE.search(body)
        if not name_match or not name_match.group(1).strip():
            errors.append("TOOL_USE block is missing <tool_name>")
            continue
        name = name_match.group(1).strip()
        remainder = body[:name_match.start()] + body[name_match.end():]
        params = {
            param.group(1): _clean_param(param.group(1), param.group(2))
            for param in _PARAM_RE.finditer(remainder)
        }
        calls.append(ToolCall(name=name, params=params))

    opened = content.count("<TOOL_USE>")
    closed = content.count("</TOOL_USE>")
    if opened > closed:
        errors.append("TOOL_USE block was not closed with </TOOL_USE>")

    return calls, errors


def strip_tool_blocks(content: str) -> str:
    """Remove tool-use markup, leaving the prose."""
    text = _TOOL_USE_RE.sub("", content)
    unclosed = text.find("<TOOL_USE>")
    if unclosed != -1:
        text = text[:unclosed]
    return text.strip()


def parse_assistant_message(
    content: str,
    native_tool_calls: list[ToolCall] | None = None,
) -> ParsedAssistantMessage:
    """Normalize an assistant turn into text plus tool calls."""
    content = content or ""
    if native_tool_calls:
        return ParsedAssistantMessage(
            text=strip_tool_blocks(content),
            tool_calls=list(native_tool_calls),
        )

    calls, errors = parse_xml_tool_calls(content)
    return ParsedAssistantMessage(
        text=strip_tool_blocks(content),
        tool_calls=calls,
        errors=errors,
    )
