"""System prompt assembly."""

import platform
from pathlib import Path
from typing import Any

from maxian.llm import ToolDefinition

ATTEMPT_COMPLETION = "attempt_completion"
ASK_FOLLOWUP_QUESTION = "ask_followup_question"

# Tools the task loop handles itself instead of dispatching to the executor.
TASK_TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": ASK_FOLLOWUP_QUESTION,
        "description": (
            "Ask the user a question to gather information needed to complete the task. "
            "Use this only when the information cannot be found with the other tools."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "question": {
                    "type": "string",
                    "description": "The question to ask the user",
                },
            },
            "required": ["question"],
        },
    },
    {
        "name": ATTEMPT_COMPLETION,
        "description": (
            "Present the result of the task to the user once every step is done and "
            "confirmed. The user may respond with feedback to continue the task."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "result": {
                    "type": "string",
                    "description": "Final result of the task, without a closing question",
                },
            },
            "required": ["result"],
        },
    },
]


def tool_definitions(executor_definitions: list[dict[str, Any]]) -> list[ToolDefinition]:
    """Executor tools followed by the task-level tools."""
    return [
        ToolDefinition(
            name=definition["name"],
            description=definition.get("description", ""),
            parameters=definition.get("parameters", {}),
        )
        for definition in [*executor_definitions, *TASK_TOOL_DEFINITIONS]
    ]


def _describe_tool(tool: ToolDefinition) -> str:
    properties = tool.parameters.get("properties", {})
    required = set(tool.parameters.get("required", []))
    lines = [f"## {tool.name}", f"Description: {tool.description}", "Parameters:"]
    for name, schema in properties.items():
        marker = "required" if name in required else "optional"
        lines.append(f"- {name}: ({marker}) {schema.get('description', '')}")
    example_params = "".join(f"<{name}>...</{name}>" for name in properties)
    lines.append(f"Usage:\n<TOOL_USE><tool_name>{tool.name}</tool_name>{example_params}</TOOL_USE>")
    return "\n".join(lines)


def build_system_prompt(
    cwd: Path,
    tools: list[ToolDefinition],
    native_tools: bool = False,
    ignore_instructions: str | None = None,
    mode: str = "code",
) -> str:
    """Assemble the system prompt for one task.

    Args:
        cwd: Workspace root
        tools: Every tool the model may call
        native_tools: Whether tools are sent as function schemas
        ignore_instructions: ``.maxianignore`` section, if the file exists
        mode: Agent mode label

    Returns:
        The system prompt text
    """
    sections = [
        "You are Maxian, a highly skilled software engineer with extensive knowledge in many "
        "programming languages, frameworks, design patterns, and best practices.",
        "# Tool Use\n\n"
        "You have access to a set of tools that are executed upon the user's approval. "
        "Use one tool per message and wait for its result before continuing. "
        "When the task is done, use attempt_completion.",
    ]

    if native_tools:
        sections.append("Call tools through the function-calling interface.")
    else:
        sections.append(
            "# Tool Use Formatting\n\n"
            "Tool uses are formatted as XML:\n"
            "<TOOL_USE>\n<tool_name>read_file</tool_name>\n<path>src/main.py</path>\n</TOOL_USE>\n\n"
            "# Tools\n\n" + "\n\n".join(_describe_tool(tool) for tool in tools)
        )

    sections.append(
        "# System Information\n\n"
        f"Operating System: {platform.system()}\n"
        f"Current Workspace Directory: {cwd.as_posix()}\n"
        f"Mode: {mode}"
    )

    if ignore_instructions:
        sections.append(ignore_instructions)

    return "\n\n====\n\n".join(sections)
