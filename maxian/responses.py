"""Text fed back to the model as tool results or corrective turns."""

from maxian.ignore import LOCK_TEXT_SYMBOL


def tool_denied() -> str:
    return "The user denied this operation."


def tool_denied_with_feedback(feedback: str | None = None) -> str:
    return f"The user denied this operation and provided the following feedback:\n<feedback>\n{feedback}\n</feedback>"


def tool_approved_with_feedback(feedback: str | None = None) -> str:
    return f"The user approved this operation and provided the following context:\n<feedback>\n{feedback}\n</feedback>"


def tool_error(error: str | None = None) -> str:
    return f"The tool execution failed with the following error:\n<error>\n{error}\n</error>"


def no_tools_used() -> str:
    return """[ERROR] You did not use a tool in your previous response! Please retry with a tool use.

# Next Steps

If you have completed the user's task, use the attempt_completion tool.
If you require additional information from the user, use the ask_followup_question tool.
Otherwise, if you have not completed the task and do not need additional information, then proceed with the next step of the task.
(This is an automated message, so do not respond to it conversationally.)"""


def malformed_tool_use(errors: list[str]) -> str:
    details = "\n".join(f"- {error}" for error in errors)
    return (
        "[ERROR] Your previous tool use could not be parsed:\n"
        f"{details}\n\n"
        "Use the exact format <TOOL_USE><tool_name>NAME</tool_name><param>value</param></TOOL_USE> and retry."
    )


def too_many_mistakes(feedback: str | None = None) -> str:
    return (
        "You seem to be having trouble proceeding. The user has provided the following feedback "
        f"to help guide you:\n<feedback>\n{feedback}\n</feedback>"
    )


def missing_tool_parameter_error(param_name: str) -> str:
    return f"Missing value for required parameter '{param_name}'. Please retry with complete response."


def api_request_failed(error: str) -> str:
    return f"API request failed: {error}\n\nRetry?"


def attempt_completion_feedback(feedback: str) -> str:
    return (
        "The user has provided feedback on the results. Consider their input to continue the task, "
        f"and then attempt completion again.\n<feedback>\n{feedback}\n</feedback>"
    )


def files_changed_notice(paths: list[str]) -> str:
    listing = "\n".join(paths)
    return (
        "# Recently Modified Files\n"
        "These files have been modified since you last accessed them (file was just edited so you "
        "may need to re-read it before editing):\n"
        f"{listing}"
    )


def format_files_list(files: list[str], did_hit_limit: bool, ignored: set[str] | None = None) -> str:
    """Sorted listing; ignored entries are shown with a lock."""
    if not files:
        return "No files found."

    ignored = ignored or set()
    lines = [
        f"{LOCK_TEXT_SYMBOL} {path}" if path in ignored else path
        for path in sorted(files)
    ]
    if did_hit_limit:
        lines.append("")
        lines.append("(File list truncated. Use list_files on specific subdirectories if you need to explore further.)")
    return "\n".join(lines)


def tool_skipped_after_rejection(tool_name: str) -> str:
    return f"Skipping tool {tool_name} due to user rejecting a previous tool."


def tool_interrupted() -> str:
    return "Task was interrupted before this tool call could be completed."


def task_resumption(ago: str, cwd: str, completed: bool = False) -> str:
    state = "It was previously marked complete" if completed else "It may or may not be complete"
    return (
        f"[TASK RESUMPTION] This task was interrupted {ago}. {state}, so please reassess the task "
        "context. Be aware that the project state may have changed since then. "
        f"The current working directory is now '{cwd}'. If the task has not been completed, "
        "retry the last step before interruption and proceed with completing the task."
    )


def task_resumption_instructions(text: str) -> str:
    return f"New instructions for task continuation:\n<user_message>\n{text}\n</user_message>"
