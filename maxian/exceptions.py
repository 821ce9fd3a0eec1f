"""Custom exceptions for Maxian."""


class MaxianError(Exception):
    """Base exception for Maxian."""

    pass


class ConfigurationError(MaxianError):
    """Configuration-related errors."""

    pass


class LLMError(MaxianError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(MaxianError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ProtocolError(MaxianError):
    """Malformed tool-call syntax or an ask response that matches no pending ask."""

    pass


class RepetitionExhausted(ToolError):
    """The same tool call was repeated past the repetition limit."""

    def __init__(self, tool_name: str, count: int, detail: str | None = None):
        super().__init__(f"Tool '{tool_name}' repeated {count} times in a row")
        self.tool_name = tool_name
        self.count = count
        self.detail = detail or str(self)


class PersistenceError(MaxianError):
    """Task storage I/O failed."""

    def __init__(self, path: str, message: str):
        super().__init__(f"Persistence failed for {path}: {message}")
        self.path = path


class TaskError(MaxianError):
    """Task lifecycle errors."""

    pass


class FatalTaskError(TaskError):
    """Unrecoverable task failure; the task ends in the error state."""

    pass


class TaskAbortedError(TaskError):
    """Raised inside the task loop once the task was aborted."""

    def __init__(self, task_id: str, reason: str = "user_cancelled"):
        super().__init__(f"Task {task_id} aborted: {reason}")
        self.task_id = task_id
        self.reason = reason


class TaskNotFoundError(TaskError):
    """Task not found in storage."""

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id
