"""Tool registry, base tool class and the string-result executor boundary."""

import asyncio
import re
import shlex
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, model_validator

from maxian.exceptions import ToolExecutionError, ToolNotFoundError
from maxian.logging import get_logger

if TYPE_CHECKING:
    from maxian.file_context import FileContextTracker
    from maxian.ignore import MaxianIgnoreController

log = get_logger(__name__)

# Results starting with one of these are failures.
ERROR_PREFIXES = ("❌", "⚠️", "Error:")

_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=.*$")
_SHELL_SEPARATOR_TOKENS = {";", "&&", "||", "|", "&"}
_SHELL_WRAPPER_TOKENS = {"sudo", "command", "builtin", "nohup", "time"}


def is_error_result(text: str | None) -> bool:
    """Whether an executor result signals failure."""
    return (text or "").lstrip().startswith(ERROR_PREFIXES)


def _compile_shell_pattern(pattern: str) -> re.Pattern[str]:
    """Compile regex pattern with literal fallback for invalid regex input."""
    try:
        return re.compile(pattern)
    except re.error:
        return re.compile(re.escape(pattern))


def _tokenize_shell_command(command: str) -> list[str]:
    """Tokenize shell command while preserving control operators."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    return list(lexer)


def split_shell_segments(command: str) -> list[list[str]]:
    """Split shell command into tokenized segments separated by control operators."""
    tokens = _tokenize_shell_command(command)
    segments: list[list[str]] = []
    current: list[str] = []
    for token in tokens:
        if token in _SHELL_SEPARATOR_TOKENS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def _extract_segment_base_command(tokens: list[str]) -> str:
    """Extract executable command token from a tokenized shell segment."""
    idx = 0
    while idx < len(tokens):
        token = str(tokens[idx]).strip()
        if not token:
            idx += 1
            continue
        if token in _SHELL_WRAPPER_TOKENS:
            idx += 1
            continue
        if _ASSIGNMENT_RE.match(token) and "/" not in token:
            idx += 1
            continue
        return token
    return ""


def is_blocked_shell_command(command: str, blocked_patterns: list[str]) -> tuple[bool, str]:
    """Evaluate command against blocked patterns using parsed command matching."""
    cleaned = str(command or "").strip()
    if not cleaned:
        return True, "empty_command"

    try:
        segments = split_shell_segments(cleaned)
    except ValueError:
        return True, "unparseable_command"
    if not segments:
        return True, "unparseable_command"

    segment_texts = [" ".join(tokens) for tokens in segments]
    base_commands = [
        base
        for segment in segments
        if (base := _extract_segment_base_command(segment))
    ]
    if not base_commands:
        return True, "unparseable_command"

    for raw_pattern in blocked_patterns or []:
        pattern = str(raw_pattern or "").strip()
        if not pattern:
            continue
        compiled = _compile_shell_pattern(pattern)
        segment_level_pattern = bool(re.search(r"\s", pattern))
        targets = segment_texts if segment_level_pattern else base_commands
        matcher = compiled.search if segment_level_pattern else compiled.match
        for target in targets:
            if matcher(target):
                return True, pattern
    return False, ""


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self

    def to_text(self) -> str:
        """Render for the model: content on success, ``Error:``-prefixed otherwise."""
        if self.success:
            return self.content
        return f"Error: {self.error}"


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float = 30.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            ToolResult with success status and content
        """
        pass

    def get_definition(self) -> dict[str, Any]:
        """Get the tool definition for LLM.

        Returns:
            OpenAI function-style definition
        """
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Check that required arguments are present.

        Raises:
            ToolExecutionError if a required argument is missing
        """
        required = self.parameters.get("required", [])
        for field in required:
            if field not in arguments:
                raise ToolExecutionError(
                    self.name,
                    f"Missing required argument: {field}",
                )


class ToolExecutor(ABC):
    """What the task loop dispatches tool calls to.

    Results are plain strings; failures start with one of ``ERROR_PREFIXES``.
    """

    @abstractmethod
    async def execute(
        self,
        name: str,
        params: dict[str, Any],
        abort_event: asyncio.Event | None = None,
    ) -> str:
        pass

    def get_definitions(self) -> list[dict[str, Any]]:
        return []


class ToolRegistry(ToolExecutor):
    """Registry for managing available tools of one workspace."""

    def __init__(
        self,
        cwd: Path | str | None = None,
        file_context_tracker: "FileContextTracker | None" = None,
        ignore_controller: "MaxianIgnoreController | None" = None,
    ):
        self._tools: dict[str, Tool] = {}
        self.cwd = Path(cwd or Path.cwd()).expanduser().resolve()
        self.file_context_tracker = file_context_tracker
        self.ignore_controller = ignore_controller

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        return list(self._tools)

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all tool definitions for LLM."""
        return [tool.get_definition() for tool in self._tools.values()]

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            pass

    @staticmethod
    async def _bridge_abort_event(source: asyncio.Event, target: asyncio.Event) -> None:
        """Mirror external abort event to local tool abort event."""
        await source.wait()
        target.set()

    async def run(
        self,
        name: str,
        arguments: dict[str, Any],
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        """Run a tool with timeout and abort propagation.

        Raises:
            ToolNotFoundError if tool not found
            ToolExecutionError if execution fails, times out or is aborted
        """
        tool = self.get(name)
        tool.validate_arguments(arguments)

        execute_task: asyncio.Task[ToolResult] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        bridge_task: asyncio.Task[None] | None = None
        tool_abort_event = asyncio.Event()
        try:
            log.info("Executing tool", tool=name, args=arguments)
            timeout_seconds = float(getattr(tool, "timeout_seconds", 30.0) or 30.0)
            timeout_override = arguments.get("timeout")
            if timeout_override is not None:
                try:
                    timeout_seconds = float(timeout_override)
                except (TypeError, ValueError):
                    pass
            timeout_seconds = max(1.0, timeout_seconds)

            if abort_event is not None:
                if abort_event.is_set():
                    raise ToolExecutionError(name, "Execution aborted")
                bridge_task = asyncio.create_task(
                    self._bridge_abort_event(abort_event, tool_abort_event)
                )

            execute_task = asyncio.create_task(
                tool.execute(
                    **arguments,
                    _cwd=self.cwd,
                    _file_context_tracker=self.file_context_tracker,
                    _ignore_controller=self.ignore_controller,
                    _abort_event=tool_abort_event,
                )
            )
            abort_wait_task = asyncio.create_task(tool_abort_event.wait())
            done, _ = await asyncio.wait(
                {execute_task, abort_wait_task},
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                result = await execute_task
                if not isinstance(result, ToolResult):
                    raise ToolExecutionError(name, "Tool returned invalid result payload")
                log.info("Tool executed", tool=name, success=result.success)
                return result

            if abort_wait_task in done:
                await self._cancel_task(execute_task)
                raise ToolExecutionError(name, "Execution aborted")

            tool_abort_event.set()
            await self._cancel_task(execute_task)
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            tool_abort_event.set()
            await self._cancel_task(execute_task)
            raise
        except ToolExecutionError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e))
        finally:
            await self._cancel_task(abort_wait_task)
            await self._cancel_task(bridge_task)

    async def execute(
        self,
        name: str,
        params: dict[str, Any],
        abort_event: asyncio.Event | None = None,
    ) -> str:
        """Run a tool and render the outcome as text; never raises for tool failures."""
        try:
            result = await self.run(name, params, abort_event=abort_event)
        except ToolNotFoundError as e:
            return f"Error: {e}"
        except ToolExecutionError as e:
            return f"Error: {e}"
        return result.to_text()


def create_default_registry(
    cwd: Path | str,
    file_context_tracker: "FileContextTracker | None" = None,
    ignore_controller: "MaxianIgnoreController | None" = None,
) -> ToolRegistry:
    """Registry with the built-in workspace tools."""
    from maxian.tools.list_files import ListFilesTool
    from maxian.tools.read import ReadFileTool
    from maxian.tools.search import SearchFilesTool
    from maxian.tools.shell import ExecuteCommandTool
    from maxian.tools.write import WriteToFileTool

    registry = ToolRegistry(
        cwd=cwd,
        file_context_tracker=file_context_tracker,
        ignore_controller=ignore_controller,
    )
    registry.register(ReadFileTool())
    registry.register(WriteToFileTool())
    registry.register(ListFilesTool())
    registry.register(SearchFilesTool())
    registry.register(ExecuteCommandTool())
    return registry


def resolve_tool_path(cwd: Path, path: str) -> Path:
    """Absolute path for a tool argument, relative paths taken from the workspace."""
    return (Path(cwd) / Path(path).expanduser()).resolve()
