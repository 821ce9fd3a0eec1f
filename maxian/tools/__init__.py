"""Tools package."""

from maxian.tools.list_files import ListFilesTool
from maxian.tools.read import ReadFileTool
from maxian.tools.registry import (
    ERROR_PREFIXES,
    Tool,
    ToolExecutor,
    ToolRegistry,
    ToolResult,
    create_default_registry,
    is_error_result,
)
from maxian.tools.search import SearchFilesTool
from maxian.tools.shell import ExecuteCommandTool
from maxian.tools.write import WriteToFileTool

__all__ = [
    "ERROR_PREFIXES",
    "ExecuteCommandTool",
    "ListFilesTool",
    "ReadFileTool",
    "SearchFilesTool",
    "Tool",
    "ToolExecutor",
    "ToolRegistry",
    "ToolResult",
    "WriteToFileTool",
    "create_default_registry",
    "is_error_result",
]
