"""Read tool for reading file contents."""

import asyncio
from pathlib import Path
from typing import Any

from maxian.config import get_config
from maxian.file_context import normalize_tracked_path
from maxian.logging import get_logger
from maxian.tools.registry import Tool, ToolResult, resolve_tool_path

log = get_logger(__name__)


class ReadFileTool(Tool):
    """Read file contents."""

    name = "read_file"
    description = (
        "Read the contents of a file in the workspace. "
        "Use offset and limit to read a range of lines."
    )
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file, relative to the workspace",
            },
            "limit": {
                "type": "number",
                "description": "Maximum number of lines to read",
            },
            "offset": {
                "type": "number",
                "description": "Line number to start reading from (1-indexed)",
            },
        },
        "required": ["path"],
    }

    async def execute(
        self,
        path: str,
        limit: int | str | None = None,
        offset: int | str | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        """Read a file.

        Args:
            path: Path to file
            limit: Optional line limit
            offset: Optional line offset

        Returns:
            ToolResult with file contents
        """
        cwd = Path(kwargs.get("_cwd") or Path.cwd())
        ignore_controller = kwargs.get("_ignore_controller")
        tracker = kwargs.get("_file_context_tracker")

        if ignore_controller is not None and not ignore_controller.validate_access(path):
            return ToolResult(
                success=False,
                error=f"Access to {path} is blocked by the .maxianignore file settings.",
            )

        try:
            file_path = resolve_tool_path(cwd, path)

            if not file_path.exists():
                return ToolResult(success=False, error=f"File not found: {path}")

            if not file_path.is_file():
                return ToolResult(success=False, error=f"Not a file: {path}")

            file_size = file_path.stat().st_size
            max_size = get_config().tools.max_read_bytes
            if file_size > max_size and not (offset or limit):
                return ToolResult(
                    success=False,
                    error=f"File too large: {file_size} bytes (max {max_size}). Read a line range with offset and limit.",
                )

            content = await asyncio.to_thread(file_path.read_text, encoding="utf-8", errors="replace")

            start = max(1, int(offset)) if offset else 1
            lines = content.splitlines()
            selected = lines[start - 1:]
            if limit:
                selected = selected[: max(0, int(limit))]

            numbered = "\n".join(f"{start + i} | {line}" for i, line in enumerate(selected))
            info = f"[{path} {len(lines)} lines]"
            if offset or limit:
                info += f" [lines {start}-{start + len(selected) - 1}]"

            if tracker is not None:
                await tracker.track_file_context(normalize_tracked_path(cwd, path), "read_tool")

            return ToolResult(success=True, content=f"{info}\n{numbered}")

        except (OSError, ValueError) as e:
            log.error("Read failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))
