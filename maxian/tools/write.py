"""Write tool for writing file contents."""

import asyncio
from pathlib import Path
from typing import Any

from maxian.file_context import normalize_tracked_path
from maxian.logging import get_logger
from maxian.tools.registry import Tool, ToolResult, resolve_tool_path

log = get_logger(__name__)


def _write_text(file_path: Path, content: str) -> None:
    file_path.parent.mkdir(parents=True, exist_ok=True)
    with open(file_path, "w", encoding="utf-8") as f:
        f.write(content)


class WriteToFileTool(Tool):
    """Write content to files in the workspace."""

    name = "write_to_file"
    description = (
        "Create or overwrite a file with the given content. "
        "Always provide the complete file content."
    )
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file, relative to the workspace",
            },
            "content": {
                "type": "string",
                "description": "Full content to write to the file",
            },
        },
        "required": ["path", "content"],
    }

    async def execute(self, path: str, content: str, **kwargs: Any) -> ToolResult:
        """Write content to a file.

        Args:
            path: Path to file
            content: Content to write

        Returns:
            ToolResult with status
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
            if file_path.is_dir():
                return ToolResult(success=False, error=f"Path is a directory: {path}")

            tracked = normalize_tracked_path(cwd, path)
            existed = file_path.exists()
            if tracker is not None and existed:
                await tracker.watcher.poll_once()
                if await tracker.is_stale(tracked):
                    return ToolResult(
                        success=False,
                        error=(
                            f"{path} was modified outside the agent since it was last read. "
                            "Read it again before writing."
                        ),
                    )
            # Flag before writing so the watcher does not report our own change.
            if tracker is not None:
                tracker.mark_file_as_edited_by_maxian(tracked)

            await asyncio.to_thread(_write_text, file_path, content)

            if tracker is not None:
                await tracker.track_file_context(tracked, "roo_edited")

            verb = "Updated" if existed else "Created"
            return ToolResult(
                success=True,
                content=f"{verb} {path} ({len(content)} chars)",
            )

        except OSError as e:
            log.error("Write failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))
