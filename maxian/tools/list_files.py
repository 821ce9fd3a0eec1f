"""List tool for browsing workspace directories."""

import asyncio
import os
from pathlib import Path
from typing import Any

from maxian.logging import get_logger
from maxian.responses import format_files_list
from maxian.tools.registry import Tool, ToolResult, resolve_tool_path

log = get_logger(__name__)

DEFAULT_LIST_LIMIT = 200

# Directories never descended into during recursive listings.
SKIPPED_DIRS = {
    ".git",
    "node_modules",
    "__pycache__",
    ".venv",
    "venv",
    "dist",
    "build",
    ".mypy_cache",
    ".pytest_cache",
}


def collect_files(root: Path, cwd: Path, recursive: bool, limit: int) -> tuple[list[str], bool]:
    """Workspace-relative entries under ``root``; directories end with ``/``.

    Returns:
        (entries, did_hit_limit)
    """
    entries: list[str] = []

    def rel(path: Path) -> str:
        try:
            return path.relative_to(cwd).as_posix()
        except ValueError:
            return path.as_posix()

    if not recursive:
        for child in sorted(root.iterdir(), key=lambda p: p.name):
            if len(entries) >= limit:
                return entries, True
            entries.append(rel(child) + "/" if child.is_dir() else rel(child))
        return entries, False

    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIPPED_DIRS)
        base = Path(dirpath)
        for name in dirnames:
            if len(entries) >= limit:
                return entries, True
            entries.append(rel(base / name) + "/")
        for name in sorted(filenames):
            if len(entries) >= limit:
                return entries, True
            entries.append(rel(base / name))
    return entries, False


class ListFilesTool(Tool):
    """List files and directories."""

    name = "list_files"
    description = (
        "List files and directories in a workspace directory. "
        "Set recursive to true to include nested entries."
    )
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Directory to list, relative to the workspace",
            },
            "recursive": {
                "type": "boolean",
                "description": "Whether to list nested entries (default: false)",
            },
        },
        "required": ["path"],
    }

    async def execute(
        self,
        path: str,
        recursive: bool | str = False,
        limit: int = DEFAULT_LIST_LIMIT,
        **kwargs: Any,
    ) -> ToolResult:
        """List a directory.

        Args:
            path: Directory path
            recursive: Descend into subdirectories
            limit: Max entries

        Returns:
            ToolResult with the formatted listing
        """
        cwd = Path(kwargs.get("_cwd") or Path.cwd())
        ignore_controller = kwargs.get("_ignore_controller")
        if isinstance(recursive, str):
            recursive = recursive.strip().lower() == "true"

        try:
            root = resolve_tool_path(cwd, path)
            if not root.exists():
                return ToolResult(success=False, error=f"Directory not found: {path}")
            if not root.is_dir():
                return ToolResult(success=False, error=f"Not a directory: {path}")

            entries, did_hit_limit = await asyncio.to_thread(
                collect_files, root, cwd, bool(recursive), int(limit)
            )

            ignored: set[str] = set()
            if ignore_controller is not None:
                allowed = set(ignore_controller.filter_paths([e.rstrip("/") for e in entries]))
                ignored = {e for e in entries if e.rstrip("/") not in allowed}

            return ToolResult(
                success=True,
                content=format_files_list(entries, did_hit_limit, ignored),
            )

        except OSError as e:
            log.error("List failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))
