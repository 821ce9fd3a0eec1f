"""Search tool for finding regex matches in workspace files."""

import asyncio
import fnmatch
import os
import re
from pathlib import Path
from typing import Any

from maxian.logging import get_logger
from maxian.tools.list_files import SKIPPED_DIRS
from maxian.tools.registry import Tool, ToolResult, resolve_tool_path

log = get_logger(__name__)

MAX_RESULTS = 300
MAX_LINE_LENGTH = 500


def search_tree(
    root: Path,
    cwd: Path,
    pattern: re.Pattern[str],
    file_pattern: str | None,
    max_results: int = MAX_RESULTS,
) -> tuple[list[tuple[str, int, str]], bool]:
    """Scan text files under ``root`` for ``pattern``.

    Returns:
        ((relative_path, line_number, line), did_hit_limit)
    """
    matches: list[tuple[str, int, str]] = []
    candidates = [root] if root.is_file() else []
    if root.is_dir():
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in SKIPPED_DIRS)
            for name in sorted(filenames):
                candidates.append(Path(dirpath) / name)

    for file_path in candidates:
        if file_pattern and not fnmatch.fnmatch(file_path.name, file_pattern):
            continue
        try:
            rel = file_path.relative_to(cwd).as_posix()
        except ValueError:
            rel = file_path.as_posix()
        try:
            with open(file_path, encoding="utf-8") as f:
                for lineno, line in enumerate(f, start=1):
                    if pattern.search(line):
                        matches.append((rel, lineno, line.rstrip("\n")[:MAX_LINE_LENGTH]))
                        if len(matches) >= max_results:
                            return matches, True
        except (OSError, UnicodeDecodeError):
            continue
    return matches, False


class SearchFilesTool(Tool):
    """Regex search across files."""

    name = "search_files"
    description = (
        "Search files under a directory for a regular expression. "
        "Optionally restrict to file names matching a glob such as '*.py'."
    )
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Directory to search, relative to the workspace",
            },
            "regex": {
                "type": "string",
                "description": "Regular expression to search for",
            },
            "file_pattern": {
                "type": "string",
                "description": "Glob to filter file names (e.g., '*.ts')",
            },
        },
        "required": ["path", "regex"],
    }

    async def execute(
        self,
        path: str,
        regex: str,
        file_pattern: str | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        """Search files.

        Args:
            path: Directory or file to search
            regex: Pattern
            file_pattern: Optional file name glob

        Returns:
            ToolResult with ``path:line: text`` results
        """
        cwd = Path(kwargs.get("_cwd") or Path.cwd())
        ignore_controller = kwargs.get("_ignore_controller")

        try:
            compiled = re.compile(regex)
        except re.error as e:
            return ToolResult(success=False, error=f"Invalid regex: {e}")

        root = resolve_tool_path(cwd, path)
        if not root.exists():
            return ToolResult(success=False, error=f"Path not found: {path}")

        try:
            matches, did_hit_limit = await asyncio.to_thread(
                search_tree, root, cwd, compiled, file_pattern
            )
        except OSError as e:
            log.error("Search failed", path=path, regex=regex, error=str(e))
            return ToolResult(success=False, error=str(e))

        if ignore_controller is not None:
            allowed = set(ignore_controller.filter_paths(sorted({m[0] for m in matches})))
            matches = [m for m in matches if m[0] in allowed]

        if not matches:
            return ToolResult(success=True, content="Found 0 results.")

        lines = [f"Found {len(matches)} result(s)" + (" (truncated)" if did_hit_limit else "") + ":"]
        lines.extend(f"{rel}:{lineno}: {text}" for rel, lineno, text in matches)
        return ToolResult(success=True, content="\n".join(lines))
