""".maxianignore handling: paths the agent must not read or list."""

import os
from pathlib import Path

import pathspec

from maxian.logging import get_logger

log = get_logger(__name__)

IGNORE_FILENAME = ".maxianignore"
LOCK_TEXT_SYMBOL = "\U0001F512"

# Commands whose arguments are file paths that get read.
FILE_READING_COMMANDS = {
    "cat",
    "less",
    "more",
    "head",
    "tail",
    "grep",
    "awk",
    "sed",
    "get-content",
    "gc",
    "type",
    "select-string",
    "sls",
}


class MaxianIgnoreController:
    """Match paths against the workspace's ``.maxianignore`` (gitignore syntax).

    Without an ignore file every path is allowed. The file is re-read when its
    modification time changes.
    """

    def __init__(self, cwd: Path | str):
        self.cwd = Path(cwd).expanduser().resolve()
        self.ignore_content: str | None = None
        self._spec: pathspec.PathSpec | None = None
        self._loaded_mtime: float | None = None
        self.load()

    @property
    def ignore_path(self) -> Path:
        return self.cwd / IGNORE_FILENAME

    def load(self) -> None:
        """(Re)load patterns from disk."""
        path = self.ignore_path
        if not path.is_file():
            self.ignore_content = None
            self._spec = None
            self._loaded_mtime = None
            return
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
            mtime = path.stat().st_mtime
        except OSError as e:
            log.error("Failed to read ignore file", path=str(path), error=str(e))
            return
        self.ignore_content = content
        self._spec = pathspec.PathSpec.from_lines(
            "gitwildmatch",
            [*content.splitlines(), IGNORE_FILENAME],
        )
        self._loaded_mtime = mtime
        log.debug("Loaded ignore file", path=str(path))

    def _refresh_if_changed(self) -> None:
        try:
            mtime = self.ignore_path.stat().st_mtime
        except OSError:
            mtime = None
        if mtime != self._loaded_mtime:
            self.load()

    def validate_access(self, file_path: str) -> bool:
        """Return False when the path (after resolving symlinks) is ignored."""
        self._refresh_if_changed()
        if not self.ignore_content or self._spec is None:
            return True

        absolute = self.cwd / Path(file_path).expanduser()
        try:
            real_path = Path(os.path.realpath(absolute))
        except (OSError, ValueError):
            real_path = absolute

        try:
            relative = real_path.relative_to(self.cwd).as_posix()
        except ValueError:
            # Outside the workspace: not governed by the ignore file.
            return True
        if not relative or relative == ".":
            return True

        check_path = relative + "/" if real_path.is_dir() else relative
        return not self._spec.match_file(check_path)

    def validate_command(self, command: str) -> str | None:
        """Return the first ignored file argument of a file-reading command."""
        self._refresh_if_changed()
        if not self.ignore_content:
            return None

        parts = command.strip().split()
        if not parts:
            return None
        if parts[0].lower() not in FILE_READING_COMMANDS:
            return None

        for arg in parts[1:]:
            if arg.startswith("-") or arg.startswith("/"):
                continue
            if ":" in arg:
                continue
            if not self.validate_access(arg):
                return arg
        return None

    def filter_paths(self, paths: list[str]) -> list[str]:
        """Keep only accessible paths; any failure hides everything."""
        try:
            return [path for path in paths if self.validate_access(path)]
        except Exception as e:
            log.error("Error filtering paths", error=str(e))
            return []

    def get_instructions(self) -> str | None:
        """System-prompt section describing the ignore file, if any."""
        self._refresh_if_changed()
        if not self.ignore_content:
            return None
        return (
            f"# {IGNORE_FILENAME}\n\n"
            f"(The following is provided by a root-level {IGNORE_FILENAME} file where the user has "
            "specified files and directories that should not be accessed. When using list_files, "
            f"you'll notice a {LOCK_TEXT_SYMBOL} next to files that are blocked. Attempting to access "
            "the file's contents e.g. through read_file will result in an error.)\n\n"
            f"{self.ignore_content}\n{IGNORE_FILENAME}"
        )
