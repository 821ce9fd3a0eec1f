"""Track which files the agent has read or edited and notice outside edits.

Every tool-mediated read or edit appends an ``active`` entry to the task's
``files_in_context`` metadata, demoting the previous active entry for the same
path to ``stale``. A polling watcher reports changes on disk; changes the agent
made itself are flagged before the write so they are not mistaken for user
edits.
"""

import asyncio
import os
import weakref
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from maxian.logging import get_logger
from maxian.messages import now_ms

if TYPE_CHECKING:
    from maxian.persistence.storage import TaskStorage

log = get_logger(__name__)

RECORD_SOURCES = ("user_edited", "roo_edited", "read_tool", "file_mentioned")

_DATE_FIELDS = ("roo_read_date", "roo_edit_date", "user_edit_date")


@dataclass
class FileMetadataEntry:
    """One record in ``files_in_context``."""

    path: str
    record_state: str  # "active" or "stale"
    record_source: str
    roo_read_date: int | None = None
    roo_edit_date: int | None = None
    user_edit_date: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileMetadataEntry":
        return cls(
            path=data["path"],
            record_state=data.get("record_state", "stale"),
            record_source=data.get("record_source", "read_tool"),
            roo_read_date=data.get("roo_read_date"),
            roo_edit_date=data.get("roo_edit_date"),
            user_edit_date=data.get("user_edit_date"),
        )


def _file_signature(path: Path) -> tuple[int, int] | None:
    try:
        stat = path.stat()
    except OSError:
        return None
    return stat.st_mtime_ns, stat.st_size


class FileWatcher:
    """Poll watched files and report content changes.

    One background task polls every registered path. ``poll_once`` runs a
    single pass and is what the loop calls.
    """

    def __init__(
        self,
        on_change: Callable[[str], Awaitable[None]],
        poll_interval: float = 0.5,
    ):
        self._on_change = on_change
        self.poll_interval = poll_interval
        self._watched: dict[str, tuple[Path, tuple[int, int] | None]] = {}
        self._task: asyncio.Task[None] | None = None

    def is_watching(self, key: str) -> bool:
        return key in self._watched

    @property
    def watched(self) -> list[str]:
        return list(self._watched)

    def watch(self, key: str, path: Path) -> None:
        """Start watching ``path``; the current state is the baseline."""
        if key in self._watched:
            return
        self._watched[key] = (path, _file_signature(path))
        self._ensure_running()

    def rebaseline(self, key: str) -> None:
        """Adopt the current state of a watched path without reporting it."""
        if key in self._watched:
            path, _ = self._watched[key]
            self._watched[key] = (path, _file_signature(path))

    def _ensure_running(self) -> None:
        if self._task is not None and not self._task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._task = loop.create_task(self._run())

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            await self.poll_once()

    async def poll_once(self) -> list[str]:
        """Check every watched path once and fire callbacks for changes."""
        changed: list[str] = []
        for key, (path, previous) in list(self._watched.items()):
            current = _file_signature(path)
            if current == previous:
                continue
            self._watched[key] = (path, current)
            # Deletions are not edits the model needs to re-read.
            if current is None:
                continue
            changed.append(key)
            try:
                await self._on_change(key)
            except Exception as e:
                log.error("File change handler failed", path=key, error=str(e))
        return changed

    async def close(self) -> None:
        self._watched.clear()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None


class FileContextTracker:
    """Per-task record of file reads, agent edits and user edits."""

    def __init__(
        self,
        task_id: str,
        storage: "TaskStorage | None",
        cwd: Path | str,
        poll_interval: float = 0.5,
    ):
        """Initialize the tracker.

        Args:
            task_id: Task whose metadata is updated
            storage: Task storage; held weakly, so saves become no-ops once it is gone
            cwd: Workspace root that tracked paths are relative to
            poll_interval: Seconds between watcher polls
        """
        self.task_id = task_id
        self.cwd = Path(cwd).expanduser().resolve()
        self._storage_ref = weakref.ref(storage) if storage is not None else None
        self.recently_modified_files: set[str] = set()
        self.recently_edited_by_maxian: set[str] = set()
        self.checkpoint_possible_files: set[str] = set()
        self.watcher = FileWatcher(self._handle_file_change, poll_interval=poll_interval)
        self._lock = asyncio.Lock()

    def _get_storage(self) -> "TaskStorage | None":
        storage = self._storage_ref() if self._storage_ref is not None else None
        if storage is None:
            log.debug("Storage handle is gone", task_id=self.task_id)
        return storage

    async def get_task_metadata(self) -> dict[str, Any]:
        storage = self._get_storage()
        if storage is None:
            return {"files_in_context": []}
        return await storage.read_task_metadata(self.task_id)

    async def save_task_metadata(self, metadata: dict[str, Any]) -> None:
        storage = self._get_storage()
        if storage is None:
            return
        try:
            await storage.save_task_metadata(self.task_id, metadata)
        except Exception as e:
            log.error("Failed to save task metadata", task_id=self.task_id, error=str(e))

    async def get_entries(self) -> list[FileMetadataEntry]:
        metadata = await self.get_task_metadata()
        return [FileMetadataEntry.from_dict(item) for item in metadata.get("files_in_context", [])]

    async def _handle_file_change(self, file_path: str) -> None:
        if file_path in self.recently_edited_by_maxian:
            self.recently_edited_by_maxian.discard(file_path)
            return
        log.info("File changed outside the agent", path=file_path, task_id=self.task_id)
        self.recently_modified_files.add(file_path)
        await self.track_file_context(file_path, "user_edited")

    def setup_file_watcher(self, file_path: str, rebaseline: bool = False) -> None:
        """Arm the watcher for a path.

        With ``rebaseline`` an already armed watcher adopts the current disk
        state, so an edit we just recorded is not reported later.
        """
        if self.watcher.is_watching(file_path):
            if not rebaseline:
                return
            self.watcher.rebaseline(file_path)
        else:
            self.watcher.watch(file_path, self.cwd / file_path)
        # The baseline already includes any edit we just made.
        self.recently_edited_by_maxian.discard(file_path)

    async def track_file_context(self, file_path: str, source: str) -> None:
        """Record a read or edit of ``file_path`` and arm its watcher."""
        if source not in RECORD_SOURCES:
            raise ValueError(f"Unknown record source: {source}")
        try:
            await self.add_file_to_file_context_tracker(file_path, source)
            self.setup_file_watcher(file_path, rebaseline=source == "roo_edited")
        except Exception as e:
            log.error("Failed to track file operation", path=file_path, source=source, error=str(e))

    async def add_file_to_file_context_tracker(self, file_path: str, source: str) -> FileMetadataEntry:
        async with self._lock:
            entries = await self.get_entries()
            now = now_ms()

            for entry in entries:
                if entry.path == file_path and entry.record_state == "active":
                    entry.record_state = "stale"

            def latest(field_name: str) -> int | None:
                values = [
                    getattr(entry, field_name)
                    for entry in entries
                    if entry.path == file_path and getattr(entry, field_name)
                ]
                return max(values) if values else None

            new_entry = FileMetadataEntry(
                path=file_path,
                record_state="active",
                record_source=source,
                **{field_name: latest(field_name) for field_name in _DATE_FIELDS},
            )

            if source == "user_edited":
                new_entry.user_edit_date = now
                self.recently_modified_files.add(file_path)
            elif source == "roo_edited":
                new_entry.roo_read_date = now
                new_entry.roo_edit_date = now
                self.checkpoint_possible_files.add(file_path)
            else:
                new_entry.roo_read_date = now

            entries.append(new_entry)
            await self.save_task_metadata({"files_in_context": [e.to_dict() for e in entries]})
            return new_entry

    def get_and_clear_recently_modified_files(self) -> list[str]:
        files = sorted(self.recently_modified_files)
        self.recently_modified_files.clear()
        return files

    def get_and_clear_checkpoint_possible_files(self) -> list[str]:
        files = sorted(self.checkpoint_possible_files)
        self.checkpoint_possible_files.clear()
        return files

    def mark_file_as_edited_by_maxian(self, file_path: str) -> None:
        """Flag an upcoming write as ours. Call before writing."""
        self.recently_edited_by_maxian.add(file_path)

    async def get_recent_files(self, limit: int = 10) -> list[str]:
        """Paths ordered by most recent read or edit, newest first."""
        latest_by_path: dict[str, int] = {}
        for entry in await self.get_entries():
            most_recent = max(entry.roo_read_date or 0, entry.roo_edit_date or 0, entry.user_edit_date or 0)
            if most_recent > latest_by_path.get(entry.path, 0):
                latest_by_path[entry.path] = most_recent
        ordered = sorted(latest_by_path.items(), key=lambda item: item[1], reverse=True)
        return [path for path, _ in ordered[:limit]]

    async def get_file_context_info(self, file_path: str) -> FileMetadataEntry | None:
        """The active entry for a path, if it was ever tracked."""
        for entry in await self.get_entries():
            if entry.path == file_path and entry.record_state == "active":
                return entry
        return None

    async def is_stale(self, file_path: str) -> bool:
        """True when the file changed outside the agent since it was last read or written."""
        entry = await self.get_file_context_info(file_path)
        return entry is not None and entry.record_source == "user_edited"

    async def dispose(self) -> None:
        await self.watcher.close()


def normalize_tracked_path(cwd: Path, file_path: str) -> str:
    """Workspace-relative posix path used as the tracking key."""
    absolute = (cwd / Path(file_path).expanduser()).resolve()
    try:
        return absolute.relative_to(cwd).as_posix()
    except ValueError:
        return os.path.normpath(str(absolute))
