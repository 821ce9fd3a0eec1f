"""Per-task JSON files: API history, UI messages and task metadata."""

import asyncio
import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any

from maxian.exceptions import PersistenceError
from maxian.logging import get_logger
from maxian.messages import ApiMessage, Message
from maxian.persistence.metadata import DirectorySizeCache

log = get_logger(__name__)

API_CONVERSATION_HISTORY = "api_conversation_history.json"
UI_MESSAGES = "ui_messages.json"
TASK_METADATA = "task_metadata.json"
LEGACY_API_CONVERSATION_HISTORY = "claude_messages.json"


def safe_write_json(path: Path, data: Any) -> None:
    """Write JSON atomically: temp file in the same directory, then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def _read_json(path: Path) -> Any:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


class TaskStorage:
    """Filesystem layout ``<root>/<task_id>/*.json`` with write-through saves."""

    def __init__(self, root: Path | str, size_cache: DirectorySizeCache | None = None):
        """Initialize task storage.

        Args:
            root: Directory that holds one subdirectory per task
            size_cache: Optional shared cache for task directory sizes
        """
        self.root = Path(root).expanduser()
        self.root.mkdir(parents=True, exist_ok=True)
        self.size_cache = size_cache or DirectorySizeCache()

    def task_dir(self, task_id: str, create: bool = True) -> Path:
        path = self.root / task_id
        if create:
            path.mkdir(parents=True, exist_ok=True)
        return path

    def task_exists(self, task_id: str) -> bool:
        return (self.root / task_id).is_dir()

    def list_task_ids(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())

    async def _write(self, path: Path, data: Any) -> None:
        try:
            await asyncio.to_thread(safe_write_json, path, data)
        except OSError as e:
            log.error("Failed to write task file", path=str(path), error=str(e))
            raise PersistenceError(str(path), str(e)) from e
        self.size_cache.invalidate(path.parent)

    async def _read(self, path: Path) -> Any:
        try:
            return await asyncio.to_thread(_read_json, path)
        except (OSError, ValueError) as e:
            raise PersistenceError(str(path), str(e)) from e

    async def read_api_messages(self, task_id: str) -> list[ApiMessage]:
        """Load the model-facing history, migrating the legacy file once."""
        task_dir = self.task_dir(task_id)
        path = task_dir / API_CONVERSATION_HISTORY

        if path.exists():
            data = await self._read(path)
            if isinstance(data, list) and not data:
                log.warning("API conversation history is empty", task_id=task_id)
            return [ApiMessage.from_dict(item) for item in data or []]

        legacy_path = task_dir / LEGACY_API_CONVERSATION_HISTORY
        if legacy_path.exists():
            data = await self._read(legacy_path)
            # Only drop the legacy file once it parsed.
            legacy_path.unlink()
            messages = [ApiMessage.from_dict(item) for item in data or []]
            await self.save_api_messages(task_id, messages)
            log.info("Migrated legacy conversation history", task_id=task_id)
            return messages

        log.debug("API conversation history not found", task_id=task_id, path=str(path))
        return []

    async def save_api_messages(self, task_id: str, messages: list[ApiMessage]) -> None:
        path = self.task_dir(task_id) / API_CONVERSATION_HISTORY
        await self._write(path, [m.to_dict() for m in messages])

    async def read_task_messages(self, task_id: str) -> list[Message]:
        path = self.task_dir(task_id) / UI_MESSAGES
        if not path.exists():
            return []
        data = await self._read(path)
        return [Message.from_dict(item) for item in data or []]

    async def save_task_messages(self, task_id: str, messages: list[Message]) -> None:
        path = self.task_dir(task_id) / UI_MESSAGES
        await self._write(path, [m.to_dict() for m in messages])

    async def read_task_metadata(self, task_id: str) -> dict[str, Any]:
        """Load ``task_metadata.json``; a missing or corrupt file reads as empty."""
        path = self.task_dir(task_id) / TASK_METADATA
        if not path.exists():
            return {"files_in_context": []}
        try:
            data = await self._read(path)
        except PersistenceError as e:
            log.error("Failed to read task metadata", task_id=task_id, error=str(e))
            return {"files_in_context": []}
        if not isinstance(data, dict):
            return {"files_in_context": []}
        data.setdefault("files_in_context", [])
        return data

    async def save_task_metadata(self, task_id: str, metadata: dict[str, Any]) -> None:
        path = self.task_dir(task_id) / TASK_METADATA
        await self._write(path, metadata)

    def directory_size(self, task_id: str) -> int:
        """Size of the task directory in bytes, served from the size cache."""
        return self.size_cache.get_or_compute(self.task_dir(task_id, create=False))

    async def delete_task(self, task_id: str) -> bool:
        path = self.root / task_id
        if not path.exists():
            return False
        await asyncio.to_thread(shutil.rmtree, path)
        self.size_cache.invalidate(path)
        log.info("Deleted task directory", task_id=task_id)
        return True
