"""History summaries derived from a task's message log."""

import os
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable

from maxian.combine import combine_api_requests, combine_command_sequences
from maxian.logging import get_logger
from maxian.messages import Message, now_ms
from maxian.metrics import TokenUsage, get_api_metrics

log = get_logger(__name__)


class DirectorySizeCache:
    """Get-or-compute cache of directory sizes with a time-to-live."""

    def __init__(self, ttl: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[float, int]] = {}

    def get(self, path: Path | str) -> int | None:
        key = str(path)
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, size = entry
        if self._clock() - stored_at > self.ttl:
            del self._entries[key]
            return None
        return size

    def set(self, path: Path | str, size: int) -> None:
        self._entries[str(path)] = (self._clock(), size)

    def invalidate(self, path: Path | str) -> None:
        self._entries.pop(str(path), None)

    def get_or_compute(self, path: Path | str) -> int:
        cached = self.get(path)
        if cached is not None:
            return cached
        size = directory_size(Path(path))
        self.set(path, size)
        return size


def directory_size(path: Path) -> int:
    """Total size of regular files below ``path``; unreadable entries count as 0."""
    total = 0
    if not path.exists():
        return 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for name in filenames:
            try:
                total += os.path.getsize(os.path.join(dirpath, name))
            except OSError:
                continue
    return total


@dataclass
class HistoryItem:
    """Denormalized task summary for history listings."""

    id: str
    number: int
    ts: int
    task: str
    tokens_in: int = 0
    tokens_out: int = 0
    cache_writes: int | None = None
    cache_reads: int | None = None
    total_cost: float = 0.0
    size: int = 0
    workspace: str = ""
    mode: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HistoryItem":
        return cls(
            id=data["id"],
            number=int(data.get("number", 0)),
            ts=int(data.get("ts", 0)),
            task=data.get("task", ""),
            tokens_in=int(data.get("tokens_in", 0)),
            tokens_out=int(data.get("tokens_out", 0)),
            cache_writes=data.get("cache_writes"),
            cache_reads=data.get("cache_reads"),
            total_cost=float(data.get("total_cost", 0.0)),
            size=int(data.get("size", 0)),
            workspace=data.get("workspace", ""),
            mode=data.get("mode"),
        )


def task_metadata(
    task_id: str,
    task_number: int,
    messages: list[Message],
    task_dir: Path | str,
    workspace: str,
    size_cache: DirectorySizeCache,
    mode: str | None = None,
) -> tuple[HistoryItem, TokenUsage]:
    """Build the history item and usage for a task.

    Args:
        task_id: Task ID
        task_number: Sequence number shown in listings
        messages: Full UI message log, first entry being the task text
        task_dir: Task directory (for the on-disk size)
        workspace: Workspace the task ran in
        size_cache: Cache consulted before walking the directory
        mode: Optional agent mode

    Returns:
        Tuple of (HistoryItem, TokenUsage)
    """
    if not messages:
        usage = TokenUsage(total_cache_writes=0, total_cache_reads=0)
        item = HistoryItem(
            id=task_id,
            number=task_number,
            ts=now_ms(),
            task=f"Task #{task_number} (No messages)",
            workspace=workspace,
            mode=mode,
        )
        return item, usage

    task_message = messages[0]
    last_relevant = next(
        (
            m for m in reversed(messages)
            if not (m.type == "ask" and m.ask in ("resume_task", "resume_completed_task"))
        ),
        task_message,
    )

    usage = get_api_metrics(combine_api_requests(combine_command_sequences(messages[1:])))

    size = size_cache.get(task_dir)
    if size is None:
        try:
            size = directory_size(Path(task_dir))
            size_cache.set(task_dir, size)
        except OSError as e:
            log.warning("Failed to measure task directory", task_id=task_id, error=str(e))
            size = 0

    item = HistoryItem(
        id=task_id,
        number=task_number,
        ts=last_relevant.ts or now_ms(),
        task=(task_message.text or "").strip() or f"Task #{task_number} (Incomplete)",
        tokens_in=usage.total_tokens_in,
        tokens_out=usage.total_tokens_out,
        cache_writes=usage.total_cache_writes,
        cache_reads=usage.total_cache_reads,
        total_cost=usage.total_cost,
        size=size,
        workspace=workspace,
        mode=mode,
    )
    return item, usage
