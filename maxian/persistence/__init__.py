"""Durable task storage: JSON files per task plus a SQLite history index."""

from maxian.persistence.history import TaskHistoryStore, get_history_store, set_history_store
from maxian.persistence.metadata import DirectorySizeCache, HistoryItem, directory_size, task_metadata
from maxian.persistence.storage import (
    API_CONVERSATION_HISTORY,
    LEGACY_API_CONVERSATION_HISTORY,
    TASK_METADATA,
    UI_MESSAGES,
    TaskStorage,
    safe_write_json,
)

__all__ = [
    "API_CONVERSATION_HISTORY",
    "LEGACY_API_CONVERSATION_HISTORY",
    "TASK_METADATA",
    "UI_MESSAGES",
    "DirectorySizeCache",
    "HistoryItem",
    "TaskHistoryStore",
    "TaskStorage",
    "directory_size",
    "get_history_store",
    "safe_write_json",
    "set_history_store",
    "task_metadata",
]
