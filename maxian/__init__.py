"""Maxian - an agentic coding task engine."""

__version__ = "0.1.0"

from maxian.config import Config
from maxian.task import Task, TaskStatus, create_task

__all__ = ["Config", "Task", "TaskStatus", "create_task", "__version__"]
