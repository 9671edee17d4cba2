"""
kubebind core module.

Settings, logging setup, the error taxonomy and background task management.
"""

from .config import BindingsSettings
from .errors import BindingStatusError, KubebindError
from .logging import configure_logging
from .task_manager import ManagedObject, TaskManager

__all__ = [
    "BindingStatusError",
    "BindingsSettings",
    "KubebindError",
    "ManagedObject",
    "TaskManager",
    "configure_logging",
]
