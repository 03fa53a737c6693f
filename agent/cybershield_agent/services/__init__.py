"""Agent services: session, dispatching, scheduling, scanning and self-update."""
from .config_store import ConfigStore
from .dispatcher import CommandDispatcher
from .scheduler import SchedulerService
from .session import SessionManager
from .task_runner import TaskRunner
from .updater import UpdaterService

__all__ = [
    "ConfigStore",
    "CommandDispatcher",
    "SchedulerService",
    "SessionManager",
    "TaskRunner",
    "UpdaterService",
]
