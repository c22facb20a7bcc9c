"""Worker module exports."""

from .dispatcher import Dispatcher
from .scheduler import SyncScheduler
from .supervisor import RunSupervisor

__all__ = ["Dispatcher", "RunSupervisor", "SyncScheduler"]
