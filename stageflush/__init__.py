"""Lock-scoped reclamation of stage containers and images."""

from .config import Settings
from .flush import FlushError, FlushOrchestrator, unique_basenames
from .locks import FileLock, InProcessLock, LockError, NamedLock
from .models import BuildConfig, ExecutionResult, FlushReport
from .utils import CommandError, CommandSpawnError, CommandTimeoutError, Shellout

__all__ = [
    "BuildConfig",
    "CommandError",
    "CommandSpawnError",
    "CommandTimeoutError",
    "ExecutionResult",
    "FileLock",
    "FlushError",
    "FlushOrchestrator",
    "FlushReport",
    "InProcessLock",
    "LockError",
    "NamedLock",
    "Settings",
    "Shellout",
    "unique_basenames",
]
