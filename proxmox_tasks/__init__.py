"""
proxmox-tasks - track asynchronous Proxmox VE tasks to completion.
"""

from .cli import main
from .client import ProxmoxClient, ProxmoxTaskFetcher
from .config import Config, ExitCode
from .context import CancelContext
from .errors import (
    TaskCancelledError,
    TaskError,
    TaskFailedError,
    TaskFetchError,
    TaskTimeoutError,
    TransientFetchError,
    UPIDParseError,
    is_transient,
)
from .fetcher import LogPage, StatusFetcher
from .monitor import CompletedTask, TaskMonitor
from .task import CompletionWaiter
from .upid import UPID, UserID, parse_upid, parse_upid_lenient

__version__ = "1.0.0"
__all__ = [
    "main",
    "Config",
    "ExitCode",
    "ProxmoxClient",
    "ProxmoxTaskFetcher",
    "CancelContext",
    "StatusFetcher",
    "LogPage",
    "TaskMonitor",
    "CompletedTask",
    "CompletionWaiter",
    "UPID",
    "UserID",
    "parse_upid",
    "parse_upid_lenient",
    "is_transient",
    "TaskError",
    "UPIDParseError",
    "TaskFetchError",
    "TransientFetchError",
    "TaskFailedError",
    "TaskCancelledError",
    "TaskTimeoutError",
]
