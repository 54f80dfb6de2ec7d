"""
Background tracking of a single asynchronous Proxmox task.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .context import CancelContext
from .errors import TaskFailedError, TaskFetchError, TaskTimeoutError, is_transient
from .fetcher import LOG_CHUNK_SIZE, StatusFetcher
from .upid import UPID, UserID, parse_upid

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_MAX_RETRIES = 3

STATUS_RUNNING = "running"
_SUCCESS_PREFIXES = ("OK", "WARNINGS")


def exit_status_error(upid: str, exit_status: Optional[str]) -> Optional[TaskFailedError]:
    """Map a terminal exit status to an error, None when it counts as success."""
    if not exit_status or exit_status.startswith(_SUCCESS_PREFIXES):
        return None
    return TaskFailedError(upid, exit_status)


def _timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)) and value > 0:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


class TaskMonitor:
    """Keeps the cached state of one remote task current.

    A daemon thread polls the status and log endpoints until the task reaches a
    terminal state, fails permanently, or ``context`` is cancelled. All state is
    guarded by one lock; readers only ever get copies.
    """

    def __init__(
        self,
        fetcher: StatusFetcher,
        upid: Union[str, UPID],
        context: CancelContext,
        interval: float = DEFAULT_POLL_INTERVAL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        log_chunk_size: int = LOG_CHUNK_SIZE,
        start: bool = True,
    ):
        if context is None:
            raise ValueError("TaskMonitor requires a CancelContext")
        if interval <= 0:
            raise ValueError("polling interval must be positive")
        self._fetcher = fetcher
        self._upid = upid if isinstance(upid, UPID) else parse_upid(upid)
        self._context = context.child()
        self._interval = interval
        self._max_retries = max_retries
        self._chunk = log_chunk_size

        self._lock = threading.Lock()
        self._status: Dict[str, Any] = {}
        self._log: List[str] = []
        self._ended = False
        self._error: Optional[BaseException] = None
        self._first_status = threading.Event()
        self._first_poll = threading.Event()
        self._done = threading.Event()
        self._log_changed = threading.Condition(self._lock)

        self._thread = threading.Thread(
            target=self._run, name=f"task-monitor:{self._upid.node}:{self._upid.pid:x}", daemon=True
        )
        self._started = False
        if start:
            self.start()

    def start(self):
        if not self._started:
            self._started = True
            self._thread.start()

    # Identity

    @property
    def upid(self) -> UPID:
        return self._upid

    @property
    def id(self) -> str:
        return self._upid.raw

    @property
    def node(self) -> str:
        return self._upid.node

    @property
    def operation_type(self) -> str:
        return self._upid.operation_type

    @property
    def user(self) -> UserID:
        return self._upid.user

    # Reads

    def status(self) -> str:
        """Return the last observed status, waiting for the first fetch if needed."""
        self._first_status.wait()
        with self._lock:
            return self._status.get("status", "")

    def exit_status(self) -> str:
        self._first_status.wait()
        with self._lock:
            return self._status.get("exitstatus", "") or ""

    def process_id(self) -> int:
        self._first_status.wait()
        with self._lock:
            pid = self._status.get("pid")
        return int(pid) if isinstance(pid, (int, float)) else self._upid.pid

    def start_time(self) -> Optional[datetime]:
        self._first_status.wait()
        with self._lock:
            value = self._status.get("starttime")
        return _timestamp(value) or _timestamp(self._upid.start_time)

    def end_time(self) -> Optional[datetime]:
        self._first_status.wait()
        with self._lock:
            return _timestamp(self._status.get("endtime"))

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """Block until the first status and its log pages are cached.

        A task that was already terminal on that poll has ended by the time
        this returns. False when ``timeout`` elapsed first.
        """
        return self._first_poll.wait(timeout)

    def log(self) -> List[str]:
        with self._lock:
            return list(self._log)

    def ended(self) -> Tuple[bool, Optional[BaseException]]:
        with self._lock:
            return self._ended, self._error

    def iter_log(self, timeout: Optional[float] = None) -> Iterator[str]:
        """Yield log lines as they arrive until the task ends.

        ``timeout`` bounds the wait for each new line; None waits indefinitely.
        """
        index = 0
        while True:
            with self._log_changed:
                if index >= len(self._log) and not self._ended:
                    self._log_changed.wait(timeout)
                pending = self._log[index:]
                ended = self._ended
            for line in pending:
                yield line
            index += len(pending)
            if ended and not pending:
                return
            if not pending and timeout is not None:
                return

    def wait(self, timeout: Optional[float] = None) -> str:
        """Block until the task ends; return its exit status or raise its error."""
        if not self._done.wait(timeout):
            raise TaskTimeoutError(self._upid.raw, timeout)
        ended, err = self.ended()
        if err is not None:
            raise err
        return self.exit_status()

    def join(self, timeout: Optional[float] = None) -> bool:
        if self._started:
            self._thread.join(timeout)
            return not self._thread.is_alive()
        return True

    def cancel(self):
        """Stop the remote task and stop tracking it."""
        with self._lock:
            if self._ended:
                return
        try:
            self._fetcher.stop_task(self._upid, self._context)
        except Exception as e:
            logger.warning("Stopping task %s failed: %s", self._upid.raw, e)
            self._finish(e)
            self._context.cancel("task cancel failed")
            return
        logger.info("Stopped task %s", self._upid.raw)
        self._context.cancel("task cancelled")

    def close(self):
        """Stop tracking without touching the remote task."""
        self._context.cancel("monitor closed")

    # Background loop

    def _run(self):
        try:
            self._poll()
        except Exception as e:
            logger.exception("Task monitor for %s crashed", self._upid.raw)
            self._finish(e)
        finally:
            self._context.detach()
            self._first_status.set()
            self._first_poll.set()
            self._done.set()

    def _poll(self):
        failures = 0
        while not self._context.cancelled():
            try:
                data = self._fetcher.fetch_status(self._upid, self._context)
            except Exception as e:
                if self._context.cancelled():
                    break
                if is_transient(e) and failures < self._max_retries:
                    failures += 1
                    logger.warning(
                        "Transient error fetching status of %s (%d/%d): %s",
                        self._upid.raw, failures, self._max_retries, e,
                    )
                    if self._context.wait(self._interval):
                        break
                    continue
                logger.debug("Giving up on task %s: %s", self._upid.raw, e)
                self._finish(e)
                return
            failures = 0
            if self._context.cancelled():
                break

            status = data.get("status") if isinstance(data, dict) else None
            if not isinstance(status, str):
                self._finish(TaskFetchError(f"status response for {self._upid.raw} has no status"))
                return
            self._apply_status(data)
            terminal = status != STATUS_RUNNING

            self._fetch_log(drain=terminal)
            if terminal:
                exit_status = data.get("exitstatus")
                logger.debug("Task %s ended: %s %s", self._upid.raw, status, exit_status or "")
                self._finish(exit_status_error(self._upid.raw, exit_status))
                return
            self._first_poll.set()
            if self._context.wait(self._interval):
                break
        self._finish(self._context.error())

    def _apply_status(self, data: Dict[str, Any]):
        with self._lock:
            if self._ended:
                return
            self._status = dict(data)
        self._first_status.set()

    def _fetch_log(self, drain: bool):
        """Append new log lines, paging until caught up with the remote."""
        while True:
            with self._lock:
                cached = len(self._log)
            try:
                page = self._fetcher.fetch_log_page(self._upid, cached, self._chunk, self._context)
            except Exception as e:
                logger.debug("Log fetch for %s failed, retrying next cycle: %s", self._upid.raw, e)
                return
            with self._log_changed:
                if self._ended:
                    return
                skip = len(self._log) - page.start
                new = page.lines[skip:] if skip >= 0 else []
                self._log.extend(new)
                cached = len(self._log)
                if new:
                    self._log_changed.notify_all()
            if not new or not page.has_more(cached, self._chunk):
                return
            if self._context.cancelled() and not drain:
                return

    def _finish(self, error: Optional[BaseException]):
        with self._log_changed:
            if self._ended:
                return
            self._ended = True
            self._error = error
            self._log_changed.notify_all()
        self._first_status.set()
        self._first_poll.set()
        self._done.set()


class CompletedTask:
    """Stand-in for operations the API completed synchronously (no UPID returned)."""

    def __init__(self, exit_status: str = "", error: Optional[BaseException] = None):
        self._exit_status = exit_status
        self._error = error

    upid = None
    id = ""
    node = ""
    operation_type = ""
    user = UserID()

    def status(self) -> str:
        return ""

    def exit_status(self) -> str:
        return self._exit_status

    def process_id(self) -> int:
        return 0

    def start_time(self) -> Optional[datetime]:
        return None

    def end_time(self) -> Optional[datetime]:
        return None

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        return True

    def log(self) -> List[str]:
        return []

    def ended(self) -> Tuple[bool, Optional[BaseException]]:
        return True, self._error

    def iter_log(self, timeout: Optional[float] = None) -> Iterator[str]:
        return iter(())

    def wait(self, timeout: Optional[float] = None) -> str:
        if self._error is not None:
            raise self._error
        return self._exit_status

    def join(self, timeout: Optional[float] = None) -> bool:
        return True

    def cancel(self):
        pass

    def close(self):
        pass
