"""
Blocking helpers that wait for Proxmox tasks to finish.
"""

import logging
import time
from typing import Callable, Optional, Union

from .context import CancelContext
from .errors import TaskTimeoutError, is_transient
from .fetcher import StatusFetcher
from .monitor import STATUS_RUNNING, exit_status_error
from .upid import UPID, parse_upid

logger = logging.getLogger(__name__)

DEFAULT_TASK_TIMEOUT = 90.0
DEFAULT_CHECK_INTERVAL = 2.0


class CompletionWaiter:
    """Waits for a task to reach a terminal state, bounded by a timeout."""

    def __init__(
        self,
        timeout: float = DEFAULT_TASK_TIMEOUT,
        interval: float = DEFAULT_CHECK_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval <= 0:
            raise ValueError("check interval must be positive")
        self.timeout = timeout
        self.interval = interval
        self._sleep = sleep
        self._clock = clock

    def _pause(self, deadline: float, context: Optional[CancelContext]) -> bool:
        """Sleep until the next check, never past the deadline. True when cancelled."""
        delay = min(self.interval, max(deadline - self._clock(), 0.0))
        if context is not None and self._sleep is time.sleep:
            return context.wait(delay)
        self._sleep(delay)
        return context is not None and context.cancelled()

    def wait(self, monitor, context: Optional[CancelContext] = None) -> str:
        """Poll ``monitor.ended()`` until the task finishes.

        Returns the exit status on success and raises the task's error, a
        TaskTimeoutError, or the context's cancellation error otherwise.
        """
        deadline = self._clock() + self.timeout
        while True:
            ended, err = monitor.ended()
            if ended:
                if err is not None:
                    raise err
                return monitor.exit_status()
            if self._clock() >= deadline:
                raise TaskTimeoutError(monitor.id, self.timeout)
            if self._pause(deadline, context):
                raise context.error()

    def wait_for_upid(
        self,
        fetcher: StatusFetcher,
        upid: Union[str, UPID],
        context: Optional[CancelContext] = None,
    ) -> str:
        """Poll the status endpoint directly, without a background monitor.

        Transient fetch errors are retried until the timeout; any other error
        propagates immediately.
        """
        if not isinstance(upid, UPID):
            upid = parse_upid(upid)
        ctx = context if context is not None else CancelContext()
        deadline = self._clock() + self.timeout
        while True:
            try:
                data = fetcher.fetch_status(upid, ctx) or {}
            except Exception as e:
                if not is_transient(e):
                    raise
                logger.debug("Retrying status of %s after transient error: %s", upid.raw, e)
            else:
                status = data.get("status")
                exit_status = data.get("exitstatus")
                if exit_status is not None or (status and status != STATUS_RUNNING):
                    err = exit_status_error(upid.raw, exit_status)
                    if err is not None:
                        raise err
                    return exit_status or ""
            if self._clock() >= deadline:
                raise TaskTimeoutError(upid.raw, self.timeout)
            if self._pause(deadline, context):
                raise context.error()
