"""
Exception types for task tracking and the transient/permanent classification
used by the polling loop and the completion waiter.
"""

import http.client
from typing import Optional

import requests
from proxmoxer.core import ResourceException


class TaskError(Exception):
    """Base class for all task tracking errors."""


class UPIDParseError(TaskError, ValueError):
    """Raised when a task identifier is not a well-formed UPID."""

    def __init__(self, raw: str, reason: str):
        super().__init__(f"invalid UPID {raw!r}: {reason}")
        self.raw = raw
        self.reason = reason


class TaskFetchError(TaskError):
    """A status or log round trip failed permanently."""


class TransientFetchError(TaskFetchError):
    """A status or log round trip failed but may succeed if retried."""


class TaskFailedError(TaskError):
    """The remote operation ended with a non-successful exit status."""

    def __init__(self, upid: str, exit_status: str):
        super().__init__(exit_status)
        self.upid = upid
        self.exit_status = exit_status


class TaskCancelledError(TaskError):
    """Tracking stopped because the owning context was cancelled."""


class TaskTimeoutError(TaskError):
    """The completion waiter ran out of time before the task ended."""

    def __init__(self, upid: str, timeout: float):
        super().__init__(f"Wait timeout for: {upid} (after {timeout:g} seconds)")
        self.upid = upid
        self.timeout = timeout


_PERMANENT_HTTP = (400, 401, 403, 404, 501)


def _status_code(exc: BaseException) -> Optional[int]:
    code = getattr(exc, "status_code", None)
    if code is None:
        response = getattr(exc, "response", None)
        code = getattr(response, "status_code", None)
    return code


def is_transient(exc: BaseException) -> bool:
    """Return True when a failed round trip is worth retrying.

    Connection resets, timeouts and truncated responses are transient, as are
    5xx answers from the API. Authentication, permission and lookup failures
    are permanent, and so is anything not recognised here.
    """
    if isinstance(exc, TransientFetchError):
        return True
    if isinstance(exc, TaskError):
        return False
    if isinstance(exc, ResourceException):
        code = _status_code(exc)
        return code is not None and code >= 500 and code not in _PERMANENT_HTTP
    if isinstance(
        exc,
        (
            requests.exceptions.ConnectionError,
            requests.exceptions.Timeout,
            requests.exceptions.ChunkedEncodingError,
        ),
    ):
        return True
    if isinstance(exc, requests.exceptions.HTTPError):
        code = _status_code(exc)
        return code is not None and code >= 500 and code not in _PERMANENT_HTTP
    if isinstance(exc, (http.client.IncompleteRead, ConnectionError, TimeoutError)):
        return True
    return False
