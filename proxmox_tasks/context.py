"""
Cancellation tokens shared between callers and background task monitors.
"""

import threading
from typing import List, Optional

from .errors import TaskCancelledError


class CancelContext:
    """A cooperatively cancellable context.

    Cancelling a context cancels every child derived from it. ``wait`` doubles
    as an interruptible sleep: it returns True as soon as the context is
    cancelled.
    """

    def __init__(self, parent: Optional["CancelContext"] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: List["CancelContext"] = []
        self._reason: Optional[str] = None
        self._parent = parent
        if parent is not None:
            parent._attach(self)

    def _attach(self, child: "CancelContext"):
        with self._lock:
            cancelled = self._event.is_set()
            if not cancelled:
                self._children.append(child)
        if cancelled:
            child.cancel(self._reason)

    def child(self) -> "CancelContext":
        return CancelContext(parent=self)

    def detach(self):
        """Unlink this context from its parent so the parent drops its reference."""
        parent = self._parent
        if parent is None:
            return
        with parent._lock:
            if self in parent._children:
                parent._children.remove(self)
        self._parent = None

    def cancel(self, reason: Optional[str] = None):
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            children, self._children = self._children, []
        for child in children:
            child.cancel(reason)

    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def error(self) -> TaskCancelledError:
        return TaskCancelledError(self._reason or "context cancelled")
