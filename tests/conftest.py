import queue
import threading
import time

import pytest

from proxmox_tasks.context import CancelContext
from proxmox_tasks.fetcher import LogPage, StatusFetcher

UPID_MOVE = "UPID:pve-test:002860A9:051E01C1:67536165:qmmove:102:root@pam:"


class ScriptedFetcher(StatusFetcher):
    """Fetcher whose responses are pushed by the test.

    Calls block until a response is queued or the context is cancelled. With
    ``block_log=False`` an empty log queue answers with an empty page instead.
    """

    def __init__(self, block_log=True):
        self.statuses = queue.Queue()
        self.pages = queue.Queue()
        self.block_log = block_log
        self.status_calls = 0
        self.log_calls = 0
        self.log_starts = []
        self.stopped = []
        self._lock = threading.Lock()

    def push_status(self, item):
        self.statuses.put(item)

    def push_log(self, lines, start=0, total=None):
        self.pages.put(LogPage(start=start, lines=list(lines), total=total))

    def push_log_error(self, exc):
        self.pages.put(exc)

    def _next(self, q, context, block=True):
        while True:
            if context.cancelled():
                raise context.error()
            try:
                item = q.get(timeout=0.005)
            except queue.Empty:
                if not block:
                    return None
                continue
            if isinstance(item, BaseException):
                raise item
            return item

    def fetch_status(self, upid, context):
        with self._lock:
            self.status_calls += 1
        return self._next(self.statuses, context)

    def fetch_log_page(self, upid, start, limit, context):
        with self._lock:
            self.log_calls += 1
            self.log_starts.append(start)
        page = self._next(self.pages, context, block=self.block_log)
        if page is None:
            return LogPage(start=start, lines=[], total=start)
        return page

    def stop_task(self, upid, context):
        self.stopped.append(upid.raw)


class CountingFetcher(StatusFetcher):
    """Non-blocking fetcher: ``running`` for a number of polls, then done/OK.

    Every status poll makes one more log line available.
    """

    def __init__(self, running_polls=20, exit_status="OK"):
        self.running_polls = running_polls
        self.exit_status = exit_status
        self.available = 0
        self.polls = 0
        self._lock = threading.Lock()

    def fetch_status(self, upid, context):
        with self._lock:
            self.polls += 1
            self.available += 1
            if self.polls > self.running_polls:
                return {"status": "stopped", "exitstatus": self.exit_status}
            return {"status": "running"}

    def fetch_log_page(self, upid, start, limit, context):
        with self._lock:
            available = self.available
        end = min(available, start + limit)
        lines = [f"line {i}" for i in range(start, end)]
        return LogPage(start=start, lines=lines, total=available)

    def stop_task(self, upid, context):
        pass


def wait_until(predicate, timeout=2.0, interval=0.005):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def context():
    ctx = CancelContext()
    yield ctx
    ctx.cancel("test finished")


@pytest.fixture
def fetcher():
    return ScriptedFetcher()


@pytest.fixture
def clock():
    return FakeClock()
