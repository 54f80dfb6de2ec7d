"""
Interface between task monitors and whatever talks to the Proxmox API.
"""

from typing import Any, Dict, List, NamedTuple, Optional

from .context import CancelContext
from .upid import UPID

# The web GUI requests task logs in windows of 510 lines.
LOG_CHUNK_SIZE = 510


class LogPage(NamedTuple):
    """A window of task log lines.

    ``start`` is the offset of ``lines[0]`` in the full log. ``total`` is the
    number of lines the remote knows about, or None when it does not say.
    """

    start: int
    lines: List[str]
    total: Optional[int] = None

    def has_more(self, cached: int, limit: int) -> bool:
        if self.total is not None:
            return self.total > cached
        return len(self.lines) >= limit


class StatusFetcher:
    """Round trips needed to track one task. Every call may raise; see errors.is_transient."""

    def fetch_status(self, upid: UPID, context: CancelContext) -> Dict[str, Any]:
        """Return the ``data`` object of the task status endpoint."""
        raise NotImplementedError

    def fetch_log_page(
        self, upid: UPID, start: int, limit: int, context: CancelContext
    ) -> LogPage:
        raise NotImplementedError

    def stop_task(self, upid: UPID, context: CancelContext):
        raise NotImplementedError


def log_page_from_entries(
    entries: List[Dict[str, Any]], start: int, total: Optional[int] = None
) -> LogPage:
    """Build a LogPage from raw ``{"n": <1-based line>, "t": <text>}`` entries."""
    lines = [str(entry.get("t", "")) for entry in entries]
    if entries and isinstance(entries[0].get("n"), (int, float)):
        start = int(entries[0]["n"]) - 1
    return LogPage(start=start, lines=lines, total=total)
