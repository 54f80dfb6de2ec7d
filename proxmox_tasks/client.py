"""
Proxmox API client wrapper: connection handling, task status fetching and
guest power actions that hand back trackable tasks.
"""

import logging
import random
import time
from typing import Any, Dict, List, Optional, Tuple, Union

import urllib3
from proxmoxer import ProxmoxAPI
from proxmoxer.core import ResourceException
from rich.console import Console

from .config import Config, ExitCode
from .context import CancelContext
from .errors import TaskCancelledError, TaskError, TaskFailedError, TaskTimeoutError
from .fetcher import LogPage, StatusFetcher, log_page_from_entries
from .monitor import CompletedTask, TaskMonitor
from .task import CompletionWaiter
from .upid import UPID, UPID_PREFIX, parse_upid

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)

GUEST_ACTIONS = ("start", "stop", "shutdown", "reboot", "suspend", "resume")


class ProxmoxTaskFetcher(StatusFetcher):
    """StatusFetcher backed by a proxmoxer API handle."""

    def __init__(self, proxmox: ProxmoxAPI):
        self.proxmox = proxmox

    def _task(self, upid: UPID):
        return self.proxmox.nodes(upid.node).tasks(upid.raw)

    def fetch_status(self, upid: UPID, context: CancelContext) -> Dict[str, Any]:
        if context.cancelled():
            raise context.error()
        return self._task(upid).status.get()

    def fetch_log_page(self, upid: UPID, start: int, limit: int, context: CancelContext) -> LogPage:
        if context.cancelled():
            raise context.error()
        # proxmoxer unwraps the response to its data array, so the total is unknown here.
        entries = self._task(upid).log.get(start=start, limit=limit) or []
        return log_page_from_entries(entries, start)

    def stop_task(self, upid: UPID, context: CancelContext):
        self._task(upid).delete()


class ProxmoxClient:
    """Wrapper around proxmoxer that turns asynchronous API calls into tracked tasks."""

    def __init__(self, config: Config, quiet: bool = False):
        self.config = config
        self.quiet = quiet
        self.proxmox = None
        self.vm_cache: Dict[int, str] = {}
        self.task_fetcher: Optional[ProxmoxTaskFetcher] = None
        self.context = CancelContext()
        self.waiter = CompletionWaiter(
            timeout=config.task_timeout, interval=config.task_check_interval
        )
        self._connect()

    def retry(self, func, attempts: int = 3, base_delay: float = 0.5):
        """Lightweight retry with exponential backoff and jitter for transient GETs.

        Retries non-auth, non-404 ResourceExceptions and generic transient exceptions.
        """
        delay = base_delay
        last_exc = None
        for _ in range(attempts):
            try:
                return func()
            except ResourceException as e:
                if getattr(e, "status_code", None) in (401, 403, 404):
                    raise
                last_exc = e
            except Exception as e:
                last_exc = e
            jitter = delay * 0.1
            time.sleep(delay + random.uniform(-jitter, jitter))
            delay = min(delay * 2, 2.0)
        if last_exc:
            raise last_exc
        raise RuntimeError("Retry attempts exhausted")

    def _connect(self):
        """Establish connection to the Proxmox server with a version check."""
        try:
            verify_ssl_param: Any
            if not self.config.verify_ssl:
                verify_ssl_param = False
            elif self.config.ca_cert_path:
                verify_ssl_param = self.config.ca_cert_path
            else:
                verify_ssl_param = True

            if verify_ssl_param is False:
                urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

            self.proxmox = ProxmoxAPI(
                self.config.host,
                port=self.config.port,
                user=self.config.user,
                token_name=self.config.token_name,
                token_value=self.config.token_value,
                verify_ssl=verify_ssl_param,
                service="PVE",
                timeout=(self.config.connect_timeout, self.config.read_timeout),
            )

            version = self.proxmox.version.get()

            if verify_ssl_param is False:
                err_console.print("[yellow]⚠ Warning: SSL verification is disabled[/yellow]")

            if not self.quiet:
                console.print(
                    f"[green]✓ Connected to Proxmox {version['version']} "
                    f"at {self.config.host}:{self.config.port}[/green]"
                )

            self.task_fetcher = ProxmoxTaskFetcher(self.proxmox)

        except Exception as e:
            if "authentication failed" in str(e).lower():
                err_console.print("[red]Authentication failed. Check API token and user.[/red]")
                raise SystemExit(ExitCode.PERMISSION_DENIED.value)
            err_console.print(f"[red]Failed to connect to Proxmox: {e}[/red]")
            raise SystemExit(ExitCode.SERVER_ERROR.value)

    def close(self):
        """Cancel every monitor started through this client."""
        self.context.cancel("client closed")

    # Tasks

    def track(self, upid: Union[str, UPID], context: Optional[CancelContext] = None) -> TaskMonitor:
        """Start a background monitor for an already submitted task."""
        return TaskMonitor(
            self.task_fetcher,
            upid,
            context or self.context,
            interval=self.config.task_poll_interval,
            max_retries=self.config.task_retries,
            log_chunk_size=self.config.log_chunk_size,
        )

    def task_response(self, result: Any, context: Optional[CancelContext] = None):
        """Wrap the result of an asynchronous call in something trackable."""
        if isinstance(result, str) and result.startswith(UPID_PREFIX + ":"):
            return self.track(result, context)
        return CompletedTask()

    def wait_for_task(self, upid: Union[str, UPID], timeout: Optional[float] = None) -> str:
        """Block until ``upid`` ends and return its exit status."""
        waiter = self.waiter
        if timeout is not None:
            waiter = CompletionWaiter(timeout=timeout, interval=self.config.task_check_interval)
        monitor = self.track(upid)
        try:
            return waiter.wait(monitor, self.context)
        finally:
            monitor.close()

    def stop_task(self, upid: Union[str, UPID]):
        if not isinstance(upid, UPID):
            upid = parse_upid(upid)
        self.task_fetcher.stop_task(upid, self.context)

    def list_tasks(self, node: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """Recent tasks, newest first, from one node or the whole cluster."""
        if node:
            tasks = self.retry(lambda: self.proxmox.nodes(node).tasks.get(limit=limit))
        else:
            tasks = self.retry(self.proxmox.cluster.tasks.get)
        tasks = sorted(tasks, key=lambda t: t.get("starttime", 0), reverse=True)
        return tasks[:limit]

    # Guests

    def find_vm_node(self, vmid: int) -> Optional[str]:
        if vmid in self.vm_cache:
            return self.vm_cache[vmid]
        try:
            cluster_vms = self.retry(lambda: self.proxmox.cluster.resources.get(type="vm"))
        except Exception as e:
            logger.debug("Cluster resource lookup failed: %s", e)
            return None
        for vm in cluster_vms:
            if vm.get("type") != "qemu":
                continue
            if int(vm.get("vmid", -1)) == vmid:
                self.vm_cache[vmid] = vm["node"]
                return vm["node"]
        return None

    def get_vm_status(self, vmid: int, node: Optional[str] = None) -> Dict[str, Any]:
        if not node:
            node = self.find_vm_node(vmid)
            if not node:
                raise ValueError(f"VM {vmid} not found")
        return self.retry(lambda: self.proxmox.nodes(node).qemu(vmid).status.current.get())

    def _execute_vm_action(
        self, action: str, vmid: int, node: Optional[str] = None, wait: bool = False, timeout: Optional[float] = None
    ) -> Tuple[bool, str]:
        if action not in GUEST_ACTIONS:
            return False, f"Unknown action: {action}"
        if not node:
            node = self.find_vm_node(vmid)
            if not node:
                return False, f"VM {vmid} not found"
        try:
            result = getattr(self.proxmox.nodes(node).qemu(vmid).status, action).post()
        except ResourceException as e:
            if e.status_code == 404:
                return False, f"VM {vmid} not found on node {node}"
            if e.status_code in (401, 403):
                return False, f"Permission denied for {action} on VM {vmid}"
            return False, f"API error: {e}"
        if not wait:
            return True, f"Task initiated: {result}" if result else "Action completed"
        task = self.task_response(result)
        waiter = self.waiter
        if timeout is not None:
            waiter = CompletionWaiter(timeout=timeout, interval=self.config.task_check_interval)
        try:
            exit_status = waiter.wait(task, self.context)
        except TaskTimeoutError as e:
            return False, f"Task timeout: {e}"
        except TaskFailedError as e:
            return False, f"Task failed: {e.exit_status}"
        except TaskCancelledError as e:
            return False, f"Task cancelled: {e}"
        except TaskError as e:
            return False, f"Task error: {e}"
        finally:
            task.close()
        return True, f"Task completed: {exit_status or 'OK'}"

    def start_vm(self, vmid: int, node: Optional[str] = None, wait: bool = False, timeout: Optional[float] = None) -> Tuple[bool, str]:
        try:
            if self.get_vm_status(vmid, node).get("status") == "running":
                return True, f"VM {vmid} is already running (no-op)"
        except Exception as e:
            logger.debug("Status check before start failed: %s", e)
        return self._execute_vm_action("start", vmid, node, wait, timeout)

    def stop_vm(self, vmid: int, node: Optional[str] = None, hard: bool = False, wait: bool = False, timeout: Optional[float] = None) -> Tuple[bool, str]:
        try:
            if self.get_vm_status(vmid, node).get("status") == "stopped":
                return True, f"VM {vmid} is already stopped (no-op)"
        except Exception as e:
            logger.debug("Status check before stop failed: %s", e)
        action = "stop" if hard else "shutdown"
        return self._execute_vm_action(action, vmid, node, wait, timeout)

    def reboot_vm(self, vmid: int, node: Optional[str] = None, wait: bool = False, timeout: Optional[float] = None) -> Tuple[bool, str]:
        return self._execute_vm_action("reboot", vmid, node, wait, timeout)

    def suspend_vm(self, vmid: int, node: Optional[str] = None, wait: bool = False, timeout: Optional[float] = None) -> Tuple[bool, str]:
        return self._execute_vm_action("suspend", vmid, node, wait, timeout)

    def resume_vm(self, vmid: int, node: Optional[str] = None, wait: bool = False, timeout: Optional[float] = None) -> Tuple[bool, str]:
        return self._execute_vm_action("resume", vmid, node, wait, timeout)
