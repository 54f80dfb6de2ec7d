"""
CLI command handlers and output formatting.
"""

import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from .config import ExitCode
from .errors import (
    TaskCancelledError,
    TaskError,
    TaskFailedError,
    TaskTimeoutError,
    UPIDParseError,
)
from .task import CompletionWaiter
from .upid import parse_upid

console = Console()
err_console = Console(stderr=True)

_STATUS_COLORS = {'running': 'yellow', 'stopped': 'green', 'done': 'green'}


def _format_time(value: Any) -> str:
    if isinstance(value, datetime):
        return value.strftime('%Y-%m-%d %H:%M:%S')
    if isinstance(value, (int, float)) and value > 0:
        return datetime.fromtimestamp(value, tz=timezone.utc).strftime('%Y-%m-%d %H:%M:%S')
    return '-'


class CLICommands:
    """Command handlers for the CLI interface."""

    def __init__(self, client: Any, output_format: str = 'table'):
        self.client = client
        self.output_format = output_format

    def _output_result(self, data: Any, table_func=None):
        """Output data in the requested format."""
        if self.output_format == 'json':
            print(json.dumps(data, indent=2, default=str))
        else:
            if table_func:
                table_func(data)
            else:
                console.print(data)

    def _map_exit_code(self, success: bool, message: str) -> int:
        if success:
            return ExitCode.SUCCESS.value
        ml = (message or '').lower()
        if 'timeout' in ml or 'timed out' in ml:
            return ExitCode.TIMEOUT.value
        if 'task failed' in ml:
            return ExitCode.TASK_FAILED.value
        if 'permission denied' in ml or 'unauthorized' in ml or 'forbidden' in ml:
            return ExitCode.PERMISSION_DENIED.value
        if 'not found' in ml:
            return ExitCode.NOT_FOUND.value
        return ExitCode.SERVER_ERROR.value

    def _emit_result(self, success: bool, message: str):
        code = self._map_exit_code(success, message)
        if self.output_format == 'json':
            self._output_result({'success': success, 'message': message})
        else:
            if success:
                console.print(f"[green]✓ {message}[/green]")
            else:
                err_console.print(f"[red]✗ {message}[/red]")
        if code != ExitCode.SUCCESS.value:
            sys.exit(code)

    def _maybe_confirm(self, args, prompt_text: str):
        if hasattr(args, 'yes'):
            if not args.yes and not Confirm.ask(prompt_text):
                sys.exit(ExitCode.SUCCESS.value)

    def _parse(self, raw: str):
        try:
            return parse_upid(raw)
        except UPIDParseError as e:
            err_console.print(f"[red]{e}[/red]")
            sys.exit(ExitCode.INVALID_INPUT.value)

    # Tasks

    def upid_info(self, args):
        upid = self._parse(args.upid)
        data: Dict[str, Any] = {
            'upid': upid.raw,
            'node': upid.node,
            'pid': upid.pid,
            'pstart': upid.pstart,
            'starttime': upid.start_time,
            'type': upid.operation_type,
            'id': upid.resource_id,
            'user': str(upid.user),
        }
        if self.output_format == 'json':
            self._output_result(data)
            return
        table = Table(title="Task identifier", show_header=False)
        table.add_column("Field", style="cyan", no_wrap=True)
        table.add_column("Value")
        table.add_row("Node", upid.node)
        table.add_row("Type", upid.operation_type)
        table.add_row("Resource", upid.resource_id or '-')
        table.add_row("User", str(upid.user))
        table.add_row("PID", str(upid.pid))
        table.add_row("Started", _format_time(upid.started_at))
        console.print(table)

    def task_status(self, args):
        monitor = self.client.track(self._parse(args.upid))
        try:
            monitor.wait_ready()
            status = monitor.status()
            ended, err = monitor.ended()
            data = {
                'upid': monitor.id,
                'status': status,
                'exitstatus': monitor.exit_status() or None,
                'pid': monitor.process_id(),
                'starttime': _format_time(monitor.start_time()),
                'endtime': _format_time(monitor.end_time()),
                'ended': ended,
                'error': str(err) if err else None,
            }
        finally:
            monitor.close()
        if err is not None and not status:
            self._emit_result(False, f"Could not fetch task status: {err}")
            return
        if self.output_format == 'json':
            self._output_result(data)
            if isinstance(err, TaskFailedError):
                sys.exit(ExitCode.TASK_FAILED.value)
            return
        color = _STATUS_COLORS.get(status, 'white')
        console.print(f"[bold]{monitor.operation_type}[/bold] on {monitor.node} by {monitor.user}")
        console.print(f"  Status: [{color}]{status}[/{color}]")
        if data['exitstatus']:
            exit_color = 'green' if err is None else 'red'
            console.print(f"  Exit status: [{exit_color}]{data['exitstatus']}[/{exit_color}]")
        console.print(f"  Started: {data['starttime']}")
        console.print(f"  Ended: {data['endtime']}")
        if isinstance(err, TaskFailedError):
            self._emit_result(False, f"Task failed: {err.exit_status}")

    def task_log(self, args):
        monitor = self.client.track(self._parse(args.upid))
        try:
            if args.follow:
                for line in monitor.iter_log():
                    if self.output_format == 'json':
                        print(json.dumps(line))
                    else:
                        console.print(line, markup=False, highlight=False)
                ended, err = monitor.ended()
            else:
                monitor.wait_ready()
                lines = monitor.log()
                ended, err = monitor.ended()
                if self.output_format == 'json':
                    self._output_result({'upid': monitor.id, 'ended': ended, 'log': lines})
                else:
                    for line in lines:
                        console.print(line, markup=False, highlight=False)
        finally:
            monitor.close()
        if ended and err is not None and not isinstance(err, TaskCancelledError):
            self._emit_result(False, f"Task failed: {err}")

    def task_wait(self, args):
        upid = self._parse(args.upid)
        waiter = CompletionWaiter(
            timeout=args.timeout or self.client.config.task_timeout,
            interval=args.interval or self.client.config.task_check_interval,
        )
        monitor = self.client.track(upid)
        try:
            exit_status = waiter.wait(monitor, self.client.context)
        except TaskTimeoutError as e:
            self._emit_result(False, str(e))
            return
        except TaskFailedError as e:
            self._emit_result(False, f"Task failed: {e.exit_status}")
            return
        except TaskError as e:
            self._emit_result(False, f"Task error: {e}")
            return
        finally:
            monitor.close()
        self._emit_result(True, f"Task completed: {exit_status or 'OK'}")

    def task_cancel(self, args):
        upid = self._parse(args.upid)
        self._maybe_confirm(args, f"Stop task {upid.operation_type} on {upid.node}?")
        self.client.stop_task(upid)
        self._emit_result(True, f"Stop requested for {upid.raw}")

    def list_tasks(self, args):
        tasks = self.client.list_tasks(node=args.node, limit=args.limit)
        if self.output_format == 'json':
            self._output_result(tasks)
            return
        if not tasks:
            console.print("[yellow]No tasks found[/yellow]")
            return

        table = Table(title="Tasks")
        table.add_column("Start", style="cyan", no_wrap=True)
        table.add_column("Node", style="green")
        table.add_column("Type", style="magenta")
        table.add_column("ID")
        table.add_column("User", style="blue")
        table.add_column("Status", style="yellow")

        for task in tasks:
            status: Optional[str] = task.get('status')
            if status is None:
                status_str = "[yellow]running[/yellow]"
            elif status == 'OK' or status.startswith('WARNINGS'):
                status_str = f"[green]{status}[/green]"
            else:
                status_str = f"[red]{status}[/red]"
            table.add_row(
                _format_time(task.get('starttime')),
                task.get('node', ''),
                task.get('type', ''),
                str(task.get('id', '') or ''),
                task.get('user', ''),
                status_str,
            )
        console.print(table)

    # Guests

    def start_vm(self, args):
        self._maybe_confirm(args, f"Start VM {args.vmid}?")
        success, message = self.client.start_vm(
            args.vmid, args.node, wait=args.wait, timeout=args.timeout
        )
        self._emit_result(success, message)

    def stop_vm(self, args):
        action = "force stop" if args.hard else "gracefully shutdown"
        self._maybe_confirm(args, f"{action} VM {args.vmid}?")
        success, message = self.client.stop_vm(
            args.vmid, args.node, hard=args.hard, wait=args.wait, timeout=args.timeout
        )
        self._emit_result(success, message)

    def reboot_vm(self, args):
        self._maybe_confirm(args, f"Reboot VM {args.vmid}?")
        success, message = self.client.reboot_vm(
            args.vmid, args.node, wait=args.wait, timeout=args.timeout
        )
        self._emit_result(success, message)

    def suspend_vm(self, args):
        self._maybe_confirm(args, f"Suspend VM {args.vmid}?")
        success, message = self.client.suspend_vm(
            args.vmid, args.node, wait=args.wait, timeout=args.timeout
        )
        self._emit_result(success, message)

    def resume_vm(self, args):
        success, message = self.client.resume_vm(
            args.vmid, args.node, wait=args.wait, timeout=args.timeout
        )
        self._emit_result(success, message)
