#!/usr/bin/env python3
"""
proxmox-tasks entrypoint: argument parsing and command dispatch.
"""

import argparse
import logging
import os
import sys
import traceback

from rich.console import Console
from rich.logging import RichHandler

from .config import Config, ExitCode
from .client import ProxmoxClient
from .commands import CLICommands


err_console = Console(stderr=True)

# Commands that never talk to the API.
OFFLINE_COMMANDS = {'upid'}


def setup_logging(debug: bool = False):
    """Route library logging through rich on stderr."""
    handler = RichHandler(console=err_console, show_path=debug, rich_tracebacks=debug)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )
    # urllib3 is noisy at DEBUG level
    logging.getLogger("urllib3").setLevel(logging.INFO if debug else logging.WARNING)


def _add_vm_target(parser, with_wait: bool = True, confirm: bool = True):
    parser.add_argument('vmid', type=int, help='VM ID')
    parser.add_argument('--node', help='Node name (optional, will auto-detect)')
    if confirm:
        parser.add_argument('-y', '--yes', action='store_true', help='Skip confirmation')
    if with_wait:
        parser.add_argument('--wait', action='store_true', help='Wait for the task to complete')
        parser.add_argument('--timeout', type=float, default=None, help='Timeout for --wait (seconds)')


def create_parser():
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog='proxmox-tasks',
        description='Track Proxmox VE tasks and run guest actions to completion',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument('--profile', default='default', help='Configuration profile to use')
    parser.add_argument('--output', choices=['table', 'json'], default='table', help='Output format')
    parser.add_argument('--insecure', action='store_true', help='Disable SSL certificate verification (use with caution)')
    parser.add_argument('--debug', action='store_true', help='Enable debug output')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    upid_parser = subparsers.add_parser('upid', help='Decode a task identifier (no connection needed)')
    upid_parser.add_argument('upid', help='Task UPID')

    status_parser = subparsers.add_parser('status', help='Show the status of a task')
    status_parser.add_argument('upid', help='Task UPID')

    log_parser = subparsers.add_parser('log', help='Show the log of a task')
    log_parser.add_argument('upid', help='Task UPID')
    log_parser.add_argument('-f', '--follow', action='store_true', help='Stream new lines until the task ends')

    wait_parser = subparsers.add_parser('wait', help='Wait for a task to finish')
    wait_parser.add_argument('upid', help='Task UPID')
    wait_parser.add_argument('--timeout', type=float, default=None, help='Give up after this many seconds')
    wait_parser.add_argument('--interval', type=float, default=None, help='Seconds between status checks')

    cancel_parser = subparsers.add_parser('cancel', help='Stop a running task')
    cancel_parser.add_argument('upid', help='Task UPID')
    cancel_parser.add_argument('-y', '--yes', action='store_true', help='Skip confirmation')

    tasks_parser = subparsers.add_parser('tasks', help='List recent tasks')
    tasks_parser.add_argument('--node', help='Only list tasks of this node')
    tasks_parser.add_argument('--limit', type=int, default=50, help='Maximum number of tasks')

    _add_vm_target(subparsers.add_parser('start', help='Start a VM'))
    stop_parser = subparsers.add_parser('stop', help='Stop a VM')
    _add_vm_target(stop_parser)
    stop_parser.add_argument('--hard', action='store_true', help='Force stop (no graceful shutdown)')
    _add_vm_target(subparsers.add_parser('reboot', help='Reboot a VM'))
    _add_vm_target(subparsers.add_parser('suspend', help='Suspend/pause a VM'))
    _add_vm_target(subparsers.add_parser('resume', help='Resume a suspended VM'), confirm=False)

    return parser


def main(argv=None):
    """Main entry point for the CLI application."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(ExitCode.SUCCESS.value)

    setup_logging(args.debug)

    if args.insecure:
        os.environ['PROXMOX_VERIFY_SSL'] = 'false'
        err_console.print("[yellow]⚠ Warning: SSL verification disabled via --insecure flag[/yellow]")

    client = None
    try:
        if args.command not in OFFLINE_COMMANDS:
            config = Config.from_env(args.profile)
            client = ProxmoxClient(config, quiet=args.output == 'json')
        commands = CLICommands(client, output_format=args.output)
    except SystemExit:
        raise
    except Exception as e:
        err_console.print(f"[red]Initialization error: {e}[/red]")
        sys.exit(ExitCode.GENERAL_ERROR.value)

    command_map = {
        'upid': commands.upid_info,
        'status': commands.task_status,
        'log': commands.task_log,
        'wait': commands.task_wait,
        'cancel': commands.task_cancel,
        'tasks': commands.list_tasks,
        'start': commands.start_vm,
        'stop': commands.stop_vm,
        'reboot': commands.reboot_vm,
        'suspend': commands.suspend_vm,
        'resume': commands.resume_vm,
    }

    handler = command_map.get(args.command)
    if not handler:
        err_console.print(f"[red]Unknown command: {args.command}[/red]")
        parser.print_help()
        sys.exit(ExitCode.INVALID_INPUT.value)

    try:
        handler(args)
    except KeyboardInterrupt:
        err_console.print("\n[yellow]Operation cancelled[/yellow]")
        sys.exit(ExitCode.SUCCESS.value)
    except Exception as e:
        if args.debug:
            err_console.print("[red]Debug trace:[/red]")
            traceback.print_exc()
        err_console.print(f"[red]Error: {e}[/red]")
        sys.exit(ExitCode.GENERAL_ERROR.value)
    finally:
        if client is not None:
            client.close()


if __name__ == "__main__":
    main()
