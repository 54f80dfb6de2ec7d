import json
import time
from unittest.mock import Mock, patch

import pytest

from proxmox_tasks.cli import create_parser, main
from proxmox_tasks.commands import CLICommands
from proxmox_tasks.config import ExitCode
from proxmox_tasks.context import CancelContext
from proxmox_tasks.errors import TaskFailedError, TaskTimeoutError
from proxmox_tasks.fetcher import LogPage, StatusFetcher
from proxmox_tasks.monitor import TaskMonitor

from conftest import UPID_MOVE


def test_parser_wait_options():
    args = create_parser().parse_args(["wait", UPID_MOVE, "--timeout", "30", "--interval", "1"])
    assert args.command == "wait"
    assert args.upid == UPID_MOVE
    assert args.timeout == 30
    assert args.interval == 1


def test_parser_vm_action():
    args = create_parser().parse_args(["stop", "101", "--hard", "--wait", "-y"])
    assert args.vmid == 101
    assert args.hard and args.wait and args.yes
    assert args.timeout is None


def test_upid_command_json(capsys):
    main(["--output", "json", "upid", UPID_MOVE])
    data = json.loads(capsys.readouterr().out)
    assert data["node"] == "pve-test"
    assert data["type"] == "qmmove"
    assert data["user"] == "root@pam"
    assert data["id"] == "102"


def test_upid_command_rejects_malformed():
    with pytest.raises(SystemExit) as excinfo:
        main(["upid", "UPID:broken"])
    assert excinfo.value.code == ExitCode.INVALID_INPUT.value


def test_no_command_prints_help(capsys):
    with pytest.raises(SystemExit) as excinfo:
        main([])
    assert excinfo.value.code == ExitCode.SUCCESS.value
    assert "proxmox-tasks" in capsys.readouterr().out


def _wait_args(**kwargs):
    args = Mock(upid=UPID_MOVE, timeout=None, interval=None)
    for key, value in kwargs.items():
        setattr(args, key, value)
    return args


def _client(monitor):
    client = Mock()
    client.config.task_timeout = 1
    client.config.task_check_interval = 0.01
    client.context = None
    client.track.return_value = monitor
    return client


def test_wait_command_success(capsys):
    monitor = Mock(id=UPID_MOVE)
    monitor.ended.return_value = (True, None)
    monitor.exit_status.return_value = "OK"
    commands = CLICommands(_client(monitor), output_format="json")

    commands.task_wait(_wait_args())

    assert json.loads(capsys.readouterr().out) == {"success": True, "message": "Task completed: OK"}
    monitor.close.assert_called_once()


def test_wait_command_failure_exit_code():
    monitor = Mock(id=UPID_MOVE)
    monitor.ended.return_value = (True, TaskFailedError(UPID_MOVE, "ERROR"))
    commands = CLICommands(_client(monitor), output_format="json")

    with pytest.raises(SystemExit) as excinfo:
        commands.task_wait(_wait_args())
    assert excinfo.value.code == ExitCode.TASK_FAILED.value


def test_wait_command_timeout_exit_code():
    monitor = Mock(id=UPID_MOVE)
    monitor.ended.return_value = (False, None)
    commands = CLICommands(_client(monitor), output_format="json")

    with patch("proxmox_tasks.commands.CompletionWaiter") as waiter_cls:
        waiter_cls.return_value.wait.side_effect = TaskTimeoutError(UPID_MOVE, 1)
        with pytest.raises(SystemExit) as excinfo:
            commands.task_wait(_wait_args())
    assert excinfo.value.code == ExitCode.TIMEOUT.value


def test_log_command_json(capsys):
    monitor = Mock(id=UPID_MOVE)
    monitor.status.return_value = "stopped"
    monitor.log.return_value = ["starting", "TASK OK"]
    monitor.ended.return_value = (True, None)
    commands = CLICommands(_client(monitor), output_format="json")

    commands.task_log(Mock(upid=UPID_MOVE, follow=False))

    data = json.loads(capsys.readouterr().out)
    assert data["log"] == ["starting", "TASK OK"]
    assert data["ended"] is True


class FinishedTaskFetcher(StatusFetcher):
    """Reports a task that already ended, with a slow round trip per call."""

    def __init__(self, exit_status, lines, delay=0.05):
        self.exit_status = exit_status
        self.lines = lines
        self.delay = delay

    def fetch_status(self, upid, context):
        time.sleep(self.delay)
        return {"status": "stopped", "exitstatus": self.exit_status}

    def fetch_log_page(self, upid, start, limit, context):
        time.sleep(self.delay)
        return LogPage(start=start, lines=self.lines[start:start + limit], total=len(self.lines))

    def stop_task(self, upid, context):
        pass


def _tracking_client(fetcher):
    client = Mock()
    client.context = CancelContext()
    client.track.side_effect = lambda upid: TaskMonitor(fetcher, upid, client.context, interval=0.01)
    return client


def test_log_command_reads_finished_task(capsys):
    fetcher = FinishedTaskFetcher("OK", ["starting", "TASK OK"])
    commands = CLICommands(_tracking_client(fetcher), output_format="json")

    commands.task_log(Mock(upid=UPID_MOVE, follow=False))

    data = json.loads(capsys.readouterr().out)
    assert data["log"] == ["starting", "TASK OK"]
    assert data["ended"] is True


def test_status_command_finished_task(capsys):
    fetcher = FinishedTaskFetcher("OK", ["TASK OK"])
    commands = CLICommands(_tracking_client(fetcher), output_format="json")

    commands.task_status(Mock(upid=UPID_MOVE))

    data = json.loads(capsys.readouterr().out)
    assert data["status"] == "stopped"
    assert data["ended"] is True
    assert data["error"] is None


def test_status_command_failed_task_exit_code(capsys):
    fetcher = FinishedTaskFetcher("ERROR: boom", ["TASK ERROR: boom"])
    commands = CLICommands(_tracking_client(fetcher), output_format="json")

    with pytest.raises(SystemExit) as excinfo:
        commands.task_status(Mock(upid=UPID_MOVE))

    assert excinfo.value.code == ExitCode.TASK_FAILED.value
    data = json.loads(capsys.readouterr().out)
    assert data["ended"] is True
    assert data["exitstatus"] == "ERROR: boom"
    assert data["error"] == "ERROR: boom"
