"""
Configuration and exit codes for proxmox-tasks.
"""

from __future__ import annotations

import configparser
import os
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

import platformdirs
from rich.console import Console

from .fetcher import LOG_CHUNK_SIZE
from .monitor import DEFAULT_MAX_RETRIES, DEFAULT_POLL_INTERVAL
from .task import DEFAULT_CHECK_INTERVAL, DEFAULT_TASK_TIMEOUT

err_console = Console(stderr=True)


class ExitCode(Enum):
    """Standard exit codes for CLI operations."""

    SUCCESS = 0
    GENERAL_ERROR = 1
    INVALID_INPUT = 2
    NOT_FOUND = 3
    PERMISSION_DENIED = 4
    TIMEOUT = 5
    SERVER_ERROR = 6
    TASK_FAILED = 7


@dataclass
class Config:
    """Connection settings plus task tracking knobs."""

    host: str
    port: int = 8006
    user: str = "root@pam"
    token_name: str = ""
    token_value: str = ""
    verify_ssl: bool = True
    ca_cert_path: Optional[str] = None
    connect_timeout: int = 10
    read_timeout: int = 30
    profile: str = "default"
    task_timeout: float = DEFAULT_TASK_TIMEOUT
    task_check_interval: float = DEFAULT_CHECK_INTERVAL
    task_poll_interval: float = DEFAULT_POLL_INTERVAL
    task_retries: int = DEFAULT_MAX_RETRIES
    log_chunk_size: int = LOG_CHUNK_SIZE

    @staticmethod
    def _parse_bool(value: Optional[str], default: bool = True) -> bool:
        if value is None:
            return default
        return value.strip().lower() in ("1", "true", "yes", "on")

    @classmethod
    def _get_config_path(cls, profile: str = "default") -> Path:
        """Config file path in the platform's user config directory."""
        config_dir = Path(platformdirs.user_config_dir("proxmox-tasks"))
        return config_dir / (f"config.{profile}.ini" if profile != "default" else "config.ini")

    @classmethod
    def _load_config_file(cls, config_path: Path) -> configparser.ConfigParser:
        config = configparser.ConfigParser()
        if config_path.exists():
            try:
                config.read(config_path)
                if os.getenv("PROXMOX_DEBUG"):
                    err_console.print(f"[dim]Loaded config from: {config_path}[/dim]")
            except configparser.Error as e:
                err_console.print(
                    f"[yellow]Warning: Failed to read config file {config_path}: {e}[/yellow]"
                )
        return config

    @classmethod
    def from_env(cls, profile: str = "default", require_token: bool = True) -> "Config":
        """Load configuration from the config file and environment variables.

        Priority order (highest to lowest):
        1. Environment variables (PROXMOX_*)
        2. Config file (~/.config/proxmox-tasks/config.ini on Linux)
        3. Default values
        """
        config_path = cls._get_config_path(profile)
        config = cls._load_config_file(config_path)

        section = profile if config.has_section(profile) else "proxmox"
        if not config.has_section(section):
            section = "DEFAULT"

        def get_value(key: str, default: str = "") -> str:
            env_value = os.getenv(f"PROXMOX_{key}")
            if env_value:
                return env_value
            if config.has_option(section, key.lower()):
                return config.get(section, key.lower())
            return default

        def get_number(key: str, default, cast):
            raw = get_value(key, str(default))
            try:
                return cast(raw)
            except ValueError:
                err_console.print(f"[red]Error: PROXMOX_{key} must be a number, got {raw!r}[/red]")
                sys.exit(ExitCode.INVALID_INPUT.value)

        token_name = get_value("TOKEN_NAME")
        token_value = get_value("TOKEN_VALUE")
        if require_token and (not token_name or not token_value):
            config_path.parent.mkdir(parents=True, exist_ok=True)
            err_console.print(
                f"[red]Error: PROXMOX_TOKEN_NAME and PROXMOX_TOKEN_VALUE must be set[/red]\n"
                f"[yellow]Please create a config file at: {config_path}[/yellow]\n"
                f"[dim]Example config file:[/dim]\n"
                f"[dim][proxmox][/dim]\n"
                f"[dim]host = your.proxmox.server[/dim]\n"
                f"[dim]token_name = your-token-name[/dim]\n"
                f"[dim]token_value = your-token-secret[/dim]\n"
            )
            sys.exit(ExitCode.INVALID_INPUT.value)

        return cls(
            host=get_value("HOST", "localhost"),
            port=get_number("PORT", 8006, int),
            user=get_value("USER", "root@pam"),
            token_name=token_name,
            token_value=token_value,
            verify_ssl=cls._parse_bool(get_value("VERIFY_SSL", "true"), default=True),
            ca_cert_path=get_value("CA_CERT_PATH") or None,
            connect_timeout=get_number("CONNECT_TIMEOUT", 10, int),
            read_timeout=get_number("READ_TIMEOUT", 30, int),
            profile=profile,
            task_timeout=get_number("TASK_TIMEOUT", DEFAULT_TASK_TIMEOUT, float),
            task_check_interval=get_number("TASK_CHECK_INTERVAL", DEFAULT_CHECK_INTERVAL, float),
            task_poll_interval=get_number("TASK_POLL_INTERVAL", DEFAULT_POLL_INTERVAL, float),
            task_retries=get_number("TASK_RETRIES", DEFAULT_MAX_RETRIES, int),
            log_chunk_size=get_number("LOG_CHUNK_SIZE", LOG_CHUNK_SIZE, int),
        )

    def validate(self) -> bool:
        if not self.host or not self.token_name or not self.token_value:
            return False
        return self.task_timeout > 0 and self.task_check_interval > 0 and self.task_poll_interval > 0
