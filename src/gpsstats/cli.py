"""Click CLI for gpsstats.

Entry point registered in ``pyproject.toml`` as ``gpsstats``.

Subcommands::

    gpsstats                   # run the bridge (syslog unless -f)
    gpsstats secrets init      # create encrypted secrets file
    gpsstats secrets set KEY   # store a secret
    gpsstats secrets list      # list secret names
    gpsstats secrets rekey     # re-encrypt with a new key
"""

from __future__ import annotations

import functools
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler, SysLogHandler
from pathlib import Path
from typing import Optional

import click
import orjson

from gpsstats import __version__
from gpsstats.bridge import Bridge
from gpsstats.config import AppConfig, LogFileConfig, dump_config, load_config
from gpsstats.daemon import (
    DEFAULT_PID_FILE,
    AlreadyRunningError,
    drop_privileges,
    parse_user,
    remove_pid_file,
    write_pid_file,
)
from gpsstats.redactor import SecretRedactingFilter, collect_secret_values
from gpsstats.secrets import DEFAULT_SECRETS_FILE

logger = logging.getLogger("gpsstats")

DEFAULT_CONFIG = "/etc/gpsstats.json"
SYSLOG_SOCKET = "/dev/log"


# ── log formatting ──────────────────────────────────────────────────


class _JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        obj = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj).decode()


def _setup_logging(
    level: str,
    foreground: bool,
    secret_values: list[str] | None = None,
    log_file_config: Optional[LogFileConfig] = None,
) -> SecretRedactingFilter:
    """Configure the root logger: stderr JSON in the foreground, syslog otherwise.

    Returns the redaction filter shared by every handler.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handlers: list[logging.Handler] = []
    if foreground:
        handlers.append(_stderr_handler())
    else:
        try:
            syslog = SysLogHandler(address=SYSLOG_SOCKET, facility=SysLogHandler.LOG_DAEMON)
        except OSError as exc:
            handlers.append(_stderr_handler())
            click.echo(f"Cannot open syslog at {SYSLOG_SOCKET} ({exc}), logging to stderr", err=True)
        else:
            syslog.setFormatter(logging.Formatter("gpsstats[%(process)d]: %(levelname)s %(name)s: %(message)s"))
            handlers.append(syslog)

    if log_file_config and log_file_config.enabled:
        Path(log_file_config.path).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            filename=log_file_config.path,
            maxBytes=log_file_config.max_size_bytes,
            backupCount=log_file_config.backup_count,
        )
        file_handler.setFormatter(_JsonFormatter())
        handlers.append(file_handler)

    # handler-level, so records from every module logger are scrubbed
    redactor = SecretRedactingFilter(secret_values)
    for handler in handlers:
        handler.addFilter(redactor)
        root.addHandler(handler)
    return redactor


def _stderr_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    return handler


def _load_secrets() -> dict[str, str]:
    key_file = os.environ.get("GPSSTATS_KEY_FILE")
    secrets_file = os.environ.get("GPSSTATS_SECRETS_FILE", DEFAULT_SECRETS_FILE)
    if key_file and Path(key_file).exists() and Path(secrets_file).exists():
        from gpsstats.secrets import load_secrets
        return load_secrets(secrets_file, key_file)
    return {}


# ── main CLI group ──────────────────────────────────────────────────


@click.group(invoke_without_command=True)
@click.option("-c", "--config", "config_path", default=None,
              help=f"Config file path (default: $GPSSTATS_CONFIG or {DEFAULT_CONFIG}).")
@click.option("-p", "--pid-file", default=DEFAULT_PID_FILE, show_default=True,
              help="Where to write the process id.")
@click.option("-f", "--foreground", is_flag=True, help="Log to stderr instead of syslog.")
@click.option("-d", "--debug", is_flag=True, help="Enable debug logging.")
@click.option("-u", "--user", "user_spec", default=None,
              help="Drop privileges to user[:group] when started as root.")
@click.option("--validate-config", "validate_only", is_flag=True,
              help="Validate config and exit.")
@click.option("--mqtt-password", default=None, help="Override ${GPSSTATS_MQTT_PASSWORD}.")
@click.version_option(__version__)
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Optional[str],
    pid_file: str,
    foreground: bool,
    debug: bool,
    user_spec: Optional[str],
    validate_only: bool,
    mqtt_password: Optional[str],
) -> None:
    """gpsstats: publish gpsd fix quality changes to MQTT."""
    if ctx.invoked_subcommand is not None:
        return  # defer to subcommand

    cfg_path = config_path or os.environ.get("GPSSTATS_CONFIG", DEFAULT_CONFIG)

    overrides: dict[str, str] = {}
    if mqtt_password:
        overrides["GPSSTATS_MQTT_PASSWORD"] = mqtt_password

    # --- load + validate config ---
    try:
        secrets_dict = _load_secrets()
        cfg = load_config(cfg_path, overrides=overrides, secrets=secrets_dict)
    except Exception as exc:
        click.echo(f"Config error: {exc}", err=True)
        raise SystemExit(1) from exc

    if user_spec:
        try:
            cfg.daemon.user, cfg.daemon.group = parse_user(user_spec)
        except ValueError as exc:
            click.echo(str(exc), err=True)
            raise SystemExit(1) from exc

    level = "debug" if debug else cfg.logging.level
    secret_values = collect_secret_values(cfg, cfg.logging.redact_patterns)
    redactor = _setup_logging(level, foreground or validate_only, secret_values, cfg.logging.file)
    dump_config(cfg)

    if validate_only:
        click.echo("Configuration is valid.", err=True)
        raise SystemExit(0)

    logger.info("Starting gpsstats %s", __version__)

    try:
        write_pid_file(pid_file)
    except (AlreadyRunningError, OSError) as exc:
        logger.error("Cannot write pid file: %s", exc)
        raise SystemExit(1) from exc

    dropped = False
    try:
        if cfg.daemon.user:
            dropped = drop_privileges(cfg.daemon.user, cfg.daemon.group)
        _run_bridge(
            cfg,
            functools.partial(load_config, cfg_path, overrides=overrides, secrets=secrets_dict),
            redactor,
        )
    except (ValueError, OSError) as exc:
        logger.error("Startup failed: %s", exc)
        raise SystemExit(1) from exc
    finally:
        remove_pid_file(pid_file, privileges_dropped=dropped)


def _run_bridge(cfg: AppConfig, config_loader, redactor: Optional[SecretRedactingFilter] = None) -> None:
    bridge = Bridge(cfg, config_loader=config_loader, redactor=redactor)

    def _handle_stop(signum, frame) -> None:
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        bridge.stop()

    signal.signal(signal.SIGHUP, lambda signum, frame: bridge.request_reload())
    signal.signal(signal.SIGUSR1, lambda signum, frame: bridge.request_stats())
    for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGQUIT):
        signal.signal(sig, _handle_stop)

    bridge.run()


# ── secrets subcommand group ────────────────────────────────────────


def _secrets_file() -> str:
    return os.environ.get("GPSSTATS_SECRETS_FILE", DEFAULT_SECRETS_FILE)


@main.group()
def secrets() -> None:
    """Manage the encrypted secrets file."""


@secrets.command("init")
@click.option("--output", default=None, help="Path for the encrypted file.")
@click.option("--key-file", required=True, help="Path for the master key.")
def secrets_init(output: Optional[str], key_file: str) -> None:
    """Create an empty encrypted secrets file and key."""
    from gpsstats.secrets import init_secrets
    target = output or _secrets_file()
    init_secrets(target, key_file)
    click.echo(f"Initialized: {target} (key: {key_file})")


@secrets.command("set")
@click.argument("key")
@click.option("--value", prompt=True, hide_input=True, help="Secret value.")
@click.option("--key-file", required=True, help="Path to the master key.")
def secrets_set(key: str, value: str, key_file: str) -> None:
    """Store a secret in the encrypted file."""
    from gpsstats.secrets import set_secret
    set_secret(_secrets_file(), key_file, key, value)
    click.echo(f"Set: {key}")


@secrets.command("list")
@click.option("--key-file", required=True, help="Path to the master key.")
def secrets_list(key_file: str) -> None:
    """List stored secret names (values are never shown)."""
    from gpsstats.secrets import list_secrets
    for name in list_secrets(_secrets_file(), key_file):
        click.echo(name)


@secrets.command("rekey")
@click.option("--key-file", required=True, help="Current master key path.")
@click.option("--new-key-file", required=True, help="New master key path.")
def secrets_rekey(key_file: str, new_key_file: str) -> None:
    """Re-encrypt the secrets store with a new key."""
    from gpsstats.secrets import rekey
    rekey(_secrets_file(), key_file, new_key_file)
    click.echo(f"Re-keyed with: {new_key_file}")
