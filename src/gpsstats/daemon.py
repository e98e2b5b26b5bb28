"""Process plumbing around the bridge: pid file and privilege drop."""

from __future__ import annotations

import grp
import logging
import os
import pwd
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_PID_FILE = "/var/run/gpsstats.pid"


class AlreadyRunningError(RuntimeError):
    """Another live process owns the pid file."""


def parse_user(spec: str) -> tuple[str, Optional[str]]:
    """Split ``user[:group]``."""
    user, _, group = spec.partition(":")
    if not user:
        raise ValueError(f"Invalid user specification {spec!r}, expected user[:group]")
    return user, group or None


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def write_pid_file(path: str | Path) -> Path:
    """Record the current pid in *path*, replacing a stale file.

    Raises
    ------
    AlreadyRunningError
        If *path* names a process that is still alive.
    """
    pid_path = Path(path)
    if pid_path.exists():
        try:
            pid = int(pid_path.read_text().strip())
        except ValueError:
            pid = 0
        if pid > 0 and pid != os.getpid() and _process_alive(pid):
            raise AlreadyRunningError(f"gpsstats already running with pid {pid} ({pid_path})")
        logger.warning("Removing stale pid file %s", pid_path)

    pid_path.write_text(f"{os.getpid()}\n")
    return pid_path


def remove_pid_file(path: str | Path, privileges_dropped: bool = False) -> None:
    """Remove *path*; after a privilege drop a root-owned directory may refuse."""
    try:
        Path(path).unlink(missing_ok=True)
    except PermissionError as exc:
        if not privileges_dropped:
            logger.warning("Failed to remove pid file %s: %s", path, exc)
        else:
            logger.info("Leaving pid file %s behind, its directory is not writable as the dropped user", path)
    except OSError as exc:
        logger.warning("Failed to remove pid file %s: %s", path, exc)


def drop_privileges(user: str, group: Optional[str] = None) -> bool:
    """Switch to *user* (and *group*, or the user's primary group).

    Only acts when running as root; returns whether privileges were dropped.

    Raises
    ------
    ValueError
        Unknown user or group.
    """
    if os.geteuid() != 0:
        logger.debug("Not running as root, keeping uid %d", os.geteuid())
        return False

    try:
        pw = pwd.getpwnam(user)
    except KeyError as exc:
        raise ValueError(f"Unknown user {user!r}") from exc

    if group:
        try:
            gid = grp.getgrnam(group).gr_gid
        except KeyError as exc:
            raise ValueError(f"Unknown group {group!r}") from exc
    else:
        gid = pw.pw_gid

    os.initgroups(pw.pw_name, gid)
    os.setgid(gid)
    os.setuid(pw.pw_uid)
    logger.info("Dropped privileges to uid=%d gid=%d (%s)", pw.pw_uid, gid, user)
    return True
