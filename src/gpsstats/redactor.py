"""Logging filter that keeps configured secrets (MQTT password, ...) out of logs.

Config *keys* matching ``logging.redact_patterns`` (shell-style globs,
case-insensitive) mark their string values as secret.  The filter renders
each record's message once and replaces every secret occurrence with
``[REDACTED]``.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from dataclasses import asdict, is_dataclass
from typing import Any, Iterable, Optional

REDACTED = "[REDACTED]"


class SecretRedactingFilter(logging.Filter):
    """A :class:`logging.Filter` that scrubs secret values from log output."""

    def __init__(self, secret_values: Iterable[str] | None = None) -> None:
        super().__init__()
        self._secrets: set[str] = set()
        self._pattern: Optional[re.Pattern] = None
        for value in secret_values or ():
            self.add_secret(value)

    def add_secret(self, value: str) -> None:
        # single characters would shred every message
        if not value or len(value) < 2 or value in self._secrets:
            return
        self._secrets.add(value)
        alternatives = sorted(self._secrets, key=len, reverse=True)
        self._pattern = re.compile("|".join(re.escape(s) for s in alternatives))

    def filter(self, record: logging.LogRecord) -> bool:
        if self._pattern is None:
            return True
        message = record.getMessage()
        redacted = self._pattern.sub(REDACTED, message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def collect_secret_values(config: Any, patterns: list[str] | None = None) -> list[str]:
    """Return the string values stored under keys matching *patterns*.

    Parameters
    ----------
    config:
        An :class:`~gpsstats.config.AppConfig` (or any dataclass) or a
        nested dict as read from the config file.
    patterns:
        Glob patterns such as ``["*password*", "*secret*"]``.
    """
    if not patterns:
        return []
    if is_dataclass(config):
        config = asdict(config)

    lowered = [p.lower() for p in patterns]
    found: list[str] = []

    def walk(obj: Any) -> None:
        if isinstance(obj, dict):
            for key, val in obj.items():
                if isinstance(val, str) and any(fnmatch.fnmatch(str(key).lower(), p) for p in lowered):
                    found.append(val)
                else:
                    walk(val)
        elif isinstance(obj, (list, tuple)):
            for item in obj:
                walk(item)

    walk(config)
    return found
