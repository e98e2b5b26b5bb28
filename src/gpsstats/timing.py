"""Second/nanosecond instant arithmetic for gpsd ``TOFF`` and ``PPS`` reports.

gpsd reports both instants as ``(sec, nsec)`` pairs.  The difference is
normalized so that the nanosecond part carries the same sign as the whole
value and stays within one second before it is collapsed to a float.
"""

from __future__ import annotations

from typing import NamedTuple

NS_IN_SEC = 1_000_000_000


class Timespec(NamedTuple):
    sec: int
    nsec: int


def normalize(ts: Timespec) -> Timespec:
    """Bring ``nsec`` back into range, borrowing from or carrying into ``sec``."""
    sec, nsec = ts
    if sec >= 1 or (sec == 0 and nsec >= 0):
        # result is positive
        if nsec >= NS_IN_SEC:
            nsec -= NS_IN_SEC
            sec += 1
        elif nsec < 0:
            nsec += NS_IN_SEC
            sec -= 1
    else:
        # result is negative
        if nsec <= -NS_IN_SEC:
            nsec += NS_IN_SEC
            sec -= 1
        elif nsec > 0:
            nsec -= NS_IN_SEC
            sec += 1
    return Timespec(sec, nsec)


def subtract(a: Timespec, b: Timespec) -> Timespec:
    """Return the normalized difference ``a - b``."""
    return normalize(Timespec(a.sec - b.sec, a.nsec - b.nsec))


def to_seconds(ts: Timespec) -> float:
    return ts.sec + ts.nsec / 1e9


def delta_seconds(clock: Timespec, real: Timespec) -> float:
    """Signed ``clock - real`` offset in seconds."""
    return to_seconds(subtract(clock, real))


def from_report(report, prefix: str) -> Timespec:
    """Read ``<prefix>_sec`` / ``<prefix>_nsec`` from a gpsd report."""
    return Timespec(
        int(report.get(f"{prefix}_sec", 0) or 0),
        int(report.get(f"{prefix}_nsec", 0) or 0),
    )
