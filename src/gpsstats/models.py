"""Dataclass models shared by the gpsd source, the MQTT sink and the detector.

Snapshots are frozen so a replaced snapshot can be handed out (e.g. to a
statistics dump) while the source keeps working on the next one.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Optional

# Number of constellation buckets in the seen-histogram (u-blox gnssId 0..7).
GNSSID_COUNT = 8

GNSS_NAMES = (
    "gps",
    "sbas",
    "galileo",
    "beidou",
    "imes",
    "qzss",
    "glonass",
    "irnss",
)

# gpsd fix modes
MODE_NOT_SEEN = 0
MODE_NO_FIX = 1
MODE_2D = 2
MODE_3D = 3


class Status(enum.Enum):
    """Uniform outcome of every session operation."""

    OK = "OK"
    TRANSIENT = "TRANSIENT"
    NEEDS_RECONNECT = "NEEDS_RECONNECT"
    FATAL = "FATAL"


class ConnectionState(enum.Enum):
    """States of a session's connection lifecycle."""

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECT_SCHEDULED = "RECONNECT_SCHEDULED"


@dataclass
class SessionStats:
    """Monotonic per-session counters. Never reset."""

    connects: int = 0
    disconnects: int = 0
    events_received: int = 0
    events_sent: int = 0
    last_event: Optional[float] = None

    def snapshot(self) -> "SessionStats":
        """Return a detached copy for read-only reporting."""
        return SessionStats(
            connects=self.connects,
            disconnects=self.disconnects,
            events_received=self.events_received,
            events_sent=self.events_sent,
            last_event=self.last_event,
        )


@dataclass(frozen=True)
class Satellite:
    """One entry of a gpsd ``SKY`` report."""

    prn: int = 0
    svid: int = 0
    gnssid: Optional[int] = None
    ss: Optional[float] = None
    used: bool = False


@dataclass
class RawFix:
    """Running fix state, merged from ``TPV`` and ``SKY`` reports."""

    mode: int = MODE_NOT_SEEN
    time: float = 0.0
    qerr: int = 0
    tdop: float = 0.0
    satellites_used: int = 0
    satellites_visible: int = 0
    satellites: tuple[Satellite, ...] = ()


@dataclass
class Oscillator:
    """Oscillator discipline state from gpsd ``OSC`` reports."""

    running: bool = False
    reference: bool = False
    disciplined: bool = False
    delta: int = 0


@dataclass
class TimingDeltas:
    """Clock-minus-real offsets in signed seconds, tracked unconditionally."""

    toff: float = 0.0
    pps: float = 0.0


@dataclass(frozen=True)
class FixSnapshot:
    """The last published fix quality; the comparison baseline."""

    time: float = 0.0
    sats_used: int = 0
    sats_visible: int = 0
    tdop: float = 0.0
    avg_snr: float = 0.0
    qerr: int = 0
    sats_seen: tuple[int, ...] = field(default=(0,) * GNSSID_COUNT)
