"""gpsd source session.

Speaks to gpsd through the ``gps`` client library and turns its reports into
fix-change events.  The client issues the ``?WATCH`` commands; line framing
and JSON decoding happen here, on a non-blocking socket, so a read never
stalls the dispatcher.  Each :meth:`GpsdSource.read_event` call consumes at
most one line and yields one of::

    nothing complete yet      → ReadResult(None, False, OK)
    malformed or non-JSON     → logged, ReadResult(None, False, OK)
    gpsd ERROR report         → logged, ReadResult(None, False, OK)
    socket closed / broken    → ReadResult(None, False, NEEDS_RECONNECT)
    TPV / SKY report          → running fix updated, detector consulted
                                → ReadResult(payload, True, OK) on change

``TOFF``, ``PPS`` and ``OSC`` reports only update the timing and oscillator
state that is rendered alongside the next event.
"""

from __future__ import annotations

import logging
import math
import socket
import time
from datetime import datetime
from typing import Any, Callable, NamedTuple, Optional

import gps
import orjson

from gpsstats import timing
from gpsstats.config import GpsdConfig
from gpsstats.detector import Classifier, classify_gnssid, classify_prn, evaluate, select_classifier
from gpsstats.dispatcher import EVENT_READ
from gpsstats.models import (
    MODE_2D,
    ConnectionState,
    FixSnapshot,
    Oscillator,
    RawFix,
    Satellite,
    SessionStats,
    Status,
    TimingDeltas,
)

logger = logging.getLogger(__name__)

WATCH_FLAGS = (
    gps.WATCH_ENABLE
    | gps.WATCH_NEWSTYLE
    | gps.WATCH_JSON
    | gps.WATCH_PPS
    | gps.WATCH_TIMING
)

# Bounds the TCP handshake and the initial WATCH command.
CONNECT_TIMEOUT = 5.0

RECV_SIZE = 8192

# A line longer than this without a newline is garbage; drop it.
MAX_LINE = 65536


class ReadResult(NamedTuple):
    payload: Optional[bytes]
    has_event: bool
    status: Status


NO_EVENT = ReadResult(None, False, Status.OK)
CONNECTION_LOST = ReadResult(None, False, Status.NEEDS_RECONNECT)


def open_client(host: str, port: int) -> Any:
    """Connect to gpsd within :data:`CONNECT_TIMEOUT` and wrap the socket.

    ``gps.gps`` connects without a timeout, so the socket is opened here and
    handed to a client constructed without a host.
    """
    sock = socket.create_connection((host, port), timeout=CONNECT_TIMEOUT)
    client = gps.gps(host=None)
    client.sock = sock
    return client


class GpsdSource:
    """Owns the gpsd connection and the last published fix snapshot.

    Parameters
    ----------
    config:
        gpsd host, port and optional device.
    client_factory:
        ``(host, port)`` callable returning a connected ``gps.gps``-like
        client whose ``sock`` is still blocking; injectable for tests.
    clock:
        Wall-clock time source used for the statistics timestamp.
    """

    name = "gpsd"

    def __init__(
        self,
        config: GpsdConfig,
        client_factory: Optional[Callable[..., Any]] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._config = config
        self._client_factory = client_factory or open_client
        self._clock = clock or time.time
        self._client: Any = None
        self._fd = -1
        self._buffer = b""
        self._classifier: Optional[Classifier] = None

        self.state = ConnectionState.DISCONNECTED
        self.stats = SessionStats()
        self.snapshot = FixSnapshot()
        self.fix = RawFix()
        self.timing = TimingDeltas()
        self.oscillator = Oscillator()

    def configure(self, config: GpsdConfig) -> None:
        """Use *config* for subsequent connects."""
        self._config = config

    # ── lifecycle ───────────────────────────────────────────────────

    def connect(self) -> Status:
        cfg = self._config
        flags = WATCH_FLAGS
        if cfg.device:
            flags |= gps.WATCH_DEVICE

        client = None
        try:
            client = self._client_factory(host=cfg.host, port=cfg.port)
            client.stream(flags, cfg.device)
            client.sock.setblocking(False)
            fd = client.sock.fileno()
        except OSError as exc:
            logger.warning(
                "No gpsd running or network error at %s:%d: %s", cfg.host, cfg.port, exc
            )
            if client is not None:
                _close_quietly(client)
            return Status.NEEDS_RECONNECT

        self._client = client
        self._fd = fd
        self._buffer = b""
        self._classifier = None
        logger.debug("Streaming from gpsd at %s:%d (device=%s)", cfg.host, cfg.port, cfg.device)
        return Status.OK

    def disconnect(self) -> None:
        """Disable streaming and close; failures are logged, never raised."""
        client, self._client = self._client, None
        self._fd = -1
        self._buffer = b""
        if client is None:
            return
        try:
            client.stream(gps.WATCH_DISABLE)
        except OSError as exc:
            logger.debug("Failed to disable gpsd streaming: %s", exc)
        _close_quietly(client)

    def fileno(self) -> int:
        return self._fd

    def interest(self) -> int:
        return EVENT_READ

    def has_buffered(self) -> bool:
        """True when a complete line is waiting, so the next read needs no I/O."""
        return self._client is not None and b"\n" in self._buffer

    # ── reading ─────────────────────────────────────────────────────

    def read_event(self) -> ReadResult:
        """Consume one line from gpsd, receiving first if none is complete."""
        client = self._client
        if client is None:
            return CONNECTION_LOST

        if b"\n" not in self._buffer:
            try:
                chunk = client.sock.recv(RECV_SIZE)
            except BlockingIOError:
                return NO_EVENT
            except OSError as exc:
                logger.warning("Failed to read from gpsd: %s", exc)
                return CONNECTION_LOST
            if not chunk:
                logger.warning("gpsd closed the connection")
                return CONNECTION_LOST
            self._buffer += chunk

        line, newline, rest = self._buffer.partition(b"\n")
        if not newline:
            if len(self._buffer) > MAX_LINE:
                logger.warning("Discarding %d bytes from gpsd without a line end", len(self._buffer))
                self._buffer = b""
            return NO_EVENT

        self._buffer = rest
        return self.handle_line(line)

    def handle_line(self, line: bytes) -> ReadResult:
        """Decode one gpsd line; anything but a JSON object is skipped."""
        line = line.strip()
        if not line.startswith(b"{"):
            return NO_EVENT
        try:
            report = orjson.loads(line)
        except orjson.JSONDecodeError as exc:
            logger.warning("Discarding malformed gpsd report: %s", exc)
            return NO_EVENT
        if not isinstance(report, dict):
            return NO_EVENT
        return self.handle_report(report)

    def handle_report(self, report: Any) -> ReadResult:
        """Apply one decoded gpsd report (a mapping with a ``class`` key)."""
        cls = report.get("class")

        if cls == "VERSION":
            logger.debug(
                "Connected to gpsd %s with protocol v%s.%s",
                report.get("release"),
                report.get("proto_major"),
                report.get("proto_minor"),
            )
            return NO_EVENT
        if cls == "ERROR":
            logger.warning("gpsd returned: %s", report.get("message"))
            return NO_EVENT
        if cls == "TOFF":
            self.timing.toff = _delta(report)
            return NO_EVENT
        if cls == "PPS":
            self.timing.pps = _delta(report)
            if report.get("qErr") is not None:
                self.fix.qerr = int(report.get("qErr"))
            return NO_EVENT
        if cls == "OSC":
            self.oscillator = Oscillator(
                running=bool(report.get("running")),
                reference=bool(report.get("reference")),
                disciplined=bool(report.get("disciplined")),
                delta=int(report.get("delta", 0) or 0),
            )
            return NO_EVENT

        if cls == "TPV":
            self._update_tpv(report)
        elif cls == "SKY":
            self._update_sky(report)
        else:
            return NO_EVENT

        self.stats.events_received += 1
        self.stats.last_event = self._clock()

        if self.fix.mode < MODE_2D or self.fix.satellites_used <= 0:
            return NO_EVENT

        detection = evaluate(
            self.snapshot,
            self.fix,
            self.timing,
            self.oscillator,
            self._classifier or classify_gnssid,
        )
        if not detection.emit:
            return NO_EVENT

        self.snapshot = detection.snapshot
        if detection.payload is None:
            return NO_EVENT

        self.stats.events_sent += 1
        return ReadResult(detection.payload, True, Status.OK)

    # ── report decoding ─────────────────────────────────────────────

    def _update_tpv(self, report: Any) -> None:
        self.fix.mode = int(report.get("mode", 0) or 0)
        if report.get("time") is not None:
            self.fix.time = _parse_time(report.get("time"))

    def _update_sky(self, report: Any) -> None:
        fix = self.fix
        if report.get("tdop") is not None:
            fix.tdop = _number(report.get("tdop"))

        entries = report.get("satellites")
        if entries is None:
            return

        satellites = tuple(_satellite(entry) for entry in entries)
        if self._classifier is None and satellites:
            self._classifier = select_classifier(satellites)
            logger.debug(
                "Classifying constellations by %s",
                "gnssid" if self._classifier is not classify_prn else "PRN range",
            )

        fix.satellites = satellites
        fix.satellites_visible = int(report.get("nSat", len(satellites)))
        fix.satellites_used = int(
            report.get("uSat", sum(1 for sat in satellites if sat.used))
        )


def _satellite(entry: Any) -> Satellite:
    gnssid = entry.get("gnssid")
    ss = entry.get("ss")
    return Satellite(
        prn=int(entry.get("PRN", 0) or 0),
        svid=int(entry.get("svid", 0) or 0),
        gnssid=int(gnssid) if gnssid is not None else None,
        ss=float(ss) if ss is not None else None,
        used=bool(entry.get("used", False)),
    )


def _delta(report: Any) -> float:
    return timing.delta_seconds(
        timing.from_report(report, "clock"),
        timing.from_report(report, "real"),
    )


def _number(value: Any) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    return 0.0 if math.isnan(result) else result


def _parse_time(value: Any) -> float:
    """gpsd sends ISO 8601 UTC strings; older clients hand over epoch floats."""
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()
    except ValueError:
        logger.debug("Unparseable fix time %r", value)
        return 0.0


def _close_quietly(client: Any) -> None:
    try:
        client.close()
    except OSError as exc:
        logger.debug("Failed to close gpsd connection: %s", exc)
