"""Fix change detection and event payload rendering.

Decision pipeline::

    RawFix
      │
      ├─ average SNR over used satellites
      ├─ per-constellation seen-histogram over visible satellites
      ├─ compare (used, visible, tdop, avg_snr, histogram) with the snapshot
      │     equal       → Detection(previous, emit=False)
      └─    different   → Detection(new snapshot, emit=True, payload)

The previous snapshot is never mutated; a changed fix produces a new frozen
:class:`FixSnapshot` which the caller stores before the payload goes out.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, NamedTuple, Optional

import orjson

from gpsstats.models import (
    GNSS_NAMES,
    GNSSID_COUNT,
    FixSnapshot,
    Oscillator,
    RawFix,
    Satellite,
    TimingDeltas,
)

logger = logging.getLogger(__name__)

# Signal strengths at or below this value are gpsd's "not available" marker.
SS_INVALID = 1.0

# Legacy gpsd PRN numbering → gnssid bucket, first match wins.
_LEGACY_PRN_RANGES = (
    (1, 32, 0),      # GPS
    (33, 64, 1),     # SBAS (NMEA numbering)
    (65, 96, 6),     # GLONASS
    (120, 158, 1),   # SBAS
    (173, 182, 4),   # IMES
    (193, 200, 5),   # QZSS
    (201, 237, 3),   # BeiDou
    (301, 336, 2),   # Galileo
    (401, 437, 3),   # BeiDou
)

Classifier = Callable[[Satellite], Optional[int]]


class Detection(NamedTuple):
    snapshot: FixSnapshot
    emit: bool
    payload: Optional[bytes]


def classify_gnssid(sat: Satellite) -> Optional[int]:
    """Bucket a satellite by the ``gnssid`` / ``svid`` pair of newer gpsd."""
    if not sat.svid or sat.gnssid is None:
        return None
    if 0 <= sat.gnssid < GNSSID_COUNT:
        return sat.gnssid
    return None


def classify_prn(sat: Satellite) -> Optional[int]:
    """Bucket a satellite by its PRN, for gpsd versions without ``gnssid``."""
    if not sat.prn:
        return None
    for low, high, gnssid in _LEGACY_PRN_RANGES:
        if low <= sat.prn <= high:
            return gnssid
    return None


def select_classifier(satellites: Iterable[Satellite]) -> Classifier:
    """Pick the classifier once, based on what the daemon reports."""
    if any(sat.gnssid is not None for sat in satellites):
        return classify_gnssid
    return classify_prn


def average_snr(fix: RawFix) -> float:
    """Mean signal strength of the used satellites (0.0 when none are used)."""
    if fix.satellites_used <= 0:
        return 0.0
    total = sum(
        sat.ss
        for sat in fix.satellites
        if sat.used and sat.ss is not None and sat.ss > SS_INVALID
    )
    return total / fix.satellites_used


def seen_histogram(
    satellites: Iterable[Satellite],
    classifier: Classifier = classify_gnssid,
) -> tuple[int, ...]:
    """Count visible satellites per constellation bucket."""
    seen = [0] * GNSSID_COUNT
    for sat in satellites:
        gnssid = classifier(sat)
        if gnssid is not None:
            seen[gnssid] += 1
    return tuple(seen)


def evaluate(
    previous: FixSnapshot,
    fix: RawFix,
    timing: TimingDeltas,
    oscillator: Optional[Oscillator] = None,
    classifier: Classifier = classify_gnssid,
) -> Detection:
    """Compare *fix* against *previous* and render a payload on change.

    Parameters
    ----------
    previous:
        The last published snapshot.
    fix:
        The running fix state of the source.
    timing:
        Current ``toff`` / ``pps`` deltas, always rendered.
    oscillator:
        Latest oscillator state; rendered only while running.
    classifier:
        Satellite → constellation mapping chosen for this connection.

    Returns
    -------
    Detection
        ``emit`` is True when any compared field differs.  ``payload`` may
        still be ``None`` if rendering failed; the snapshot is updated
        regardless.
    """
    avg_snr = average_snr(fix)
    sats_seen = seen_histogram(fix.satellites, classifier)

    if (
        previous.sats_used == fix.satellites_used
        and previous.sats_visible == fix.satellites_visible
        and previous.tdop == fix.tdop
        and previous.avg_snr == avg_snr
        and previous.sats_seen == sats_seen
    ):
        return Detection(previous, False, None)

    snapshot = FixSnapshot(
        time=fix.time,
        sats_used=fix.satellites_used,
        sats_visible=fix.satellites_visible,
        tdop=fix.tdop,
        avg_snr=avg_snr,
        qerr=fix.qerr,
        sats_seen=sats_seen,
    )
    return Detection(snapshot, True, render_payload(snapshot, timing, oscillator))


def render_payload(
    snapshot: FixSnapshot,
    timing: TimingDeltas,
    oscillator: Optional[Oscillator] = None,
) -> Optional[bytes]:
    """Serialize an event as a single-line JSON object.

    Returns ``None`` when the record cannot be encoded; a partial payload is
    never produced.
    """
    record: dict = {
        "time": snapshot.time,
        "sats_used": snapshot.sats_used,
        "sats_visible": snapshot.sats_visible,
        "tdop": snapshot.tdop,
        "avg_snr": snapshot.avg_snr,
    }
    if snapshot.qerr:
        record["qErr"] = snapshot.qerr
    record["toff"] = timing.toff
    record["pps"] = timing.pps

    if oscillator is not None and oscillator.running:
        record["osc.pps"] = oscillator.reference
        record["osc.gps"] = oscillator.disciplined
        record["osc.delta"] = oscillator.delta

    for name, seen in zip(GNSS_NAMES, snapshot.sats_seen):
        if seen > 0:
            record[f"sats.{name}"] = seen

    try:
        return orjson.dumps(record)
    except orjson.JSONEncodeError as exc:
        logger.error("Failed to render event payload: %s", exc)
        return None
