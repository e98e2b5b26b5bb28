"""End-to-end tests for the bridge: both sessions on one dispatcher."""

import logging
import socket

import pytest

from gpsstats.bridge import MAINTENANCE_INTERVAL, Bridge
from gpsstats.config import AppConfig, AuthConfig, GpsdConfig, MqttConfig
from gpsstats.dispatcher import EVENT_READ, EVENT_WRITE
from gpsstats.gpsd import CONNECTION_LOST, NO_EVENT, ReadResult
from gpsstats.models import ConnectionState, SessionStats, Status
from gpsstats.redactor import REDACTED, SecretRedactingFilter

PAYLOAD = b'{"time":1.0,"sats_used":4}'


class ScriptedSource:
    """gpsd stand-in replaying scripted read results."""

    name = "gpsd"

    def __init__(self, fd: int, results=()) -> None:
        self.state = ConnectionState.DISCONNECTED
        self.stats = SessionStats()
        self.fd = fd
        self.results = list(results)
        self.reads = 0
        self.configured: list = []

    def configure(self, config) -> None:
        self.configured.append(config)

    def connect(self) -> Status:
        return Status.OK

    def disconnect(self) -> None:
        pass

    def fileno(self) -> int:
        return self.fd

    def interest(self) -> int:
        return EVENT_READ

    def has_buffered(self) -> bool:
        return bool(self.results)

    def read_event(self) -> ReadResult:
        self.reads += 1
        return self.results.pop(0) if self.results else NO_EVENT


class RecordingSink:
    """MQTT stand-in recording publishes and pump calls."""

    name = "mqtt"

    def __init__(self, fd: int, connect_status: Status = Status.OK) -> None:
        self.state = ConnectionState.DISCONNECTED
        self.stats = SessionStats()
        self.fd = fd
        self.connect_status = connect_status
        self.published: list = []
        self.pumps: list = []
        self.pump_status = Status.OK
        self.pending_write = False
        self.maintained = 0
        self.configured: list = []

    def configure(self, config) -> None:
        self.configured.append(config)

    def connect(self) -> Status:
        return self.connect_status

    def disconnect(self) -> None:
        pass

    def fileno(self) -> int:
        return self.fd

    def wants_write(self) -> bool:
        return self.pending_write

    def interest(self) -> int:
        return EVENT_READ | EVENT_WRITE if self.pending_write else EVENT_READ

    def publish(self, payload: bytes) -> Status:
        self.published.append(payload)
        return Status.OK

    def pump_read(self) -> Status:
        self.pumps.append("read")
        return self.pump_status

    def pump_write(self) -> Status:
        self.pumps.append("write")
        return self.pump_status

    def maintain(self) -> Status:
        self.maintained += 1
        return Status.OK


@pytest.fixture
def sink_pair():
    a, b = socket.socketpair()
    yield a, b
    a.close()
    b.close()


def _bridge(dispatcher, pair, sink_pair, results=(), sink_status=Status.OK, loader=None, redactor=None):
    source = ScriptedSource(pair[0].fileno(), results)
    sink = RecordingSink(sink_pair[0].fileno(), sink_status)
    bridge = Bridge(
        AppConfig(), dispatcher=dispatcher, source=source, sink=sink, config_loader=loader, redactor=redactor
    )
    bridge.start()
    return bridge, source, sink


def test_source_transport_failure_tears_down_and_schedules_retry(dispatcher, clock, pair, sink_pair) -> None:
    """Payload forwarded, then the failure unregisters gpsd in the same cycle.

    A reconnect is due 1 s later and the source sees no reads until then.
    """
    bridge, source, sink = _bridge(
        dispatcher, pair, sink_pair, [ReadResult(PAYLOAD, True, Status.OK), CONNECTION_LOST]
    )
    handle = bridge.gpsd.handle
    pair[1].send(b"x")

    dispatcher.run_once()

    assert sink.published == [PAYLOAD]
    assert source.reads == 2
    assert handle.active is False
    assert source.state is ConnectionState.RECONNECT_SCHEDULED
    assert source.stats.disconnects == 1
    assert bridge.gpsd.pending.deadline == pytest.approx(clock.now + 1.0)
    assert bridge.mqtt.connected

    dispatcher.run_once()
    assert source.reads == 2
    assert all(h.fd != source.fd for h in dispatcher.handles)

    clock.advance(1.0)
    dispatcher.run_once()
    assert source.state is ConnectionState.CONNECTED
    assert bridge.gpsd.pending is None

    dispatcher.run_once()
    assert source.reads == 3


def test_event_dropped_while_sink_disconnected(dispatcher, pair, sink_pair) -> None:
    bridge, source, sink = _bridge(
        dispatcher, pair, sink_pair, [ReadResult(PAYLOAD, True, Status.OK)], sink_status=Status.NEEDS_RECONNECT
    )
    pair[1].send(b"x")

    dispatcher.run_once()

    assert source.reads == 1
    assert sink.published == []
    assert bridge.mqtt.pending is not None


def test_sink_failure_leaves_source_alone(dispatcher, clock, pair, sink_pair) -> None:
    bridge, source, sink = _bridge(dispatcher, pair, sink_pair)
    sink.pump_status = Status.NEEDS_RECONNECT
    sink_pair[1].send(b"x")

    dispatcher.run_once()

    assert sink.pumps == ["read"]
    assert sink.state is ConnectionState.RECONNECT_SCHEDULED
    assert bridge.mqtt.pending.deadline == pytest.approx(clock.now + 1.0)
    assert source.state is ConnectionState.CONNECTED
    assert bridge.gpsd.handle.active


def test_write_interest_follows_sink_buffer(dispatcher, pair, sink_pair) -> None:
    """Queued outbound data turns write interest on; draining turns it off."""
    bridge, source, sink = _bridge(
        dispatcher, pair, sink_pair, [ReadResult(PAYLOAD, True, Status.OK)]
    )
    sink.pending_write = True
    pair[1].send(b"x")

    dispatcher.run_once()
    dispatcher.run_once()
    assert bridge.mqtt.handle.events == EVENT_READ | EVENT_WRITE
    assert "write" in sink.pumps

    sink.pending_write = False
    dispatcher.run_once()
    dispatcher.run_once()
    assert bridge.mqtt.handle.events == EVENT_READ


def test_maintenance_runs_every_second(dispatcher, clock, pair, sink_pair) -> None:
    bridge, source, sink = _bridge(dispatcher, pair, sink_pair)

    for _ in range(3):
        clock.advance(MAINTENANCE_INTERVAL)
        dispatcher.run_once()

    assert sink.maintained == 3


def test_reload_reconfigures_and_reconnects(dispatcher, pair, sink_pair) -> None:
    fresh = AppConfig(gpsd=GpsdConfig(host="gps.local"))
    bridge, source, sink = _bridge(dispatcher, pair, sink_pair, loader=lambda: fresh)

    bridge.request_reload()
    dispatcher.run_once()

    assert bridge.config is fresh
    assert source.configured == [fresh.gpsd]
    assert sink.configured == [fresh.mqtt]
    assert source.stats.connects == 2
    assert sink.stats.connects == 2
    assert source.stats.disconnects == 1

    dispatcher.run_once()
    assert {h.fd for h in dispatcher.handles} == {source.fd, sink.fd}


def test_reload_failure_keeps_current_config(dispatcher, pair, sink_pair) -> None:
    def broken():
        raise ValueError("bad config")

    bridge, source, sink = _bridge(dispatcher, pair, sink_pair, loader=broken)
    original = bridge.config

    bridge.request_reload()
    dispatcher.run_once()

    assert bridge.config is original
    assert source.stats.connects == 2


def test_reload_redacts_new_secrets(dispatcher, pair, sink_pair) -> None:
    """A password introduced by a reload is scrubbed from later log output."""
    fresh = AppConfig(mqtt=MqttConfig(auth=AuthConfig(username="gps", password="n3w-pass")))
    redactor = SecretRedactingFilter(["old-pass"])
    bridge, _, _ = _bridge(dispatcher, pair, sink_pair, loader=lambda: fresh, redactor=redactor)

    bridge.request_reload()
    dispatcher.run_once()

    record = logging.LogRecord(
        "gpsstats.mqtt", logging.DEBUG, __file__, 1, "auth %s/%s", ("old-pass", "n3w-pass"), None
    )
    redactor.filter(record)
    assert record.getMessage() == f"auth {REDACTED}/{REDACTED}"


def test_stats_dump_logs_both_sessions(dispatcher, pair, sink_pair, caplog) -> None:
    bridge, source, sink = _bridge(dispatcher, pair, sink_pair)

    with caplog.at_level(logging.INFO, logger="gpsstats.bridge"):
        bridge.request_stats()
        dispatcher.run_once()

    messages = [r.getMessage() for r in caplog.records]
    assert any(m.startswith("gpsd: state=CONNECTED connects=1") for m in messages)
    assert any(m.startswith("mqtt: state=CONNECTED connects=1") for m in messages)


def test_shutdown_releases_everything(dispatcher, pair, sink_pair) -> None:
    bridge, source, sink = _bridge(dispatcher, pair, sink_pair, sink_status=Status.NEEDS_RECONNECT)

    bridge.shutdown()

    assert dispatcher.handles == ()
    assert dispatcher.tasks == ()
    assert source.state is ConnectionState.DISCONNECTED
    assert sink.state is ConnectionState.DISCONNECTED
