"""Tests for the MQTT sink session (fake paho client)."""

import ssl
from types import SimpleNamespace

import paho.mqtt.client as mqtt
import pytest

from gpsstats.config import AuthConfig, MqttConfig, TlsConfig
from gpsstats.dispatcher import EVENT_READ, EVENT_WRITE
from gpsstats.models import Status
from gpsstats.mqtt import KEEPALIVE, TOPIC, MqttSink, build_tls_context, classify


class FakeMqttClient:
    """Records calls the sink makes; return codes are set per test."""

    def __init__(self, client_id: str) -> None:
        self.client_id = client_id
        self.tls_context = None
        self.credentials = None
        self.connect_args = None
        self.connect_rc = mqtt.MQTT_ERR_SUCCESS
        self.read_rc = mqtt.MQTT_ERR_SUCCESS
        self.write_rc = mqtt.MQTT_ERR_SUCCESS
        self.misc_rc = mqtt.MQTT_ERR_SUCCESS
        self.publish_rc = mqtt.MQTT_ERR_SUCCESS
        self.pending_write = False
        self.published: list = []
        self.disconnected = False
        self.on_connect = None
        self.on_disconnect = None
        self.on_log = None

    def tls_set_context(self, context) -> None:
        self.tls_context = context

    def username_pw_set(self, username, password) -> None:
        self.credentials = (username, password)

    def connect(self, host, port, keepalive):
        self.connect_args = (host, port, keepalive)
        return self.connect_rc

    def socket(self):
        return SimpleNamespace(fileno=lambda: 7)

    def want_write(self) -> bool:
        return self.pending_write

    def loop_read(self, max_packets=1):
        return self.read_rc

    def loop_write(self):
        return self.write_rc

    def loop_misc(self):
        return self.misc_rc

    def publish(self, topic, payload, qos=0, retain=False):
        self.published.append((topic, payload, qos, retain))
        return SimpleNamespace(rc=self.publish_rc)

    def disconnect(self):
        self.disconnected = True
        return mqtt.MQTT_ERR_SUCCESS


def _sink(config: MqttConfig | None = None, client_cls: type = FakeMqttClient):
    clients: list[FakeMqttClient] = []

    def factory(client_id: str) -> FakeMqttClient:
        clients.append(client_cls(client_id))
        return clients[-1]

    sink = MqttSink(config or MqttConfig(host="broker", qos=1), client_factory=factory, clock=lambda: 99.0)
    return sink, clients


def _connected(config: MqttConfig | None = None):
    sink, clients = _sink(config)
    assert sink.connect() is Status.OK
    return sink, clients[0]


# ── classification ──────────────────────────────────────────────────


@pytest.mark.parametrize(
    ("rc", "status"),
    [
        (mqtt.MQTT_ERR_SUCCESS, Status.OK),
        (mqtt.MQTT_ERR_NO_CONN, Status.NEEDS_RECONNECT),
        (mqtt.MQTT_ERR_CONN_REFUSED, Status.NEEDS_RECONNECT),
        (mqtt.MQTT_ERR_CONN_LOST, Status.NEEDS_RECONNECT),
        (mqtt.MQTT_ERR_TLS, Status.NEEDS_RECONNECT),
        (mqtt.MQTT_ERR_AUTH, Status.NEEDS_RECONNECT),
        (mqtt.MQTT_ERR_UNKNOWN, Status.NEEDS_RECONNECT),
        (mqtt.MQTT_ERR_PROTOCOL, Status.NEEDS_RECONNECT),
        (mqtt.MQTT_ERR_ERRNO, Status.NEEDS_RECONNECT),
        (mqtt.MQTT_ERR_AGAIN, Status.TRANSIENT),
        (mqtt.MQTT_ERR_QUEUE_SIZE, Status.TRANSIENT),
        (mqtt.MQTT_ERR_NOMEM, Status.FATAL),
        (mqtt.MQTT_ERR_INVAL, Status.FATAL),
        (mqtt.MQTT_ERR_PAYLOAD_SIZE, Status.FATAL),
    ],
)
def test_classify(rc, status: Status) -> None:
    assert classify(rc) is status


# ── connect ─────────────────────────────────────────────────────────


def test_connect_configures_client() -> None:
    config = MqttConfig(host="broker", port=1884, client_id="gps-1",
                        auth=AuthConfig(username="u", password="p"))
    sink, client = _connected(config)

    assert client.client_id == "gps-1"
    assert client.credentials == ("u", "p")
    assert client.connect_args == ("broker", 1884, KEEPALIVE)
    assert client.tls_context is None
    assert client.on_connect is not None
    assert sink.fileno() == 7


def test_connect_refused_code_needs_reconnect() -> None:
    class Refusing(FakeMqttClient):
        def connect(self, host, port, keepalive):
            return mqtt.MQTT_ERR_CONN_REFUSED

    sink, _ = _sink(client_cls=Refusing)
    assert sink.connect() is Status.NEEDS_RECONNECT
    assert sink.fileno() == -1


def test_connect_network_error_needs_reconnect() -> None:
    class Unreachable(FakeMqttClient):
        def connect(self, host, port, keepalive):
            raise ConnectionRefusedError("refused")

    sink, _ = _sink(client_cls=Unreachable)
    assert sink.connect() is Status.NEEDS_RECONNECT


def test_connect_missing_ca_file_needs_reconnect(tmp_path) -> None:
    config = MqttConfig(host="broker", tls=TlsConfig(ca_cert_file=str(tmp_path / "missing.pem")))
    sink, clients = _sink(config)
    assert sink.connect() is Status.NEEDS_RECONNECT
    assert clients[0].connect_args is None


# ── TLS context ─────────────────────────────────────────────────────


def test_tls_without_peer_verification() -> None:
    context = build_tls_context(TlsConfig(verify_peer=False, tls_version="tlsv1.3"))
    assert context.verify_mode == ssl.CERT_NONE
    assert context.check_hostname is False
    assert context.minimum_version == ssl.TLSVersion.TLSv1_3


def test_tls_with_peer_verification_checks_hostname(tmp_path) -> None:
    context = build_tls_context(TlsConfig(verify_peer=True, ca_cert_path=str(tmp_path)))
    assert context.verify_mode == ssl.CERT_REQUIRED
    assert context.check_hostname is True
    assert context.minimum_version == ssl.TLSVersion.TLSv1_2


def test_tls_context_applied_on_connect() -> None:
    sink, client = _connected(MqttConfig(host="broker", tls=TlsConfig(verify_peer=False)))
    assert isinstance(client.tls_context, ssl.SSLContext)


# ── publish / pump ──────────────────────────────────────────────────


def test_publish_uses_fixed_topic_and_counts() -> None:
    sink, client = _connected(MqttConfig(host="broker", qos=2, retain=True))

    assert sink.publish(b'{"sats_used":4}') is Status.OK

    assert client.published == [(TOPIC, b'{"sats_used":4}', 2, True)]
    assert sink.stats.events_sent == 1
    assert sink.stats.last_event == 99.0


@pytest.mark.parametrize(
    ("rc", "status"),
    [
        (mqtt.MQTT_ERR_NO_CONN, Status.NEEDS_RECONNECT),
        (mqtt.MQTT_ERR_QUEUE_SIZE, Status.TRANSIENT),
        (mqtt.MQTT_ERR_PAYLOAD_SIZE, Status.FATAL),
    ],
)
def test_publish_failure_not_counted(rc, status: Status) -> None:
    sink, client = _connected()
    client.publish_rc = rc

    assert sink.publish(b"{}") is status
    assert sink.stats.events_sent == 0


def test_publish_without_connection() -> None:
    sink, _ = _sink()
    assert sink.publish(b"{}") is Status.NEEDS_RECONNECT


def test_pump_status_classified() -> None:
    sink, client = _connected()
    client.read_rc = mqtt.MQTT_ERR_CONN_LOST
    client.write_rc = mqtt.MQTT_ERR_AGAIN
    client.misc_rc = mqtt.MQTT_ERR_NO_CONN

    assert sink.pump_read() is Status.NEEDS_RECONNECT
    assert sink.pump_write() is Status.TRANSIENT
    assert sink.maintain() is Status.NEEDS_RECONNECT


def test_interest_follows_outbound_buffer() -> None:
    sink, client = _connected()
    assert sink.interest() == EVENT_READ

    client.pending_write = True
    assert sink.wants_write() is True
    assert sink.interest() == EVENT_READ | EVENT_WRITE


def test_disconnect_is_idempotent() -> None:
    sink, client = _connected()

    sink.disconnect()
    sink.disconnect()

    assert client.disconnected is True
    assert sink.fileno() == -1
    assert sink.wants_write() is False


def test_connect_observer_logs_refusal(caplog) -> None:
    sink, _ = _connected()
    sink._on_connect(None, None, None, SimpleNamespace(is_failure=True), None)
    assert any("Unable to connect" in r.getMessage() for r in caplog.records)
