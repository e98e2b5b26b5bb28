"""MQTT sink session.

Drives a ``paho-mqtt`` client from the outside: the dispatcher watches the
client's socket and calls :meth:`MqttSink.pump_read` / :meth:`MqttSink.pump_write`
on readiness, and :meth:`MqttSink.maintain` on a fixed cadence so paho can
send keepalives.  paho's return codes never leave this module; they are
classified into a :class:`~gpsstats.models.Status`::

    NO_CONN, CONN_REFUSED, CONN_LOST, TLS, AUTH, UNKNOWN, PROTOCOL, ERRNO → NEEDS_RECONNECT
    AGAIN, QUEUE_SIZE                                                      → TRANSIENT
    anything else (NOMEM, INVAL, PAYLOAD_SIZE, ...)                        → FATAL
"""

from __future__ import annotations

import logging
import ssl
import time
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt

from gpsstats.config import MqttConfig, TlsConfig
from gpsstats.dispatcher import EVENT_READ, EVENT_WRITE
from gpsstats.models import ConnectionState, SessionStats, Status

logger = logging.getLogger(__name__)

TOPIC = "gpsstats"
KEEPALIVE = 60

_RECONNECT_CODES = frozenset({
    mqtt.MQTT_ERR_NO_CONN,
    mqtt.MQTT_ERR_CONN_REFUSED,
    mqtt.MQTT_ERR_CONN_LOST,
    mqtt.MQTT_ERR_TLS,
    mqtt.MQTT_ERR_AUTH,
    mqtt.MQTT_ERR_UNKNOWN,
    mqtt.MQTT_ERR_PROTOCOL,
    mqtt.MQTT_ERR_ERRNO,
})

_TRANSIENT_CODES = frozenset({
    mqtt.MQTT_ERR_AGAIN,
    mqtt.MQTT_ERR_QUEUE_SIZE,
})

_TLS_VERSIONS = {
    "tlsv1": ssl.TLSVersion.TLSv1,
    "tlsv1.1": ssl.TLSVersion.TLSv1_1,
    "tlsv1.2": ssl.TLSVersion.TLSv1_2,
    "tlsv1.3": ssl.TLSVersion.TLSv1_3,
}


def classify(rc: int) -> Status:
    """Map a paho return code onto a :class:`Status`."""
    if rc == mqtt.MQTT_ERR_SUCCESS:
        return Status.OK
    if rc in _RECONNECT_CODES:
        return Status.NEEDS_RECONNECT
    if rc in _TRANSIENT_CODES:
        return Status.TRANSIENT
    return Status.FATAL


def build_tls_context(tls: TlsConfig) -> ssl.SSLContext:
    """Build the client TLS context: version floor, ciphers, CA and client cert.

    Raises
    ------
    OSError
        If certificate material cannot be loaded (``ssl.SSLError`` included).
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = _TLS_VERSIONS[tls.tls_version]
    if tls.verify_peer:
        context.load_verify_locations(cafile=tls.ca_cert_file, capath=tls.ca_cert_path)
    else:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    if tls.ciphers:
        context.set_ciphers(tls.ciphers)
    if tls.cert_file:
        context.load_cert_chain(tls.cert_file, tls.key_file)
    return context


def _new_client(client_id: str) -> mqtt.Client:
    return mqtt.Client(
        mqtt.CallbackAPIVersion.VERSION2,
        client_id=client_id,
        clean_session=True,
    )


class MqttSink:
    """Owns the broker connection and publishes event payloads.

    Parameters
    ----------
    config:
        Broker address, client id, QoS/retain, TLS and auth settings.
    client_factory:
        Callable ``(client_id) -> client``; injectable for tests.
    clock:
        Wall-clock time source used for the statistics timestamp.
    """

    name = "mqtt"

    def __init__(
        self,
        config: MqttConfig,
        client_factory: Optional[Callable[[str], Any]] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._config = config
        self._client_factory = client_factory or _new_client
        self._clock = clock or time.time
        self._client: Any = None
        self._fd = -1

        self.state = ConnectionState.DISCONNECTED
        self.stats = SessionStats()

    def configure(self, config: MqttConfig) -> None:
        """Use *config* for subsequent connects."""
        self._config = config

    # ── lifecycle ───────────────────────────────────────────────────

    def connect(self) -> Status:
        cfg = self._config
        client = self._client_factory(cfg.client_id)

        if cfg.tls is not None:
            logger.debug("Setting up TLS parameters for %s", cfg.host)
            try:
                client.tls_set_context(build_tls_context(cfg.tls))
            except (OSError, ValueError) as exc:
                logger.error("Failed to set TLS settings: %s", exc)
                return Status.NEEDS_RECONNECT

        if cfg.auth is not None:
            logger.debug("Setting up authentication as %s", cfg.auth.username)
            client.username_pw_set(cfg.auth.username, cfg.auth.password)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_log = self._on_log

        try:
            rc = client.connect(cfg.host, cfg.port, keepalive=KEEPALIVE)
        except OSError as exc:
            logger.warning("Failed to connect to MQTT broker at %s:%d: %s", cfg.host, cfg.port, exc)
            return Status.NEEDS_RECONNECT

        if rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning("Failed to connect to MQTT broker: %s", mqtt.error_string(rc))
            return Status.NEEDS_RECONNECT

        sock = client.socket()
        if sock is None:
            logger.warning("MQTT client has no socket after connecting")
            return Status.NEEDS_RECONNECT

        self._client = client
        self._fd = sock.fileno()
        return Status.OK

    def disconnect(self) -> None:
        """Send DISCONNECT if possible; failures are logged, never raised."""
        client, self._client = self._client, None
        self._fd = -1
        if client is None:
            return
        try:
            rc = client.disconnect()
            if rc not in (mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_NO_CONN):
                logger.warning("Failed to disconnect from MQTT broker: %s", mqtt.error_string(rc))
            # flushes the DISCONNECT packet; paho closes the socket after it
            client.loop_write()
        except OSError as exc:
            logger.debug("Error while disconnecting from MQTT broker: %s", exc)

    def fileno(self) -> int:
        return self._fd

    def wants_write(self) -> bool:
        """True when paho has outbound data queued."""
        return self._client is not None and bool(self._client.want_write())

    def interest(self) -> int:
        return EVENT_READ | EVENT_WRITE if self.wants_write() else EVENT_READ

    # ── pumping ─────────────────────────────────────────────────────

    def pump_read(self) -> Status:
        return self._pump("read", "loop_read", 1)

    def pump_write(self) -> Status:
        return self._pump("write", "loop_write")

    def maintain(self) -> Status:
        """Let paho run keepalives and retries; call on a fixed cadence."""
        return self._pump("maintain", "loop_misc")

    def publish(self, payload: bytes) -> Status:
        """Publish *payload* on :data:`TOPIC` with the configured QoS/retain."""
        if self._client is None:
            return Status.NEEDS_RECONNECT

        logger.debug("Publishing event %s", payload)
        try:
            info = self._client.publish(
                TOPIC, payload, qos=self._config.qos, retain=self._config.retain
            )
        except (OSError, ValueError) as exc:
            logger.warning("Failed to publish data to MQTT broker: %s", exc)
            return Status.FATAL if isinstance(exc, ValueError) else Status.NEEDS_RECONNECT

        status = self._check("publish", info.rc)
        if status is Status.OK:
            self.stats.events_sent += 1
            self.stats.last_event = self._clock()
        return status

    # ── internal ────────────────────────────────────────────────────

    def _pump(self, action: str, method: str, *args: Any) -> Status:
        if self._client is None:
            return Status.NEEDS_RECONNECT
        try:
            rc = getattr(self._client, method)(*args)
        except OSError as exc:
            logger.warning("Failed to %s MQTT messages: %s", action, exc)
            return Status.NEEDS_RECONNECT
        return self._check(action, rc)

    def _check(self, action: str, rc: int) -> Status:
        status = classify(rc)
        if status is Status.TRANSIENT:
            logger.debug("MQTT %s deferred: %s", action, mqtt.error_string(rc))
        elif status is Status.NEEDS_RECONNECT:
            logger.warning("Failed to %s MQTT messages. Reason: %s", action, mqtt.error_string(rc))
        elif status is Status.FATAL:
            logger.error("MQTT %s failed: %s", action, mqtt.error_string(rc))
        return status

    # ── paho observers ──────────────────────────────────────────────

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            logger.warning("Unable to connect to MQTT broker. Reason: %s", reason_code)
        else:
            logger.info("Successfully connected to MQTT broker")

    def _on_disconnect(self, client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            logger.info("Disconnected from MQTT broker. Reason: %s", reason_code)
        else:
            logger.info("Disconnected from MQTT broker")

    def _on_log(self, client, userdata, level, buf) -> None:
        logger.debug("paho: %s", buf)
