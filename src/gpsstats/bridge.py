"""Wires the gpsd source and the MQTT sink into one dispatcher.

::

    gpsd fd readable → GpsdSource.read_event() ─payload─→ MqttSink.publish()
    mqtt fd ready    → MqttSink.pump_read() / pump_write()
    every 1 s        → MqttSink.maintain()
    SIGHUP           → reload config, force-reconnect both sessions
    SIGUSR1          → log a statistics snapshot of both sessions

Each session is driven by its own :class:`ReconnectScheduler`; a
``NEEDS_RECONNECT`` outcome from any operation tears that session down and
leaves the other one alone.  After every sink operation the write interest
of the MQTT descriptor is synced with :meth:`MqttSink.wants_write`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from gpsstats.config import AppConfig, ReconnectConfig
from gpsstats.dispatcher import EVENT_READ, EVENT_WRITE, Dispatcher, Task
from gpsstats.gpsd import GpsdSource
from gpsstats.models import SessionStats, Status
from gpsstats.mqtt import MqttSink
from gpsstats.reconnect import Backoff, ReconnectScheduler
from gpsstats.redactor import SecretRedactingFilter, collect_secret_values

logger = logging.getLogger(__name__)

MAINTENANCE_INTERVAL = 1.0

# Upper bound on reports handled per readiness callback, so a chatty gpsd
# cannot starve the MQTT side.
READ_BURST = 64


def _backoff(cfg: ReconnectConfig) -> Backoff:
    return Backoff(cfg.initial_delay_s, cfg.max_delay_s)


class Bridge:
    """Owns both sessions and routes payloads from gpsd to MQTT.

    Parameters
    ----------
    config:
        Resolved application configuration.
    dispatcher:
        Event loop to run on; a private one is created (and closed on
        shutdown) when omitted.
    source, sink:
        Session objects; built from *config* when omitted.
    config_loader:
        Zero-argument callable returning a fresh :class:`AppConfig`; used on
        reload.  Without it a reload only forces the reconnects.
    redactor:
        Log filter that learns the secrets of every reloaded config.
    """

    def __init__(
        self,
        config: AppConfig,
        dispatcher: Optional[Dispatcher] = None,
        source: Optional[GpsdSource] = None,
        sink: Optional[MqttSink] = None,
        config_loader: Optional[Callable[[], AppConfig]] = None,
        redactor: Optional[SecretRedactingFilter] = None,
    ) -> None:
        self.config = config
        self._owns_dispatcher = dispatcher is None
        self.dispatcher = dispatcher or Dispatcher()
        self.source = source or GpsdSource(config.gpsd)
        self.sink = sink or MqttSink(config.mqtt)
        self._config_loader = config_loader
        self._redactor = redactor
        self._maintenance: Optional[Task] = None

        self.gpsd = ReconnectScheduler(
            self.dispatcher, self.source, self._on_source_ready, _backoff(config.reconnect)
        )
        self.mqtt = ReconnectScheduler(
            self.dispatcher, self.sink, self._on_sink_ready, _backoff(config.reconnect)
        )

    # ── lifecycle ───────────────────────────────────────────────────

    def start(self) -> None:
        """Kick off both connections and the maintenance task."""
        logger.info(
            "Bridging gpsd at %s:%d to MQTT broker at %s:%d",
            self.config.gpsd.host,
            self.config.gpsd.port,
            self.config.mqtt.host,
            self.config.mqtt.port,
        )
        self.gpsd.attempt_connect()
        self.mqtt.attempt_connect()
        self._maintenance = self.dispatcher.schedule(
            MAINTENANCE_INTERVAL, Bridge._maintain, self
        )

    def run(self) -> None:
        """Start, then block in the dispatcher until :meth:`stop`."""
        self.start()
        try:
            self.dispatcher.run()
        finally:
            self.shutdown()

    def stop(self) -> None:
        """Ask the loop to exit after the current iteration (signal-safe)."""
        self.dispatcher.stop()

    def shutdown(self) -> None:
        if self._maintenance is not None:
            self.dispatcher.cancel(self._maintenance)
            self._maintenance = None
        self.gpsd.shutdown()
        self.mqtt.shutdown()
        if self._owns_dispatcher:
            self.dispatcher.close()
        logger.info("Bridge shut down")

    # ── external requests ───────────────────────────────────────────

    def request_reload(self) -> None:
        """Queue a configuration reload; safe to call from a signal handler."""
        self.dispatcher.call_soon(Bridge._reload, self)

    def request_stats(self) -> None:
        """Queue a statistics dump; safe to call from a signal handler."""
        self.dispatcher.call_soon(Bridge._dump_stats, self)

    # ── readiness callbacks ─────────────────────────────────────────

    def _on_source_ready(self, scheduler: ReconnectScheduler, events: int) -> None:
        for _ in range(READ_BURST):
            result = self.source.read_event()
            if result.status is Status.NEEDS_RECONNECT:
                scheduler.connection_lost()
                return
            if result.has_event and result.payload is not None:
                self._forward(result.payload)
            if not self.source.has_buffered():
                return

    def _on_sink_ready(self, scheduler: ReconnectScheduler, events: int) -> None:
        status = Status.OK
        if events & EVENT_READ:
            status = self.sink.pump_read()
        if status is not Status.NEEDS_RECONNECT and events & EVENT_WRITE:
            status = self.sink.pump_write()
        self._after_sink(status)

    def _forward(self, payload: bytes) -> None:
        if not self.mqtt.connected:
            logger.debug("MQTT not connected, dropping event %s", payload)
            return
        self._after_sink(self.sink.publish(payload))

    def _after_sink(self, status: Status) -> None:
        if status is Status.NEEDS_RECONNECT:
            self.mqtt.connection_lost()
        else:
            self.mqtt.set_interest(self.sink.interest())

    # ── tasks ───────────────────────────────────────────────────────

    def _maintain(self) -> float:
        if self.mqtt.connected:
            self._after_sink(self.sink.maintain())
        return MAINTENANCE_INTERVAL

    def _reload(self) -> None:
        logger.info("Reloading configuration")
        if self._config_loader is not None:
            try:
                config = self._config_loader()
            except Exception as exc:
                logger.error("Failed to reload configuration, keeping the current one: %s", exc)
            else:
                if self._redactor is not None:
                    for value in collect_secret_values(config, config.logging.redact_patterns):
                        self._redactor.add_secret(value)
                self.config = config

        self.source.configure(self.config.gpsd)
        self.sink.configure(self.config.mqtt)
        for scheduler in (self.gpsd, self.mqtt):
            scheduler.backoff = _backoff(self.config.reconnect)
            scheduler.force_reconnect()

    def _dump_stats(self) -> None:
        for scheduler in (self.gpsd, self.mqtt):
            session = scheduler.session
            _log_stats(session.name, session.state.value, session.stats.snapshot())


def _log_stats(name: str, state: str, stats: SessionStats) -> None:
    if stats.last_event is None:
        last = "never"
    else:
        last = datetime.fromtimestamp(stats.last_event, tz=timezone.utc).isoformat()
    logger.info(
        "%s: state=%s connects=%d disconnects=%d received=%d sent=%d last_event=%s",
        name,
        state,
        stats.connects,
        stats.disconnects,
        stats.events_received,
        stats.events_sent,
        last,
    )
