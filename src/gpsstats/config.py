"""Configuration loading, environment-variable interpolation, and validation.

Resolution order for ``${VAR}`` placeholders:
    CLI overrides → environment variables → encrypted secrets → raw config value.

``${VAR}`` (no default) raises if unresolvable.
``${VAR:-default}`` falls back to *default*.

Structural rules (types, ranges, known keys) live in the JSON Schema;
rules spanning several keys are checked in :func:`validate_config`.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import jsonschema
import orjson

logger = logging.getLogger(__name__)

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")

_SCHEMA_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "config.schema.json"

MQTT_PORT = 1883
MQTT_TLS_PORT = 8883


@dataclass
class DaemonConfig:
    """Account the daemon drops privileges to when started as root."""

    user: Optional[str] = None
    group: Optional[str] = None


@dataclass
class GpsdConfig:
    """gpsd server settings."""

    host: str = "localhost"
    port: int = 2947
    device: Optional[str] = None


@dataclass
class AuthConfig:
    """MQTT username/password credentials."""

    username: Optional[str] = None
    password: Optional[str] = None


@dataclass
class TlsConfig:
    """MQTT TLS settings.  Presence of the section enables TLS."""

    ca_cert_path: Optional[str] = None
    ca_cert_file: Optional[str] = None
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    verify_peer: bool = True
    tls_version: str = "tlsv1.2"
    ciphers: Optional[str] = None


@dataclass
class MqttConfig:
    """MQTT broker settings."""

    host: str = "localhost"
    port: int = MQTT_PORT
    client_id: str = "gpsstats"
    qos: int = 1
    retain: bool = False
    auth: Optional[AuthConfig] = None
    tls: Optional[TlsConfig] = None


@dataclass
class ReconnectConfig:
    """Reconnection backoff parameters, shared by both sessions."""

    initial_delay_s: float = 1.0
    max_delay_s: float = 32.0


@dataclass
class LogFileConfig:
    """Optional log file output settings.

    When ``enabled`` is True the application writes operational logs to a
    rotating file in addition to stderr or syslog.
    """

    enabled: bool = False
    path: str = "/var/log/gpsstats/gpsstats.log"
    max_size_bytes: int = 10485760   # 10 MB
    backup_count: int = 5


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    file: LogFileConfig = field(default_factory=LogFileConfig)
    redact_patterns: list[str] = field(
        default_factory=lambda: ["*password*", "*secret*", "*token*"]
    )


@dataclass
class AppConfig:
    """Top-level application configuration."""

    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    gpsd: GpsdConfig = field(default_factory=GpsdConfig)
    mqtt: MqttConfig = field(default_factory=MqttConfig)
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _interpolate_value(
    value: str,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
) -> str:
    """Replace ``${VAR}`` / ``${VAR:-default}`` in *value*."""

    def _replacer(match: re.Match) -> str:
        var_name = match.group(1)
        default = match.group(2)  # None when no ``:-`` present

        if overrides and var_name in overrides:
            return overrides[var_name]
        env_val = os.environ.get(var_name)
        if env_val is not None:
            return env_val
        if secrets and var_name in secrets:
            return secrets[var_name]
        if default is not None:
            return default

        raise ValueError(
            f"Required variable ${{{var_name}}} is not set in environment, "
            f"CLI overrides, or encrypted secrets"
        )

    return _VAR_RE.sub(_replacer, value)


def _walk_and_interpolate(
    obj: Any,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
) -> Any:
    """Recursively interpolate all string values in a JSON-like structure."""
    if isinstance(obj, str):
        return _interpolate_value(obj, overrides, secrets)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v, overrides, secrets) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(item, overrides, secrets) for item in obj]
    return obj


def _pick(cls: type, raw: dict[str, Any]) -> dict[str, Any]:
    """Keep only keys that are fields of dataclass *cls*, dropping empty strings."""
    return {
        k: v for k, v in raw.items()
        if k in cls.__dataclass_fields__ and v != ""
    }


def _dict_to_config(raw: dict[str, Any]) -> AppConfig:
    """Convert a raw dict into a typed :class:`AppConfig`."""
    mqtt_raw = dict(raw.get("mqtt", {}))
    auth_raw = mqtt_raw.pop("auth", None)
    tls_raw = mqtt_raw.pop("tls", None)
    logging_raw = dict(raw.get("logging", {}))
    log_file_raw = logging_raw.pop("file", {})

    tls = TlsConfig(**_pick(TlsConfig, tls_raw)) if tls_raw else None
    auth = AuthConfig(**_pick(AuthConfig, auth_raw)) if auth_raw else None

    mqtt_fields = _pick(MqttConfig, mqtt_raw)
    mqtt_fields.setdefault("port", MQTT_TLS_PORT if tls else MQTT_PORT)

    return AppConfig(
        daemon=DaemonConfig(**_pick(DaemonConfig, raw.get("daemon", {}))),
        gpsd=GpsdConfig(**_pick(GpsdConfig, raw.get("gpsd", {}))),
        mqtt=MqttConfig(auth=auth, tls=tls, **mqtt_fields),
        reconnect=ReconnectConfig(**_pick(ReconnectConfig, raw.get("reconnect", {}))),
        logging=LoggingConfig(
            file=LogFileConfig(**_pick(LogFileConfig, log_file_raw)),
            **_pick(LoggingConfig, logging_raw),
        ),
    )


def validate_config(cfg: AppConfig) -> None:
    """Check rules that span several keys.

    Raises
    ------
    ValueError
        On the first violated rule.
    """
    auth = cfg.mqtt.auth
    if auth is not None and (auth.username is None) != (auth.password is None):
        raise ValueError("need both username and password for proper authentication")

    tls = cfg.mqtt.tls
    if tls is not None:
        if not tls.ca_cert_path and not tls.ca_cert_file:
            raise ValueError("need either ca_cert_path or ca_cert_file to be set")
        if (tls.cert_file is None) != (tls.key_file is None):
            raise ValueError("need both cert_file and key_file for proper TLS operation")
        if not tls.verify_peer:
            logger.warning(
                "Insecure TLS operation used: verify_peer = false! Potential MITM vulnerability!"
            )
        if cfg.mqtt.port == MQTT_PORT:
            logger.warning("Connecting to non-TLS port of MQTT while TLS settings were configured")

    if cfg.reconnect.max_delay_s < cfg.reconnect.initial_delay_s:
        raise ValueError("reconnect.max_delay_s must not be below reconnect.initial_delay_s")


def dump_config(cfg: AppConfig) -> None:
    """Log the effective configuration at debug level, without secrets."""
    logger.debug("Using configuration:")
    logger.debug("- daemon user/group: %s/%s", cfg.daemon.user, cfg.daemon.group)
    logger.debug("- gpsd server: %s:%d", cfg.gpsd.host, cfg.gpsd.port)
    if cfg.gpsd.device:
        logger.debug("  - device: %s", cfg.gpsd.device)
    logger.debug("- MQTT server: %s:%d", cfg.mqtt.host, cfg.mqtt.port)
    logger.debug("  - client ID: %s", cfg.mqtt.client_id)
    logger.debug("  - MQTT QoS: %d", cfg.mqtt.qos)
    logger.debug("  - retain messages: %s", "yes" if cfg.mqtt.retain else "no")
    if cfg.mqtt.auth:
        logger.debug("  - using client credentials")
    tls = cfg.mqtt.tls
    if tls:
        logger.debug("- using TLS options:")
        logger.debug("  - use TLS version: %s", tls.tls_version)
        if tls.ca_cert_path:
            logger.debug("  - CA cert path: %s", tls.ca_cert_path)
        if tls.ca_cert_file:
            logger.debug("  - CA cert file: %s", tls.ca_cert_file)
        if tls.cert_file:
            logger.debug("  - using client certificate: %s", tls.cert_file)
        logger.debug("  - verify peer: %s", "yes" if tls.verify_peer else "no")
        if tls.ciphers:
            logger.debug("  - cipher suite: %s", tls.ciphers)


def load_config(
    path: str | Path,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
    schema_path: str | Path | None = None,
) -> AppConfig:
    """Load, interpolate, validate, and return the application config.

    Parameters
    ----------
    path:
        Filesystem path to the JSON config file.
    overrides:
        CLI-supplied variable overrides.
    secrets:
        Values from the encrypted secrets file.
    schema_path:
        Path to the JSON Schema file.  Defaults to
        ``config/config.schema.json`` relative to the project root.

    Returns
    -------
    AppConfig
        Fully resolved and validated configuration.

    Raises
    ------
    ValueError
        If a required ``${VAR}`` cannot be resolved or a cross-field rule
        is violated.
    jsonschema.ValidationError
        If the config fails schema validation.
    """
    raw_bytes = Path(path).read_bytes()
    raw: dict[str, Any] = orjson.loads(raw_bytes)

    interpolated = _walk_and_interpolate(raw, overrides=overrides, secrets=secrets)

    # --- schema validation ---
    sp = Path(schema_path) if schema_path else _SCHEMA_PATH
    if sp.exists():
        schema = orjson.loads(sp.read_bytes())
        jsonschema.validate(instance=interpolated, schema=schema)
        logger.debug("Config passed schema validation")
    else:
        logger.warning("Schema file not found at %s, skipping validation", sp)

    cfg = _dict_to_config(interpolated)
    validate_config(cfg)
    return cfg
