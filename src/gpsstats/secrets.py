"""Encrypted store for values referenced from the config, e.g. ``${MQTT_PASSWORD}``.

File layout::

    [8 bytes:  magic "GPSSECRT"]
    [1 byte:   version = 0x01]
    [12 bytes: nonce]
    [N bytes:  AES-256-GCM ciphertext of a JSON object, tag included]

The 9-byte header is authenticated as associated data.  The key is a raw
32-byte file, created with mode 0600.
"""

from __future__ import annotations

import os
from pathlib import Path

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

MAGIC = b"GPSSECRT"
VERSION = 0x01
KEY_LEN = 32
NONCE_LEN = 12

_HEADER = MAGIC + bytes([VERSION])

DEFAULT_SECRETS_FILE = "/etc/gpsstats/secrets.enc"


class SecretsError(ValueError):
    """The secrets file or key is unusable."""


def generate_key(key_file: str | Path) -> bytes:
    """Create *key_file* with a fresh random key unless it already exists."""
    path = Path(key_file)
    if path.exists():
        return read_key(path)
    key = AESGCM.generate_key(bit_length=KEY_LEN * 8)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as fh:
        fh.write(key)
    return key


def read_key(key_file: str | Path) -> bytes:
    path = Path(key_file)
    if not path.exists():
        raise FileNotFoundError(f"Key file not found: {key_file}")
    key = path.read_bytes()
    if len(key) != KEY_LEN:
        raise SecretsError(f"Key file must be exactly {KEY_LEN} bytes, got {len(key)}")
    return key


def seal(key: bytes, store: dict[str, str]) -> bytes:
    """Encrypt *store* into the on-disk representation."""
    nonce = os.urandom(NONCE_LEN)
    ciphertext = AESGCM(key).encrypt(nonce, orjson.dumps(store, option=orjson.OPT_SORT_KEYS), _HEADER)
    return _HEADER + nonce + ciphertext


def unseal(key: bytes, blob: bytes) -> dict[str, str]:
    """Inverse of :func:`seal`.

    Raises
    ------
    SecretsError
        Bad magic, unknown version, wrong key or tampered content.
    """
    if blob[:len(MAGIC)] != MAGIC:
        raise SecretsError("Invalid secrets file (bad magic)")
    if len(blob) <= len(_HEADER) or blob[len(MAGIC)] != VERSION:
        raise SecretsError("Unsupported secrets file version")

    nonce = blob[len(_HEADER):len(_HEADER) + NONCE_LEN]
    ciphertext = blob[len(_HEADER) + NONCE_LEN:]
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, _HEADER)
    except InvalidTag as exc:
        raise SecretsError("Cannot decrypt secrets file: wrong key or corrupted data") from exc
    return orjson.loads(plaintext)


def init_secrets(secrets_file: str | Path, key_file: str | Path) -> None:
    """Create an empty store, generating the key file if needed."""
    _write(Path(secrets_file), seal(generate_key(key_file), {}))


def load_secrets(secrets_file: str | Path, key_file: str | Path) -> dict[str, str]:
    return unseal(read_key(key_file), Path(secrets_file).read_bytes())


def set_secret(secrets_file: str | Path, key_file: str | Path, name: str, value: str) -> None:
    """Add or replace one entry."""
    key = read_key(key_file)
    store = unseal(key, Path(secrets_file).read_bytes())
    store[name] = value
    _write(Path(secrets_file), seal(key, store))


def list_secrets(secrets_file: str | Path, key_file: str | Path) -> list[str]:
    """Names only; values never leave the store through this call."""
    return sorted(load_secrets(secrets_file, key_file))


def rekey(secrets_file: str | Path, old_key_file: str | Path, new_key_file: str | Path) -> None:
    """Re-encrypt the store under *new_key_file*, creating it if needed."""
    store = load_secrets(secrets_file, old_key_file)
    _write(Path(secrets_file), seal(generate_key(new_key_file), store))


def _write(path: Path, blob: bytes) -> None:
    tmp = path.with_name(path.name + ".tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as fh:
        fh.write(blob)
    os.replace(tmp, path)
