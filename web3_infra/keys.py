"""Key providers — scoped access to signing keys.

Key material is loaded only inside ``key_access()`` and the reference is
dropped when the block exits.  Providers hold *where* the key lives
(env var, keystore file), not the key itself, except ``StaticKeyProvider``
which exists for tests and paper mode.
"""

from __future__ import annotations

import json
import os
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from eth_account import Account

from core.errors import SigningUnavailable


class KeyProvider(ABC):
    """Source of one identity's private key."""

    @abstractmethod
    def load(self) -> bytes:
        """Return the raw 32-byte private key or raise."""

    @property
    def address(self) -> str:
        """Checksummed address of the key (loads it briefly)."""
        with key_access(self) as key:
            return Account.from_key(key).address


class StaticKeyProvider(KeyProvider):
    """In-memory key."""

    def __init__(self, private_key: str | bytes) -> None:
        self._key = _normalize(private_key)

    def load(self) -> bytes:
        return self._key


class EnvKeyProvider(KeyProvider):
    """Hex key read from an environment variable at signing time."""

    def __init__(self, var: str) -> None:
        self._var = var

    def load(self) -> bytes:
        value = os.environ.get(self._var, "")
        if not value:
            raise KeyError(f"environment variable {self._var} is empty")
        return _normalize(value)


class KeystoreKeyProvider(KeyProvider):
    """Encrypted V3 keystore file, decrypted per access."""

    def __init__(self, path: str | Path, password: str) -> None:
        self._path = Path(path)
        self._password = password

    def load(self) -> bytes:
        with self._path.open("r", encoding="utf-8") as fh:
            keystore = json.load(fh)
        return bytes(Account.decrypt(keystore, self._password))


@contextmanager
def key_access(provider: KeyProvider) -> Iterator[bytes]:
    """Yield the provider's key for the duration of the block.

    Raises
    ------
    SigningUnavailable
        If the provider cannot produce key material.
    """
    try:
        key = provider.load()
    except Exception as exc:
        raise SigningUnavailable(f"key material unavailable: {exc}") from exc
    try:
        yield key
    finally:
        del key


def _normalize(value: str | bytes) -> bytes:
    if isinstance(value, bytes):
        raw = value
    else:
        text = value[2:] if value.startswith("0x") else value
        raw = bytes.fromhex(text)
    if len(raw) != 32:
        raise ValueError("private key must be 32 bytes")
    return raw
