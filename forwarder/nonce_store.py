"""NonceStore — per-identity next-expected nonce with atomic compare-and-increment."""

from __future__ import annotations

import threading

import structlog

from core.errors import NonceGap, NonceReplay

logger = structlog.get_logger("forwarder.nonce_store")


class NonceStore:
    """Mapping identity → next expected nonce.

    Values only ever move forward by exactly one, through
    ``compare_and_increment``.  A ``threading.Lock`` guards the
    read-modify-write so it is atomic for worker threads as well as for
    coroutines on the event loop (the critical section never awaits).
    """

    def __init__(self, initial: dict[str, int] | None = None) -> None:
        self._nonces: dict[str, int] = {k.lower(): v for k, v in (initial or {}).items()}
        self._lock = threading.Lock()

    @staticmethod
    def _key(identity: str) -> str:
        return identity.lower()

    def get(self, identity: str) -> int:
        """Return the next expected nonce (0 for unseen identities)."""
        with self._lock:
            return self._nonces.get(self._key(identity), 0)

    def check(self, identity: str, nonce: int) -> None:
        """Raise ``NonceReplay`` / ``NonceGap`` unless *nonce* is the expected one."""
        expected = self.get(identity)
        check_nonce(identity, nonce, expected)

    def compare_and_increment(self, identity: str, expected: int) -> int:
        """Consume *expected* for *identity* and return the new next nonce.

        Raises
        ------
        NonceReplay
            If the stored value is already past *expected*.
        NonceGap
            If *expected* is ahead of the stored value.
        """
        key = self._key(identity)
        with self._lock:
            current = self._nonces.get(key, 0)
            check_nonce(identity, expected, current)
            self._nonces[key] = current + 1
            new_value = current + 1

        logger.debug(
            "nonce_store.incremented",
            identity=identity,
            consumed=expected,
            next_nonce=new_value,
        )
        return new_value

    def snapshot(self) -> dict[str, int]:
        """Copy of all tracked identities (lower-cased keys)."""
        with self._lock:
            return dict(self._nonces)


def check_nonce(identity: str, nonce: int, expected: int) -> None:
    if nonce < expected:
        raise NonceReplay(
            f"nonce {nonce} already used (next expected {expected})",
            identity=identity,
            nonce=nonce,
        )
    if nonce > expected:
        raise NonceGap(
            f"nonce {nonce} is ahead of next expected {expected}",
            identity=identity,
            nonce=nonce,
        )
