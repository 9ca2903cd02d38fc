"""ForwardRequestSigner — off-loop ECDSA signing of forward requests.

Signing is CPU-bound (elliptic-curve math), so it runs in an executor
instead of on the asyncio event loop.  Key material never leaves this
process: the default executor is a thread pool, and the key is loaded
inside the worker call and released when it returns.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any

import structlog

from core.errors import SigningUnavailable
from forwarder.hashing import canonical_hash, recover_signer, sign_hash
from models.forward_request import ForwardRequest, SignedForwardRequest
from web3_infra.keys import KeyProvider, key_access

logger = structlog.get_logger("web3_infra.signer")


def _sign_sync(request_hash: bytes, provider: KeyProvider) -> bytes:
    """Synchronous signing executed in a worker."""
    with key_access(provider) as key:
        return sign_hash(request_hash, key)


class ForwardRequestSigner:
    """Async-safe signer for one identity.

    Parameters
    ----------
    provider:
        Where the identity's key is loaded from.
    max_workers:
        Number of signing workers.  Defaults to 2.
    executor:
        Optional externally managed executor; ``start``/``shutdown``
        leave it alone.
    """

    def __init__(
        self,
        provider: KeyProvider,
        max_workers: int = 2,
        executor: Executor | None = None,
    ) -> None:
        self._provider = provider
        self._max_workers = max_workers
        self._external = executor is not None
        self._pool: Executor | None = executor

    # ── Lifecycle ────────────────────────────────────────────────

    def start(self) -> None:
        """Start the worker pool.  Idempotent."""
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=self._max_workers,
                thread_name_prefix="metatx-signer",
            )
            logger.info("signer.started", max_workers=self._max_workers)

    def shutdown(self, wait: bool = True) -> None:
        """Shutdown the worker pool."""
        if self._pool is not None and not self._external:
            self._pool.shutdown(wait=wait)
            self._pool = None
            logger.info("signer.shutdown")

    # ── Signing ──────────────────────────────────────────────────

    async def sign(self, request: ForwardRequest) -> SignedForwardRequest:
        """Sign *request*'s canonical hash with the provider's key.

        Raises
        ------
        RuntimeError
            If the signer has not been started.
        SigningUnavailable
            If the key cannot be loaded, or it does not belong to
            ``request.from``.
        """
        if self._pool is None:
            raise RuntimeError("ForwardRequestSigner not started — call start() first")

        request_hash = canonical_hash(request)
        loop = asyncio.get_running_loop()
        signature = await loop.run_in_executor(
            self._pool, _sign_sync, request_hash, self._provider
        )

        if recover_signer(request_hash, signature) != request.from_:
            raise SigningUnavailable(
                f"configured key does not belong to {request.from_}",
                identity=request.from_,
                nonce=request.nonce,
            )

        logger.debug(
            "signer.signed",
            identity=request.from_,
            nonce=request.nonce,
            relayer=request.relayer,
            request_hash="0x" + request_hash.hex(),
        )
        return SignedForwardRequest(request=request, signature=signature)

    # ── Context manager ──────────────────────────────────────────

    async def __aenter__(self) -> ForwardRequestSigner:
        self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.shutdown(wait=True)
