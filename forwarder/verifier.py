"""ForwardVerifier — trusted-forwarder logic as a platform-independent engine.

Models what the forwarder contract does at execution time:

1. recompute the canonical hash;
2. recover the signer and require it equals ``request.from``;
3. require the stored nonce equals ``request.nonce``;
4. require the caller is the relayer named in the request;
5. consume the nonce (compare-and-increment) *before* the inner call;
6. call the target with ``data ‖ from`` and the signer passed explicitly;
7. hand back the inner call's success flag and return data unchanged.

Steps 2–4 never mutate state, so a rejected request leaves the nonce
where it was.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import structlog

from core.errors import SignatureMismatch, UnauthorizedRelayer
from forwarder.hashing import canonical_hash, recover_signer
from forwarder.nonce_store import NonceStore
from models.forward_request import ForwardRequest, checksum
from models.relay import ExecutionResult

logger = structlog.get_logger("forwarder.verifier")


class ForwardTarget(ABC):
    """A contract reachable through the forwarder.

    ``calldata`` is ``request.data`` followed by the 20-byte originator
    address; ``sender`` is the same originator, already recovered and
    verified, so implementations never need an ambient caller identity.
    """

    @abstractmethod
    async def call(self, calldata: bytes, *, sender: str, gas: int) -> ExecutionResult:
        """Run the inner call within *gas* and report its outcome."""

    def estimate_gas(self, calldata: bytes) -> int:
        """Gas the inner call needs; 0 when the target does not meter."""
        return 0


def append_sender(data: bytes, sender: str) -> bytes:
    """Return ``data ‖ sender`` (20-byte trailer)."""
    return data + bytes.fromhex(sender[2:])


def split_sender(calldata: bytes) -> tuple[bytes, str]:
    """Inverse of ``append_sender``: payload and checksummed originator."""
    if len(calldata) < 20:
        raise ValueError("calldata shorter than the 20-byte sender trailer")
    return calldata[:-20], checksum(calldata[-20:])


class ForwardVerifier:
    """Verification/execution authority for forwarded requests.

    Parameters
    ----------
    nonces:
        The nonce store this authority owns.
    targets:
        Contracts reachable by address.  A request to an unregistered
        address behaves like a call into an empty account.
    """

    def __init__(
        self,
        nonces: NonceStore | None = None,
        targets: dict[str, ForwardTarget] | None = None,
    ) -> None:
        self._nonces = nonces or NonceStore()
        self._targets: dict[str, ForwardTarget] = {}
        for address, target in (targets or {}).items():
            self.register_target(address, target)

    @property
    def nonces(self) -> NonceStore:
        return self._nonces

    def register_target(self, address: str, target: ForwardTarget) -> None:
        self._targets[checksum(address)] = target

    def get_target(self, address: str) -> ForwardTarget | None:
        return self._targets.get(checksum(address))

    def get_nonce(self, identity: str) -> int:
        return self._nonces.get(identity)

    # ── Read-only check ─────────────────────────────────────────

    def verify(self, request: ForwardRequest, signature: bytes) -> bool:
        """True iff *signature* authorizes *request* at the current nonce."""
        signer = recover_signer(canonical_hash(request), signature)
        return (
            signer == request.from_
            and self._nonces.get(request.from_) == request.nonce
        )

    # ── State-mutating execution ────────────────────────────────

    def authorize(self, request: ForwardRequest, signature: bytes, caller: str) -> str:
        """Run checks 1–4 without mutating anything; return the signer.

        Raises
        ------
        SignatureMismatch, NonceReplay, NonceGap, UnauthorizedRelayer
        """
        request_hash = canonical_hash(request)
        signer = recover_signer(request_hash, signature)
        if signer != request.from_:
            raise SignatureMismatch(
                f"signature recovers to {signer}, not {request.from_}",
                identity=request.from_,
                nonce=request.nonce,
            )

        self._nonces.check(request.from_, request.nonce)

        if checksum(caller) != request.relayer:
            raise UnauthorizedRelayer(
                f"caller {caller} is not the named relayer {request.relayer}",
                identity=request.from_,
                nonce=request.nonce,
            )
        return signer

    async def execute(
        self,
        request: ForwardRequest,
        signature: bytes,
        caller: str,
    ) -> ExecutionResult:
        """Verify, consume the nonce, then forward the inner call."""
        signer = self.authorize(request, signature, caller)

        # Consumed before the inner call: a reentrant duplicate fails the
        # compare-and-increment even while this call is still running.
        self._nonces.compare_and_increment(signer, request.nonce)

        log = logger.bind(
            identity=signer,
            nonce=request.nonce,
            to=request.to,
            relayer=request.relayer,
        )
        log.info("forwarder.nonce_consumed")

        target = self._targets.get(request.to)
        if target is None:
            log.warning("forwarder.no_target")
            return ExecutionResult(success=False, return_data=b"")

        calldata = append_sender(request.data, signer)
        if target.estimate_gas(calldata) > request.gas:
            log.warning("forwarder.out_of_gas", gas=request.gas)
            return ExecutionResult(success=False, return_data=b"out of gas")
        try:
            result = await target.call(calldata, sender=signer, gas=request.gas)
        except Exception as exc:
            log.warning("forwarder.inner_call_raised", error=str(exc))
            return ExecutionResult(success=False, return_data=str(exc).encode())

        log.info("forwarder.executed", success=result.success)
        return result
