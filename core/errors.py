"""Meta-transaction error taxonomy.

Every failure the protocol can report derives from ``MetaTxError`` and
carries enough context (identity, nonce, reason) for the caller to
decide whether the whole operation has to restart with a fresh nonce.

``retryable`` is a class-level classification:

- terminal (``False``): the request must be rebuilt, or for
  ``RevertedExecution`` a fresh nonce obtained.
- retryable (``True``): the same request / nonce may be submitted again
  after refreshing whatever was stale.
"""

from __future__ import annotations

from typing import Any, Sequence


class MetaTxError(Exception):
    """Base class for all meta-transaction failures."""

    retryable: bool = False
    code: str = "metatx_error"

    def __init__(
        self,
        reason: str,
        *,
        identity: str | None = None,
        nonce: int | None = None,
    ) -> None:
        super().__init__(reason)
        self.reason = reason
        self.identity = identity
        self.nonce = nonce

    def to_dict(self) -> dict[str, Any]:
        """JSON error envelope used by the relay API."""
        return {
            "error": self.code,
            "reason": self.reason,
            "retryable": self.retryable,
            "identity": self.identity,
            "nonce": self.nonce,
        }

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(reason={self.reason!r}, "
            f"identity={self.identity!r}, nonce={self.nonce!r})"
        )


# ── Building / verification (terminal) ──────────────────────────────


class SigningUnavailable(MetaTxError):
    """Key material for the authorizing identity could not be accessed."""

    code = "signing_unavailable"


class SignatureMismatch(MetaTxError):
    """Recovered signer does not equal ``request.from``."""

    code = "signature_mismatch"


class NonceReplay(MetaTxError):
    """Request nonce is lower than the stored next-expected value."""

    code = "nonce_replay"


class NonceGap(MetaTxError):
    """Request nonce is higher than the stored next-expected value."""

    code = "nonce_gap"


class UnauthorizedRelayer(MetaTxError):
    """Caller is not the relayer named in the signed request."""

    code = "unauthorized_relayer"


# ── Fee quoting (retryable after refresh) ───────────────────────────


class LiquidityUnavailable(MetaTxError):
    """Pool has an empty reserve; no price can be derived."""

    retryable = True
    code = "liquidity_unavailable"


class QuoteStale(MetaTxError):
    """Quote input is older than the freshness window."""

    retryable = True
    code = "quote_stale"


# ── Submission ──────────────────────────────────────────────────────


class InsufficientGasBudget(MetaTxError):
    """``request.gas`` does not cover the inner call."""

    code = "insufficient_gas_budget"


class RevertedExecution(MetaTxError):
    """Inner call failed after the forwarder consumed the nonce."""

    code = "reverted_execution"

    def __init__(
        self,
        reason: str,
        *,
        identity: str | None = None,
        nonce: int | None = None,
        return_data: bytes = b"",
        tx_hash: str | None = None,
    ) -> None:
        super().__init__(reason, identity=identity, nonce=nonce)
        self.return_data = return_data
        self.tx_hash = tx_hash

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["returnData"] = "0x" + self.return_data.hex()
        body["txHash"] = self.tx_hash
        return body


class SubmissionRejected(MetaTxError):
    """Ledger refused the transaction before execution; nonce untouched."""

    retryable = True
    code = "submission_rejected"


class SubmissionTimeout(MetaTxError):
    """No confirmation observed within the configured timeout."""

    retryable = True
    code = "submission_timeout"


class AllRelayersExhausted(MetaTxError):
    """Primary and every fallback relayer failed to confirm the operation."""

    code = "all_relayers_exhausted"

    def __init__(
        self,
        reason: str,
        *,
        identity: str | None = None,
        nonce: int | None = None,
        attempts: Sequence[Any] = (),
    ) -> None:
        super().__init__(reason, identity=identity, nonce=nonce)
        self.attempts = tuple(attempts)


_BY_CODE: dict[str, type[MetaTxError]] = {
    cls.code: cls
    for cls in (
        SigningUnavailable,
        SignatureMismatch,
        NonceReplay,
        NonceGap,
        UnauthorizedRelayer,
        LiquidityUnavailable,
        QuoteStale,
        InsufficientGasBudget,
        RevertedExecution,
        SubmissionRejected,
        SubmissionTimeout,
        AllRelayersExhausted,
    )
}


def error_from_dict(body: dict[str, Any]) -> MetaTxError:
    """Rebuild a typed error from the relay API's JSON envelope.

    Unknown codes map to ``SubmissionRejected`` when flagged retryable,
    otherwise to the plain ``MetaTxError`` base.
    """
    code = str(body.get("error", ""))
    reason = str(body.get("reason", code or "unknown error"))
    identity = body.get("identity")
    nonce = body.get("nonce")

    cls = _BY_CODE.get(code)
    if cls is None:
        cls = SubmissionRejected if body.get("retryable") else MetaTxError
    if cls is RevertedExecution:
        raw = str(body.get("returnData") or "0x")
        return RevertedExecution(
            reason,
            identity=identity,
            nonce=nonce,
            return_data=bytes.fromhex(raw[2:] if raw.startswith("0x") else raw),
            tx_hash=body.get("txHash"),
        )
    return cls(reason, identity=identity, nonce=nonce)
