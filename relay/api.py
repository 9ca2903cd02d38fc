"""Relay service request bodies and their mapping onto the submitter.

Two bodies are accepted:

- ``SettleRequest`` — a provider settling a payment promise.  It carries
  no relayer and no fee: the transactor names itself as relayer when it
  rebuilds the ``ForwardRequest`` and quotes the fee at execution time.
- ``ForwardPayload`` — a fully specified signed forward request.

``RelayApi`` turns either into a ledger submission and maps errors to
HTTP status codes; the transport lives in ``relay.server``.
"""

from __future__ import annotations

from typing import Any

import structlog
from eth_abi import encode
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from web3 import Web3

from core.errors import (
    InsufficientGasBudget,
    LiquidityUnavailable,
    MetaTxError,
    NonceGap,
    NonceReplay,
    QuoteStale,
    SignatureMismatch,
    SigningUnavailable,
    SubmissionRejected,
    SubmissionTimeout,
    UnauthorizedRelayer,
)
from models.forward_request import ForwardRequest, SignedForwardRequest, checksum, to_bytes
from relay.submitter import RelaySubmitter

logger = structlog.get_logger("relay.api")

SETTLE_SIGNATURE = "settlePromise(bytes32,uint256,bytes32,bytes)"
SETTLE_SELECTOR = bytes(Web3.keccak(text=SETTLE_SIGNATURE))[:4]


def encode_settle_call(
    channel_id: bytes,
    amount: int,
    preimage: bytes,
    promise_signature: bytes,
) -> bytes:
    """Calldata for ``settlePromise`` — identical on provider and transactor."""
    if len(channel_id) != 32 or len(preimage) != 32:
        raise ValueError("channel_id and preimage must be 32 bytes")
    return SETTLE_SELECTOR + encode(
        ["bytes32", "uint256", "bytes32", "bytes"],
        [channel_id, amount, preimage, promise_signature],
    )


def _hex(value: bytes) -> str:
    return "0x" + value.hex()


class SettleRequest(BaseModel):
    """Promise settlement body (``POST /api/v1/settle``)."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    amount: str = Field(..., pattern=r"^\d+$")
    chain_id: int = Field(..., alias="chainID")
    channel_id: str = Field(..., alias="channelID")
    hermes_id: str = Field(..., alias="hermesID")
    preimage: str
    provider_id: str = Field(..., alias="providerID")
    signature: str
    gas: str = Field(..., pattern=r"^\d+$")
    nonce: int = Field(..., ge=0)
    meta_tx_signature: str = Field(..., alias="metaTxSignature")

    @field_validator("hermes_id", "provider_id")
    @classmethod
    def _checksum(cls, v: str) -> str:
        return checksum(v)

    @field_validator("channel_id", "preimage")
    @classmethod
    def _bytes32(cls, v: str) -> str:
        if len(to_bytes(v)) != 32:
            raise ValueError("expected 32 bytes hex")
        return v

    def settle_call(self) -> bytes:
        return encode_settle_call(
            to_bytes(self.channel_id),
            int(self.amount),
            to_bytes(self.preimage),
            to_bytes(self.signature),
        )

    def to_signed(self, relayer: str) -> SignedForwardRequest:
        """Rebuild the forward request the provider signed for *relayer*."""
        request = ForwardRequest(
            from_=self.provider_id,
            to=self.hermes_id,
            relayer=relayer,
            gas=int(self.gas),
            nonce=self.nonce,
            data=self.settle_call(),
        )
        return SignedForwardRequest(request=request, signature=self.meta_tx_signature)

    @classmethod
    def from_signed(
        cls,
        signed: SignedForwardRequest,
        *,
        chain_id: int,
        channel_id: bytes,
        amount: int,
        preimage: bytes,
        promise_signature: bytes,
    ) -> SettleRequest:
        """Body a provider node posts for an already signed settlement."""
        return cls(
            amount=str(amount),
            chainID=chain_id,
            channelID=_hex(channel_id),
            hermesID=signed.request.to,
            preimage=_hex(preimage),
            providerID=signed.request.from_,
            signature=_hex(promise_signature),
            gas=str(signed.request.gas),
            nonce=signed.request.nonce,
            metaTxSignature=_hex(signed.signature),
        )


class ForwardPayload(BaseModel):
    """Generic signed forward request body (``POST /api/v1/forward``)."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    from_: str = Field(..., alias="from")
    to: str
    relayer: str
    gas: str = Field(..., pattern=r"^\d+$")
    nonce: int = Field(..., ge=0)
    data: str = "0x"
    signature: str

    def to_signed(self) -> SignedForwardRequest:
        request = ForwardRequest(
            from_=self.from_,
            to=self.to,
            relayer=self.relayer,
            gas=int(self.gas),
            nonce=self.nonce,
            data=self.data,
        )
        return SignedForwardRequest(request=request, signature=self.signature)

    @classmethod
    def from_signed(cls, signed: SignedForwardRequest) -> ForwardPayload:
        r = signed.request
        return cls(
            from_=r.from_,
            to=r.to,
            relayer=r.relayer,
            gas=str(r.gas),
            nonce=r.nonce,
            data=_hex(r.data),
            signature=_hex(signed.signature),
        )


_STATUS_BY_ERROR: dict[type[MetaTxError], int] = {
    SignatureMismatch: 403,
    UnauthorizedRelayer: 403,
    NonceReplay: 409,
    NonceGap: 409,
    InsufficientGasBudget: 422,
    SigningUnavailable: 500,
    LiquidityUnavailable: 503,
    QuoteStale: 503,
    SubmissionRejected: 503,
    SubmissionTimeout: 504,
}


def status_for(exc: MetaTxError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS_BY_ERROR:
            return _STATUS_BY_ERROR[cls]
    return 409 if not exc.retryable else 503


class RelayApi:
    """Transport-agnostic handlers returning ``(status, json_body)``.

    Parameters
    ----------
    submitter:
        The relay operator's submitter.
    chain_id:
        Chain this service settles on; bodies naming another are refused.
    """

    def __init__(self, submitter: RelaySubmitter, chain_id: int) -> None:
        self._submitter = submitter
        self._chain_id = chain_id

    async def forward(self, body: dict[str, Any], wait: bool = False) -> tuple[int, dict[str, Any]]:
        try:
            signed = ForwardPayload.model_validate(body).to_signed()
        except (ValidationError, ValueError) as exc:
            return 422, {"error": "invalid_body", "reason": str(exc), "retryable": False}
        return await self._run(signed, wait)

    async def settle(self, body: dict[str, Any], wait: bool = False) -> tuple[int, dict[str, Any]]:
        try:
            req = SettleRequest.model_validate(body)
            if req.chain_id != self._chain_id:
                return 422, {
                    "error": "wrong_chain",
                    "reason": f"service settles on chain {self._chain_id}, not {req.chain_id}",
                    "retryable": False,
                }
            signed = req.to_signed(self._submitter.address)
        except (ValidationError, ValueError) as exc:
            return 422, {"error": "invalid_body", "reason": str(exc), "retryable": False}
        return await self._run(signed, wait)

    async def _run(self, signed: SignedForwardRequest, wait: bool) -> tuple[int, dict[str, Any]]:
        try:
            handle = await self._submitter.submit(signed)
            if not wait:
                return 202, {"handle": handle.model_dump(mode="json")}
            result = await self._submitter.wait(handle)
        except MetaTxError as exc:
            logger.info(
                "relay_api.rejected",
                error=exc.code,
                identity=exc.identity,
                nonce=exc.nonce,
                reason=exc.reason,
            )
            return status_for(exc), exc.to_dict()
        return 200, result.model_dump(mode="json")
