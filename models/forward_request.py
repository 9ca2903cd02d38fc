"""ForwardRequest — the signed unit a relayer executes on a signer's behalf."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from web3 import Web3

_UINT256_MAX = 2**256 - 1


def to_bytes(value: Any) -> bytes:
    """Accept ``bytes`` or a ``0x``-prefixed / bare hex string."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        raw = value[2:] if value[:2] in ("0x", "0X") else value
        try:
            return bytes.fromhex(raw)
        except ValueError as exc:
            raise ValueError(f"invalid hex payload: {value[:20]}...") from exc
    raise TypeError(f"expected bytes or hex string, got {type(value).__name__}")


def checksum(value: Any) -> str:
    """Checksum an address, raising ``ValueError`` on malformed input."""
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 20:
            raise ValueError("address must be 20 bytes")
        value = "0x" + bytes(value).hex()
    if not isinstance(value, str) or not Web3.is_address(value):
        raise ValueError(f"invalid address: {value!r}")
    return Web3.to_checksum_address(value)


class ForwardRequest(BaseModel):
    """Meta-transaction request.

    Immutable once created: a different nonce or relayer means a new
    instance (see ``with_relayer``), never an in-place update.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_: str = Field(..., alias="from", description="Authorizing identity")
    to: str = Field(..., description="Target contract")
    relayer: str = Field(..., description="Only identity allowed to execute")
    gas: int = Field(..., ge=0, le=_UINT256_MAX, description="Inner-call gas budget")
    nonce: int = Field(..., ge=0, le=_UINT256_MAX)
    data: bytes = Field(default=b"", description="Opaque inner-call payload")

    @field_validator("from_", "to", "relayer", mode="before")
    @classmethod
    def _checksum_address(cls, v: Any) -> str:
        return checksum(v)

    @field_validator("data", mode="before")
    @classmethod
    def _hex_data(cls, v: Any) -> bytes:
        return to_bytes(v)

    @field_serializer("data")
    def _serialize_data(self, v: bytes) -> str:
        return "0x" + v.hex()

    def with_relayer(self, relayer: str) -> ForwardRequest:
        """Return a copy naming a different relayer (same nonce)."""
        return ForwardRequest(
            from_=self.from_,
            to=self.to,
            relayer=relayer,
            gas=self.gas,
            nonce=self.nonce,
            data=self.data,
        )


class SignedForwardRequest(BaseModel):
    """A ``ForwardRequest`` together with its recoverable ECDSA signature."""

    model_config = ConfigDict(frozen=True)

    request: ForwardRequest
    signature: bytes = Field(..., description="65-byte r||s||v")

    @field_validator("signature", mode="before")
    @classmethod
    def _hex_signature(cls, v: Any) -> bytes:
        sig = to_bytes(v)
        if len(sig) != 65:
            raise ValueError(f"signature must be 65 bytes, got {len(sig)}")
        return sig

    @field_serializer("signature")
    def _serialize_signature(self, v: bytes) -> str:
        return "0x" + v.hex()

    @property
    def identity(self) -> str:
        return self.request.from_

    @property
    def nonce(self) -> int:
        return self.request.nonce
