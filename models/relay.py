"""Relay models — endpoints, submission handles, outcomes and attempts."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from models.forward_request import checksum, to_bytes


class AttemptStatus(str, Enum):
    """Lifecycle of a single submission attempt."""

    SUBMITTED = "SUBMITTED"
    CONFIRMED = "CONFIRMED"
    TIMED_OUT = "TIMED_OUT"
    FAILED = "FAILED"


class RelayerEndpoint(BaseModel):
    """A relay service: where to reach it and which identity it signs as."""

    model_config = ConfigDict(frozen=True)

    url: str = Field(..., min_length=1)
    address: str

    @field_validator("address", mode="before")
    @classmethod
    def _checksum_address(cls, v: Any) -> str:
        return checksum(v)


class RelayerConfig(BaseModel):
    """Primary relayer, ordered fallbacks and the per-attempt timeout."""

    model_config = ConfigDict(frozen=True)

    primary: RelayerEndpoint
    fallbacks: tuple[RelayerEndpoint, ...] = ()
    timeout_seconds: float = Field(default=180.0, gt=0)

    @property
    def ordered(self) -> tuple[RelayerEndpoint, ...]:
        """Primary first, then fallbacks in configured order."""
        return (self.primary, *self.fallbacks)


class SubmissionHandle(BaseModel):
    """Reference to a transaction the ledger has accepted."""

    model_config = ConfigDict(frozen=True)

    tx_hash: str
    relayer: str
    identity: str
    nonce: int
    submitted_at: float = Field(default_factory=time.time)


class ExecutionResult(BaseModel):
    """Inner-call outcome as returned by ``ForwardVerifier.execute``."""

    model_config = ConfigDict(frozen=True)

    success: bool
    return_data: bytes = b""

    @field_serializer("return_data")
    def _serialize_return_data(self, v: bytes) -> str:
        return "0x" + v.hex()


class ExecutionOutcome(BaseModel):
    """Confirmed on-ledger outcome of a forwarded transaction.

    ``rejected_reason`` is set (to an error code such as
    ``"nonce_replay"``) when the forwarder itself reverted the
    transaction; the inner call never ran and no nonce was consumed by it.
    """

    model_config = ConfigDict(frozen=True)

    tx_hash: str
    success: bool
    return_data: bytes = b""
    gas_used: int = 0
    block_number: Optional[int] = None
    rejected_reason: Optional[str] = None

    @field_validator("return_data", mode="before")
    @classmethod
    def _hex_return_data(cls, v: Any) -> bytes:
        return to_bytes(v)

    @field_serializer("return_data")
    def _serialize_return_data(self, v: bytes) -> str:
        return "0x" + v.hex()


class SubmissionResult(BaseModel):
    """What the relay service reports after confirmation."""

    model_config = ConfigDict(frozen=True)

    success: bool
    return_data: bytes = b""
    handle: SubmissionHandle
    transactor_fee: int = 0
    fee_recovered: bool = False

    @field_serializer("return_data")
    def _serialize_return_data(self, v: bytes) -> str:
        return "0x" + v.hex()


class RelayAttempt(BaseModel):
    """One submission through one relayer.

    Superseded by a new instance on every status change or failover;
    never mutated in place.
    """

    model_config = ConfigDict(frozen=True)

    request_hash: str
    relayer_used: str
    nonce: int
    submitted_at: float = Field(default_factory=time.time)
    status: AttemptStatus = AttemptStatus.SUBMITTED
    tx_hash: Optional[str] = None
    error: Optional[str] = None

    def superseded(self, status: AttemptStatus, error: str | None = None) -> RelayAttempt:
        """Return the successor record with a new status."""
        return self.model_copy(update={"status": status, "error": error})
