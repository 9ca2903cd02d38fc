"""Shared fixtures: deterministic identities, recording targets, paper ledgers."""

from __future__ import annotations

import asyncio

import pytest
from eth_account import Account

from fees.quoter import FeeQuoter
from forwarder.verifier import ForwardTarget, ForwardVerifier, split_sender
from models.relay import ExecutionResult
from monitoring.metrics import RelayMetrics
from relay.submitter import RelaySubmitter, SubmitterConfig
from web3_infra.keys import StaticKeyProvider
from web3_infra.memory_ledger import MemoryLedger

# ── Identities ───────────────────────────────────────────────────────

KEY_A = "0x" + "11" * 32
KEY_B = "0x" + "12" * 32
KEY_R1 = "0x" + "21" * 32
KEY_R2 = "0x" + "22" * 32
KEY_R3 = "0x" + "23" * 32

ADDR_A = Account.from_key(KEY_A).address
ADDR_B = Account.from_key(KEY_B).address
ADDR_R1 = Account.from_key(KEY_R1).address
ADDR_R2 = Account.from_key(KEY_R2).address
ADDR_R3 = Account.from_key(KEY_R3).address

TARGET = "0x" + "cc" * 20
PROMISE = bytes(range(64))

RESERVE_NATIVE = 1_000 * 10**18
RESERVE_TOKEN = 2_000_000 * 10**18


class RecordingTarget(ForwardTarget):
    """Target contract that records every call it receives."""

    def __init__(
        self,
        success: bool = True,
        return_data: bytes = b"ok",
        gas_needed: int = 0,
        error: Exception | None = None,
    ) -> None:
        self.success = success
        self.return_data = return_data
        self.gas_needed = gas_needed
        self.error = error
        self.calls: list[tuple[bytes, str, str, int]] = []

    async def call(self, calldata: bytes, *, sender: str, gas: int) -> ExecutionResult:
        payload, trailer = split_sender(calldata)
        self.calls.append((payload, trailer, sender, gas))
        if self.error is not None:
            raise self.error
        return ExecutionResult(success=self.success, return_data=self.return_data)

    def estimate_gas(self, calldata: bytes) -> int:
        return self.gas_needed


class FlakyLedger(MemoryLedger):
    """Paper ledger whose reads fail a set number of times first."""

    def __init__(self, *args, outcome_failures: int = 0, nonce_failures: int = 0, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.outcome_failures = outcome_failures
        self.nonce_failures = nonce_failures

    async def get_outcome(self, handle):
        if self.outcome_failures > 0:
            self.outcome_failures -= 1
            raise ConnectionError("rpc connection reset")
        return await super().get_outcome(handle)

    async def get_nonce(self, identity: str) -> int:
        if self.nonce_failures > 0:
            self.nonce_failures -= 1
            raise ConnectionError("rpc connection reset")
        return await super().get_nonce(identity)


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture
def target() -> RecordingTarget:
    return RecordingTarget()


@pytest.fixture
def verifier(target: RecordingTarget) -> ForwardVerifier:
    return ForwardVerifier(targets={TARGET: target})


@pytest.fixture
def ledger(verifier: ForwardVerifier) -> MemoryLedger:
    return MemoryLedger(
        verifier=verifier,
        reserve_native=RESERVE_NATIVE,
        reserve_token=RESERVE_TOKEN,
    )


@pytest.fixture
def provider_a() -> StaticKeyProvider:
    return StaticKeyProvider(KEY_A)


def make_submitter(
    ledger: MemoryLedger,
    address: str,
    timeout_s: float = 5.0,
    swap: bool = False,
    metrics: RelayMetrics | None = None,
) -> RelaySubmitter:
    return RelaySubmitter(
        ledger,
        address,
        quoter=FeeQuoter(),
        config=SubmitterConfig(
            confirmation_timeout_s=timeout_s,
            poll_interval_s=0.01,
            swap_fees_to_native=swap,
        ),
        metrics=metrics,
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll *predicate* on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
