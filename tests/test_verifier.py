"""Tests for forwarder.hashing and forwarder.verifier."""

from __future__ import annotations

import pytest
from eth_account import Account
from hypothesis import given, settings
from hypothesis import strategies as st

from conftest import (
    ADDR_A,
    ADDR_B,
    ADDR_R1,
    ADDR_R2,
    KEY_A,
    KEY_B,
    PROMISE,
    TARGET,
    RecordingTarget,
)
from core.errors import NonceGap, NonceReplay, SignatureMismatch, UnauthorizedRelayer
from forwarder.hashing import canonical_hash, recover_signer, sign_hash
from forwarder.verifier import ForwardTarget, ForwardVerifier, append_sender, split_sender
from models.forward_request import ForwardRequest
from models.relay import ExecutionResult


def _request(**overrides) -> ForwardRequest:
    fields = dict(from_=ADDR_A, to=TARGET, relayer=ADDR_R1, gas=100_000, nonce=0, data=PROMISE)
    fields.update(overrides)
    return ForwardRequest(**fields)


def _sign(request: ForwardRequest, key: str = KEY_A) -> bytes:
    return sign_hash(canonical_hash(request), key)


# ── Hashing ──────────────────────────────────────────────────────────


class TestCanonicalHash:

    def test_hash_is_32_bytes_and_deterministic(self) -> None:
        req = _request()
        assert len(canonical_hash(req)) == 32
        assert canonical_hash(req) == canonical_hash(_request())

    @pytest.mark.parametrize(
        "change",
        [
            {"from_": ADDR_B},
            {"to": "0x" + "dd" * 20},
            {"relayer": ADDR_R2},
            {"gas": 100_001},
            {"nonce": 1},
            {"data": PROMISE + b"\x00"},
        ],
    )
    def test_every_field_is_covered(self, change: dict) -> None:
        assert canonical_hash(_request(**change)) != canonical_hash(_request())

    def test_signature_recovers_signer(self) -> None:
        req = _request()
        sig = _sign(req)
        assert len(sig) == 65
        assert recover_signer(canonical_hash(req), sig) == ADDR_A

    def test_garbage_signature_recovers_none(self) -> None:
        assert recover_signer(canonical_hash(_request()), b"\x00" * 65) is None

    @settings(max_examples=25, deadline=None)
    @given(
        gas=st.integers(min_value=0, max_value=2**256 - 1),
        nonce=st.integers(min_value=0, max_value=2**256 - 1),
        data=st.binary(max_size=256),
    )
    def test_signature_binds_relayer(self, gas: int, nonce: int, data: bytes) -> None:
        req = _request(gas=gas, nonce=nonce, data=data)
        sig = _sign(req)
        assert recover_signer(canonical_hash(req), sig) == ADDR_A
        # The same signature over a request naming another relayer does
        # not recover to the signer.
        assert recover_signer(canonical_hash(req.with_relayer(ADDR_R2)), sig) != ADDR_A


class TestSenderTrailer:

    def test_round_trip(self) -> None:
        calldata = append_sender(PROMISE, ADDR_A)
        assert len(calldata) == len(PROMISE) + 20
        assert split_sender(calldata) == (PROMISE, ADDR_A)

    def test_short_calldata_rejected(self) -> None:
        with pytest.raises(ValueError):
            split_sender(b"\x01" * 19)


# ── Verifier ─────────────────────────────────────────────────────────


class TestVerify:

    def test_valid_request_verifies(self, verifier: ForwardVerifier) -> None:
        req = _request()
        assert verifier.verify(req, _sign(req)) is True

    def test_wrong_signer_does_not_verify(self, verifier: ForwardVerifier) -> None:
        req = _request()
        assert verifier.verify(req, _sign(req, KEY_B)) is False

    def test_stale_nonce_does_not_verify(self, verifier: ForwardVerifier) -> None:
        verifier.nonces.compare_and_increment(ADDR_A, 0)
        req = _request()
        assert verifier.verify(req, _sign(req)) is False

    def test_malformed_signature_is_false_not_error(self, verifier: ForwardVerifier) -> None:
        assert verifier.verify(_request(), b"\xff" * 65) is False


class TestExecute:

    @pytest.mark.asyncio
    async def test_concrete_vector(
        self, verifier: ForwardVerifier, target: RecordingTarget
    ) -> None:
        req = _request()
        sig = _sign(req)
        assert verifier.verify(req, sig)

        result = await verifier.execute(req, sig, ADDR_R1)
        assert result.success is True
        assert result.return_data == b"ok"
        assert verifier.get_nonce(ADDR_A) == 1

        with pytest.raises(NonceReplay):
            await verifier.execute(req, sig, ADDR_R1)
        assert verifier.get_nonce(ADDR_A) == 1
        assert len(target.calls) == 1

    @pytest.mark.asyncio
    async def test_inner_call_sees_data_and_sender(
        self, verifier: ForwardVerifier, target: RecordingTarget
    ) -> None:
        req = _request()
        await verifier.execute(req, _sign(req), ADDR_R1)
        payload, trailer, sender, gas = target.calls[0]
        assert payload == PROMISE
        assert trailer == ADDR_A
        assert sender == ADDR_A
        assert gas == 100_000

    @pytest.mark.asyncio
    async def test_other_relayer_rejected(
        self, verifier: ForwardVerifier, target: RecordingTarget
    ) -> None:
        req = _request()
        with pytest.raises(UnauthorizedRelayer):
            await verifier.execute(req, _sign(req), ADDR_R2)
        assert verifier.get_nonce(ADDR_A) == 0
        assert target.calls == []

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(
        self, verifier: ForwardVerifier, target: RecordingTarget
    ) -> None:
        req = _request()
        with pytest.raises(SignatureMismatch):
            await verifier.execute(req, _sign(req, KEY_B), ADDR_R1)
        assert verifier.get_nonce(ADDR_A) == 0
        assert target.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "change",
        [
            {"from_": ADDR_B},
            {"to": "0x" + "dd" * 20},
            {"relayer": ADDR_R2},
            {"gas": 100_001},
            {"nonce": 1},
            {"data": PROMISE[:-1] + b"\xff"},
        ],
        ids=["from", "to", "relayer", "gas", "nonce", "data"],
    )
    async def test_tampered_field_rejected(
        self, verifier: ForwardVerifier, target: RecordingTarget, change: dict
    ) -> None:
        sig = _sign(_request())
        tampered = _request(**change)

        assert verifier.verify(tampered, sig) is False
        with pytest.raises(SignatureMismatch):
            await verifier.execute(tampered, sig, tampered.relayer)
        assert verifier.get_nonce(ADDR_A) == 0
        assert verifier.get_nonce(ADDR_B) == 0
        assert target.calls == []

    @pytest.mark.asyncio
    async def test_future_nonce_rejected(self, verifier: ForwardVerifier) -> None:
        req = _request(nonce=1)
        with pytest.raises(NonceGap):
            await verifier.execute(req, _sign(req), ADDR_R1)
        assert verifier.get_nonce(ADDR_A) == 0

    @pytest.mark.asyncio
    async def test_failed_inner_call_still_consumes_nonce(self) -> None:
        failing = RecordingTarget(success=False, return_data=b"revert: insufficient balance")
        verifier = ForwardVerifier(targets={TARGET: failing})
        req = _request()
        result = await verifier.execute(req, _sign(req), ADDR_R1)
        assert result.success is False
        assert result.return_data == b"revert: insufficient balance"
        assert verifier.get_nonce(ADDR_A) == 1

    @pytest.mark.asyncio
    async def test_raising_target_reported_as_failure(self) -> None:
        verifier = ForwardVerifier(targets={TARGET: RecordingTarget(error=RuntimeError("boom"))})
        req = _request()
        result = await verifier.execute(req, _sign(req), ADDR_R1)
        assert result.success is False
        assert result.return_data == b"boom"
        assert verifier.get_nonce(ADDR_A) == 1

    @pytest.mark.asyncio
    async def test_unknown_target_is_inner_failure(self) -> None:
        verifier = ForwardVerifier()
        req = _request()
        result = await verifier.execute(req, _sign(req), ADDR_R1)
        assert result.success is False
        assert verifier.get_nonce(ADDR_A) == 1

    @pytest.mark.asyncio
    async def test_gas_budget_enforced_on_inner_call(self) -> None:
        verifier = ForwardVerifier(targets={TARGET: RecordingTarget(gas_needed=200_000)})
        req = _request()
        result = await verifier.execute(req, _sign(req), ADDR_R1)
        assert result.success is False
        assert result.return_data == b"out of gas"

    @pytest.mark.asyncio
    async def test_reentrant_duplicate_fails(self) -> None:
        """A target re-entering the forwarder with the same request is refused."""

        class Reentrant(ForwardTarget):
            def __init__(self) -> None:
                self.verifier: ForwardVerifier | None = None
                self.request: ForwardRequest | None = None
                self.signature = b""
                self.inner_error: Exception | None = None
                self.depth = 0

            async def call(self, calldata: bytes, *, sender: str, gas: int) -> ExecutionResult:
                self.depth += 1
                try:
                    await self.verifier.execute(self.request, self.signature, ADDR_R1)
                except NonceReplay as exc:
                    self.inner_error = exc
                return ExecutionResult(success=True)

        target = Reentrant()
        verifier = ForwardVerifier(targets={TARGET: target})
        req = _request()
        target.verifier, target.request, target.signature = verifier, req, _sign(req)

        result = await verifier.execute(req, target.signature, ADDR_R1)
        assert result.success is True
        assert target.depth == 1
        assert isinstance(target.inner_error, NonceReplay)
        assert verifier.get_nonce(ADDR_A) == 1

    @pytest.mark.asyncio
    async def test_identities_are_independent(self, verifier: ForwardVerifier) -> None:
        other_key = "0x" + "44" * 32
        other = Account.from_key(other_key).address
        req_a = _request()
        req_o = _request(from_=other)
        await verifier.execute(req_a, _sign(req_a), ADDR_R1)
        await verifier.execute(req_o, _sign(req_o, other_key), ADDR_R1)
        assert verifier.get_nonce(ADDR_A) == 1
        assert verifier.get_nonce(other) == 1
