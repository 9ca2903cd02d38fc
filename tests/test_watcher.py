"""Tests for relay.watcher — confirmation tracking and relayer failover."""

from __future__ import annotations

import asyncio

import pytest

from conftest import (
    ADDR_A,
    ADDR_R1,
    ADDR_R2,
    ADDR_R3,
    KEY_A,
    PROMISE,
    RESERVE_NATIVE,
    RESERVE_TOKEN,
    TARGET,
    FlakyLedger,
    RecordingTarget,
    make_submitter,
    wait_until,
)
from core.errors import (
    AllRelayersExhausted,
    InsufficientGasBudget,
    RevertedExecution,
    SubmissionRejected,
)
from forwarder.verifier import ForwardVerifier
from models.forward_request import SignedForwardRequest
from models.relay import AttemptStatus, ExecutionOutcome, RelayerConfig, RelayerEndpoint, SubmissionHandle
from monitoring.metrics import RelayMetrics
from relay.builder import RequestBuilder
from relay.client import HttpRelayClient, LocalRelayClient, RelayClient
from relay.submitter import RelaySubmitter
from relay.watcher import (
    VALID_TRANSITIONS,
    InvalidTransitionError,
    RelayOperation,
    RelayWatcher,
    WatcherConfig,
    WatchState,
    http_client_factory,
)
from web3_infra.keys import StaticKeyProvider
from web3_infra.memory_ledger import MemoryLedger
from web3_infra.signer import ForwardRequestSigner

# ── Helpers ──────────────────────────────────────────────────────────


class BlindLedger(MemoryLedger):
    """Ledger whose receipts for some transactions never become visible."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.hidden: set[str] = set()

    async def get_outcome(self, handle: SubmissionHandle) -> ExecutionOutcome | None:
        if handle.tx_hash in self.hidden:
            return None
        return await super().get_outcome(handle)


class MineFirstClient(RelayClient):
    """Mines everything pending right before delegating the submission."""

    def __init__(self, ledger: MemoryLedger, inner: RelayClient) -> None:
        self._ledger = ledger
        self._inner = inner

    async def submit(self, signed: SignedForwardRequest) -> SubmissionHandle:
        await self._ledger.mine()
        return await self._inner.submit(signed)


def _endpoints(*addresses: str) -> list[RelayerEndpoint]:
    return [RelayerEndpoint(url=f"http://relay-{i}:8600", address=a) for i, a in enumerate(addresses)]


def _watcher(
    ledger: MemoryLedger,
    signer: ForwardRequestSigner,
    addresses: tuple[str, ...] = (ADDR_R1, ADDR_R2),
    timeout: float = 0.2,
    retries: int = 2,
    metrics: RelayMetrics | None = None,
    clients: dict[str, RelayClient] | None = None,
) -> tuple[RelayWatcher, dict[str, RelaySubmitter]]:
    endpoints = _endpoints(*addresses)
    submitters = {e.url: make_submitter(ledger, e.address) for e in endpoints}
    overrides = clients if clients is not None else {}
    relayers = RelayerConfig(
        primary=endpoints[0],
        fallbacks=tuple(endpoints[1:]),
        timeout_seconds=timeout,
    )
    watcher = RelayWatcher(
        RequestBuilder(signer),
        ledger,
        relayers,
        client_factory=lambda e: overrides.get(e.address) or LocalRelayClient(submitters[e.url]),
        config=WatcherConfig(poll_interval_s=0.01, max_submission_retries=retries, retry_backoff_s=0),
        metrics=metrics,
    )
    return watcher, submitters


async def _stop(submitters: dict[str, RelaySubmitter]) -> None:
    for submitter in submitters.values():
        await submitter.stop()


@pytest.fixture
def signer() -> ForwardRequestSigner:
    s = ForwardRequestSigner(StaticKeyProvider(KEY_A), max_workers=2)
    s.start()
    yield s
    s.shutdown()


# ── State table ──────────────────────────────────────────────────────


class TestTransitions:

    def test_every_state_has_entry(self) -> None:
        assert set(VALID_TRANSITIONS) == set(WatchState)

    def test_terminal_states_have_no_exits(self) -> None:
        assert VALID_TRANSITIONS[WatchState.CONFIRMED] == set()
        assert VALID_TRANSITIONS[WatchState.FAILED] == set()

    def test_timed_out_only_reachable_from_submitted(self) -> None:
        sources = {s for s, nxt in VALID_TRANSITIONS.items() if WatchState.TIMED_OUT in nxt}
        assert sources == {WatchState.SUBMITTED}

    def test_invalid_transition_raises(
        self, ledger: MemoryLedger, signer: ForwardRequestSigner
    ) -> None:
        watcher, _ = _watcher(ledger, signer)
        op = RelayOperation(identity=ADDR_A, to=TARGET, data=PROMISE, gas=100_000)
        with pytest.raises(InvalidTransitionError):
            watcher._transition(op, WatchState.TIMED_OUT)
        assert op.state is WatchState.BUILDING


# ── Scenarios ────────────────────────────────────────────────────────


class TestRelayWatcher:

    @pytest.mark.asyncio
    async def test_confirmed_through_primary(
        self, ledger: MemoryLedger, signer: ForwardRequestSigner, target: RecordingTarget
    ) -> None:
        watcher, submitters = _watcher(ledger, signer)
        try:
            op = await watcher.relay(ADDR_A, TARGET, PROMISE, 100_000)
        finally:
            await _stop(submitters)

        assert op.state is WatchState.CONFIRMED
        assert op.nonce == 0
        assert op.resubmissions == 0
        assert op.attempts[0].status is AttemptStatus.CONFIRMED
        assert op.attempts[0].relayer_used == ADDR_R1
        assert op.settled_by == op.handles[0].tx_hash
        assert op.outcome is not None and op.outcome.return_data == b"ok"
        assert [s for s, _ in op.state_history] == [
            WatchState.BUILDING,
            WatchState.SUBMITTED,
            WatchState.CONFIRMED,
        ]
        assert len(target.calls) == 1
        assert watcher.active(ADDR_A) is None

    @pytest.mark.asyncio
    async def test_timeout_fails_over_and_late_primary_wins(
        self, ledger: MemoryLedger, signer: ForwardRequestSigner, target: RecordingTarget
    ) -> None:
        ledger.auto_mine = False
        metrics = RelayMetrics()
        watcher, submitters = _watcher(ledger, signer, metrics=metrics)
        try:
            task = asyncio.create_task(watcher.relay(ADDR_A, TARGET, PROMISE, 100_000))
            await wait_until(lambda: len(ledger.pending) == 2)

            first, second = ledger.pending
            assert (first.relayer, second.relayer) == (ADDR_R1, ADDR_R2)
            assert first.nonce == second.nonce == 0

            # R1's transaction lands after all, then R2's.
            await ledger.mine(first.tx_hash)
            await ledger.mine(second.tx_hash)
            op = await task
        finally:
            await _stop(submitters)

        assert op.state is WatchState.CONFIRMED
        assert op.resubmissions == 1
        assert op.settled_by == first.tx_hash
        assert op.attempts[0].status is AttemptStatus.CONFIRMED
        assert op.attempts[1].status is AttemptStatus.FAILED
        assert op.attempts[0].request_hash != op.attempts[1].request_hash
        assert len(target.calls) == 1
        assert await ledger.get_nonce(ADDR_A) == 1
        assert WatchState.TIMED_OUT in [s for s, _ in op.state_history]
        assert metrics.registry.get_sample_value("metatx_failovers_total") == 1.0

    @pytest.mark.asyncio
    async def test_fallback_confirms_when_primary_never_lands(
        self, ledger: MemoryLedger, signer: ForwardRequestSigner, target: RecordingTarget
    ) -> None:
        ledger.auto_mine = False
        watcher, submitters = _watcher(ledger, signer)
        try:
            task = asyncio.create_task(watcher.relay(ADDR_A, TARGET, PROMISE, 100_000))
            await wait_until(lambda: len(ledger.pending) == 2)
            second = ledger.pending[1]
            await ledger.mine(second.tx_hash)
            op = await task
        finally:
            await _stop(submitters)

        assert op.state is WatchState.CONFIRMED
        assert op.settled_by == second.tx_hash
        assert op.attempts[0].status is AttemptStatus.TIMED_OUT
        assert op.attempts[1].status is AttemptStatus.CONFIRMED
        assert len(target.calls) == 1

    @pytest.mark.asyncio
    async def test_nonce_advanced_invisibly(
        self, verifier: ForwardVerifier, signer: ForwardRequestSigner, target: RecordingTarget
    ) -> None:
        ledger = BlindLedger(
            verifier=verifier,
            reserve_native=RESERVE_NATIVE,
            reserve_token=RESERVE_TOKEN,
            auto_mine=False,
        )
        watcher, submitters = _watcher(ledger, signer)
        try:
            task = asyncio.create_task(watcher.relay(ADDR_A, TARGET, PROMISE, 100_000))
            await wait_until(lambda: len(ledger.pending) == 1)
            ledger.hidden.add(ledger.pending[0].tx_hash)
            await ledger.mine()
            op = await task
        finally:
            await _stop(submitters)

        # No resubmission: the re-queried nonce had already advanced.
        assert op.state is WatchState.CONFIRMED
        assert op.resubmissions == 0
        assert op.settled_by is None
        assert len(ledger.submissions) == 1
        assert len(target.calls) == 1

    @pytest.mark.asyncio
    async def test_fallback_submission_hits_consumed_nonce(
        self, ledger: MemoryLedger, signer: ForwardRequestSigner, target: RecordingTarget
    ) -> None:
        ledger.auto_mine = False
        inner = {}
        watcher, submitters = _watcher(ledger, signer, clients=inner)
        # R2's client lets R1's pending transaction land just before it submits.
        r2_url = _endpoints(ADDR_R1, ADDR_R2)[1].url
        inner[ADDR_R2] = MineFirstClient(ledger, LocalRelayClient(submitters[r2_url]))
        try:
            op = await watcher.relay(ADDR_A, TARGET, PROMISE, 100_000)
        finally:
            await _stop(submitters)

        assert op.state is WatchState.CONFIRMED
        assert op.settled_by == op.handles[0].tx_hash
        assert len(op.handles) == 1
        assert op.attempts[-1].status is AttemptStatus.FAILED
        assert op.attempts[-1].error == "nonce_replay"
        assert len(target.calls) == 1

    @pytest.mark.asyncio
    async def test_all_relayers_exhausted(
        self, ledger: MemoryLedger, signer: ForwardRequestSigner, target: RecordingTarget
    ) -> None:
        ledger.auto_mine = False
        watcher, submitters = _watcher(ledger, signer, addresses=(ADDR_R1, ADDR_R2, ADDR_R3), timeout=0.05)
        try:
            with pytest.raises(AllRelayersExhausted) as info:
                await watcher.relay(ADDR_A, TARGET, PROMISE, 100_000)
        finally:
            await _stop(submitters)

        exc = info.value
        assert exc.identity == ADDR_A
        assert exc.nonce == 0
        assert [a.relayer_used for a in exc.attempts] == [ADDR_R1, ADDR_R2, ADDR_R3]
        assert all(a.status is AttemptStatus.TIMED_OUT for a in exc.attempts)
        assert len(ledger.pending) == 3
        assert target.calls == []

    @pytest.mark.asyncio
    async def test_rejected_submission_retried_on_same_relayer(
        self, ledger: MemoryLedger, signer: ForwardRequestSigner
    ) -> None:
        ledger.reject_next("transaction underpriced")
        watcher, submitters = _watcher(ledger, signer)
        try:
            op = await watcher.relay(ADDR_A, TARGET, PROMISE, 100_000)
        finally:
            await _stop(submitters)

        assert op.state is WatchState.CONFIRMED
        assert [a.relayer_used for a in op.attempts] == [ADDR_R1, ADDR_R1]
        assert op.attempts[0].status is AttemptStatus.FAILED
        assert op.attempts[0].error == "submission_rejected"
        assert op.handles[0].relayer == ADDR_R1

    @pytest.mark.asyncio
    async def test_rejections_beyond_retries_fail_over(
        self, ledger: MemoryLedger, signer: ForwardRequestSigner
    ) -> None:
        ledger.reject_next()
        watcher, submitters = _watcher(ledger, signer, retries=0)
        try:
            op = await watcher.relay(ADDR_A, TARGET, PROMISE, 100_000)
        finally:
            await _stop(submitters)

        assert op.state is WatchState.CONFIRMED
        assert op.handles[0].relayer == ADDR_R2
        assert WatchState.REBUILDING in [s for s, _ in op.state_history]

    @pytest.mark.asyncio
    async def test_terminal_error_not_failed_over(
        self, ledger: MemoryLedger, signer: ForwardRequestSigner
    ) -> None:
        ledger.verifier.register_target(TARGET, RecordingTarget(gas_needed=500_000))
        watcher, submitters = _watcher(ledger, signer)
        try:
            with pytest.raises(InsufficientGasBudget):
                await watcher.relay(ADDR_A, TARGET, PROMISE, 100_000)
        finally:
            await _stop(submitters)
        assert ledger.submissions == []

    @pytest.mark.asyncio
    async def test_reverted_inner_call(
        self, ledger: MemoryLedger, signer: ForwardRequestSigner
    ) -> None:
        ledger.verifier.register_target(TARGET, RecordingTarget(success=False, return_data=b"nope"))
        watcher, submitters = _watcher(ledger, signer)
        try:
            with pytest.raises(RevertedExecution) as info:
                await watcher.relay(ADDR_A, TARGET, PROMISE, 100_000)
        finally:
            await _stop(submitters)
        assert info.value.return_data == b"nope"
        assert await ledger.get_nonce(ADDR_A) == 1

    @pytest.mark.asyncio
    async def test_same_identity_serialized(
        self, ledger: MemoryLedger, signer: ForwardRequestSigner, target: RecordingTarget
    ) -> None:
        watcher, submitters = _watcher(ledger, signer)
        try:
            ops = await asyncio.gather(
                watcher.relay(ADDR_A, TARGET, PROMISE, 100_000),
                watcher.relay(ADDR_A, TARGET, PROMISE[::-1], 100_000),
            )
        finally:
            await _stop(submitters)
        assert sorted(op.nonce for op in ops) == [0, 1]
        assert len(target.calls) == 2

    @pytest.mark.asyncio
    async def test_transient_outcome_errors_do_not_abort(
        self, verifier: ForwardVerifier, signer: ForwardRequestSigner, target: RecordingTarget
    ) -> None:
        ledger = FlakyLedger(
            verifier=verifier,
            reserve_native=RESERVE_NATIVE,
            reserve_token=RESERVE_TOKEN,
            outcome_failures=2,
        )
        watcher, submitters = _watcher(ledger, signer)
        try:
            op = await watcher.relay(ADDR_A, TARGET, PROMISE, 100_000)
        finally:
            await _stop(submitters)

        assert op.state is WatchState.CONFIRMED
        assert op.resubmissions == 0
        assert await ledger.get_nonce(ADDR_A) == 1
        assert len(target.calls) == 1

    @pytest.mark.asyncio
    async def test_unreadable_outcome_resolved_by_nonce(
        self, verifier: ForwardVerifier, signer: ForwardRequestSigner, target: RecordingTarget
    ) -> None:
        ledger = FlakyLedger(
            verifier=verifier,
            reserve_native=RESERVE_NATIVE,
            reserve_token=RESERVE_TOKEN,
            outcome_failures=10**6,
        )
        watcher, submitters = _watcher(ledger, signer, timeout=0.1)
        try:
            op = await watcher.relay(ADDR_A, TARGET, PROMISE, 100_000)
        finally:
            await _stop(submitters)

        # Receipts never readable, but the consumed nonce proves settlement.
        assert op.state is WatchState.CONFIRMED
        assert WatchState.TIMED_OUT in [s for s, _ in op.state_history]
        assert op.settled_by is None
        assert op.resubmissions == 0
        assert len(target.calls) == 1

    @pytest.mark.asyncio
    async def test_unreachable_nonce_fails_typed(
        self, verifier: ForwardVerifier, signer: ForwardRequestSigner, target: RecordingTarget
    ) -> None:
        ledger = FlakyLedger(
            verifier=verifier,
            reserve_native=RESERVE_NATIVE,
            reserve_token=RESERVE_TOKEN,
            nonce_failures=10**6,
        )
        watcher, submitters = _watcher(ledger, signer, timeout=0.05)
        try:
            with pytest.raises(SubmissionRejected) as info:
                await watcher.relay(ADDR_A, TARGET, PROMISE, 100_000)
        finally:
            await _stop(submitters)

        assert info.value.identity == ADDR_A
        assert "ledger unreachable" in info.value.reason
        assert target.calls == []

    @pytest.mark.asyncio
    async def test_http_clients_use_configured_timeout(self) -> None:
        factory = http_client_factory(3.5)
        client = factory(RelayerEndpoint(url="http://relay-0:8600", address=ADDR_R1))
        try:
            assert isinstance(client, HttpRelayClient)
            assert client.timeout == 3.5
        finally:
            await client.close()
