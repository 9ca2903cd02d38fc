"""RelayWatcher — confirmation tracking and relayer failover.

State machine per logical operation::

    BUILDING → SUBMITTED → CONFIRMED
                        ↘ TIMED_OUT → REBUILDING → SUBMITTED → ...
                                    ↘ CONFIRMED   (nonce already advanced)

Every resubmission is a brand-new request with the *same* nonce, the
fallback relayer in ``relayer`` and a fresh signature.  Whichever
transaction lands first consumes the nonce; any other one is reverted by
the forwarder with a nonce mismatch, so the payload never runs twice.

Key behaviours:
1. Deadline measured from ledger acceptance, not from construction.
2. Before failing over, the nonce is re-queried; an advanced nonce means
   an earlier attempt settled without the watcher seeing it.
3. Retryable submission errors are retried on the same relayer up to
   ``max_submission_retries`` before failing over.
4. At most one operation per identity runs at a time.
5. Ledger transport errors while polling are retried until the attempt
   deadline; they never end an operation on their own.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable
from uuid import uuid4

import structlog

from core.errors import (
    AllRelayersExhausted,
    MetaTxError,
    RevertedExecution,
    SubmissionRejected,
    SubmissionTimeout,
    error_from_dict,
)
from core.logger import request_context
from forwarder.hashing import canonical_hash
from models.forward_request import SignedForwardRequest, checksum
from models.relay import (
    AttemptStatus,
    ExecutionOutcome,
    RelayAttempt,
    RelayerConfig,
    RelayerEndpoint,
    SubmissionHandle,
)
from monitoring.metrics import RelayMetrics
from relay.builder import RequestBuilder
from relay.client import HttpRelayClient, RelayClient
from web3_infra.ledger import Ledger

logger = structlog.get_logger("relay.watcher")


class WatchState(str, Enum):
    """State of a relayed operation."""

    BUILDING = "BUILDING"
    SUBMITTED = "SUBMITTED"
    TIMED_OUT = "TIMED_OUT"
    REBUILDING = "REBUILDING"

    # Terminal
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


# Valid state transitions
VALID_TRANSITIONS: dict[WatchState, set[WatchState]] = {
    WatchState.BUILDING: {
        WatchState.SUBMITTED,
        WatchState.REBUILDING,  # primary refused, fail over
        WatchState.CONFIRMED,  # nonce consumed concurrently by an earlier attempt
        WatchState.FAILED,
    },
    WatchState.SUBMITTED: {
        WatchState.CONFIRMED,
        WatchState.TIMED_OUT,
        WatchState.FAILED,
    },
    WatchState.TIMED_OUT: {
        WatchState.REBUILDING,
        WatchState.CONFIRMED,
        WatchState.FAILED,
    },
    WatchState.REBUILDING: {
        WatchState.SUBMITTED,
        WatchState.REBUILDING,
        WatchState.CONFIRMED,
        WatchState.FAILED,
    },
    # Terminal: no further transitions
    WatchState.CONFIRMED: set(),
    WatchState.FAILED: set(),
}


# ── Data Models ──────────────────────────────────────────────────────


@dataclass
class RelayOperation:
    """One logical meta-transaction, across all of its relay attempts."""

    identity: str
    to: str
    data: bytes
    gas: int

    op_id: str = field(default_factory=lambda: str(uuid4())[:8])
    nonce: int | None = None
    state: WatchState = WatchState.BUILDING

    # Index into RelayerConfig.ordered
    relayer_index: int = 0
    submit_retries: int = 0

    attempts: list[RelayAttempt] = field(default_factory=list)
    handles: list[SubmissionHandle] = field(default_factory=list)
    signed: SignedForwardRequest | None = None
    deadline: float | None = None
    monitor: asyncio.Task[ExecutionOutcome | None] | None = field(default=None, repr=False)

    # Result
    outcome: ExecutionOutcome | None = None
    settled_by: str | None = None
    error: MetaTxError | None = None

    # Timing
    created_at: float = field(default_factory=time.monotonic)
    completed_at: float | None = None
    state_history: list[tuple[WatchState, float]] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in {WatchState.CONFIRMED, WatchState.FAILED}

    @property
    def resubmissions(self) -> int:
        """Accepted submissions beyond the first."""
        return max(len(self.handles) - 1, 0)

    @property
    def elapsed_seconds(self) -> float:
        end = self.completed_at or time.monotonic()
        return end - self.created_at


@dataclass(frozen=True)
class WatcherConfig:
    """Configuration for the relay watcher."""

    # Ledger polling interval while an attempt is in flight
    poll_interval_s: float = 2.0

    # Retries of a retryable submission error on the same relayer
    max_submission_retries: int = 2

    # Pause between such retries
    retry_backoff_s: float = 1.0

    # Per-request timeout of the default HTTP relay clients
    http_timeout_s: float = 10.0

    @classmethod
    def from_settings(cls, s) -> WatcherConfig:
        return cls(
            poll_interval_s=s.CONFIRMATION_POLL_SECONDS,
            max_submission_retries=s.MAX_SUBMISSION_RETRIES,
            http_timeout_s=s.HTTP_TIMEOUT_SECONDS,
        )


def relayers_from_settings(s) -> RelayerConfig:
    """Primary and fallback relayers from ``RELAY_*`` settings."""
    return RelayerConfig(
        primary=RelayerEndpoint(url=s.RELAY_PRIMARY_URL, address=s.RELAY_PRIMARY_ADDRESS),
        fallbacks=tuple(
            RelayerEndpoint(url=entry.url, address=entry.address) for entry in s.RELAY_FALLBACKS
        ),
        timeout_seconds=s.RELAY_TIMEOUT_SECONDS,
    )


def http_client_factory(timeout_s: float) -> Callable[[RelayerEndpoint], RelayClient]:
    """Factory of ``HttpRelayClient``s sharing one request timeout."""

    def factory(endpoint: RelayerEndpoint) -> RelayClient:
        return HttpRelayClient(endpoint.url, timeout=timeout_s)

    return factory


# ── Watcher ──────────────────────────────────────────────────────────


class RelayWatcher:
    """Drives operations through primary and fallback relayers.

    Parameters
    ----------
    builder:
        Builds and signs requests for the watched identity.
    ledger:
        Read access to nonces and transaction outcomes.
    relayers:
        Primary, ordered fallbacks and the per-attempt timeout.
    client_factory:
        Maps an endpoint to the client used to reach it.  Clients are
        created lazily and reused.
    """

    def __init__(
        self,
        builder: RequestBuilder,
        ledger: Ledger,
        relayers: RelayerConfig,
        client_factory: Callable[[RelayerEndpoint], RelayClient] | None = None,
        config: WatcherConfig | None = None,
        metrics: RelayMetrics | None = None,
    ) -> None:
        self._builder = builder
        self._ledger = ledger
        self._relayers = relayers
        self._config = config or WatcherConfig()
        self._client_factory = client_factory or http_client_factory(self._config.http_timeout_s)
        self._metrics = metrics

        self._clients: dict[str, RelayClient] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._active: dict[str, RelayOperation] = {}

    @property
    def relayers(self) -> RelayerConfig:
        return self._relayers

    def active(self, identity: str) -> RelayOperation | None:
        """The operation currently in flight for *identity*, if any."""
        return self._active.get(checksum(identity).lower())

    # ── Public API ───────────────────────────────────────────────

    async def relay(self, from_: str, to: str, data: bytes, gas: int) -> RelayOperation:
        """Run one operation to a terminal state.

        Returns the confirmed operation.  ``operation.outcome`` holds the
        settling transaction's outcome when it was observed; it is
        ``None`` when the nonce advanced without the watcher seeing which
        attempt consumed it.

        Raises
        ------
        AllRelayersExhausted
            If no relayer confirmed before the fallback list ran out.
        RevertedExecution
            If the inner call failed; the nonce is consumed.
        SignatureMismatch, UnauthorizedRelayer, InsufficientGasBudget, ...
            Terminal errors from building or submission.
        """
        op = RelayOperation(identity=checksum(from_), to=checksum(to), data=data, gas=gas)
        key = op.identity.lower()
        lock = self._locks.setdefault(key, asyncio.Lock())

        with request_context(identity=op.identity, op_id=op.op_id):
            async with lock:
                self._active[key] = op
                op.state_history.append((op.state, time.monotonic()))
                logger.info(
                    "watcher.started",
                    op_id=op.op_id,
                    identity=op.identity,
                    to=op.to,
                    relayer=self._relayers.primary.address,
                )
                try:
                    await self._drive(op)
                finally:
                    if op.monitor is not None and not op.monitor.done():
                        op.monitor.cancel()
                    self._active.pop(key, None)

        if op.state is WatchState.FAILED:
            assert op.error is not None
            raise op.error
        return op

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()

    # ── Driver ───────────────────────────────────────────────────

    async def _drive(self, op: RelayOperation) -> None:
        handlers = {
            WatchState.BUILDING: self._on_building,
            WatchState.SUBMITTED: self._on_submitted,
            WatchState.TIMED_OUT: self._on_timed_out,
            WatchState.REBUILDING: self._on_rebuilding,
        }
        while not op.is_terminal:
            try:
                await handlers[op.state](op)
            except MetaTxError as exc:
                self._fail(op, exc)

    async def _on_building(self, op: RelayOperation) -> None:
        if op.nonce is None:
            op.nonce = await self._query_nonce(op)
        await self._submit_current(op)

    async def _on_rebuilding(self, op: RelayOperation) -> None:
        await self._submit_current(op)

    async def _on_submitted(self, op: RelayOperation) -> None:
        assert op.monitor is not None
        outcome = await op.monitor
        op.monitor = None

        if outcome is None:
            self._supersede(op, AttemptStatus.TIMED_OUT, "no confirmation before deadline")
            if self._metrics:
                self._metrics.record_error(SubmissionTimeout.code)
            logger.warning(
                "watcher.timed_out",
                op_id=op.op_id,
                identity=op.identity,
                nonce=op.nonce,
                relayer=op.attempts[-1].relayer_used,
            )
            self._transition(op, WatchState.TIMED_OUT)
            return

        if outcome.rejected_reason is not None:
            # Forwarder refused the transaction; most likely a nonce
            # consumed by an earlier attempt that landed late.
            self._supersede(op, AttemptStatus.FAILED, outcome.rejected_reason)
            exc = error_from_dict(
                {
                    "error": outcome.rejected_reason,
                    "reason": f"forwarder reverted transaction {outcome.tx_hash}",
                    "identity": op.identity,
                    "nonce": op.nonce,
                }
            )
            await self._guard_duplicate(op, exc)
            return

        op.outcome = outcome
        op.settled_by = outcome.tx_hash
        if not outcome.success:
            self._supersede(op, AttemptStatus.FAILED, "inner call reverted")
            self._fail(
                op,
                RevertedExecution(
                    "inner call failed; nonce consumed",
                    identity=op.identity,
                    nonce=op.nonce,
                    return_data=outcome.return_data,
                    tx_hash=outcome.tx_hash,
                ),
            )
            return

        self._supersede(op, AttemptStatus.CONFIRMED)
        self._transition(op, WatchState.CONFIRMED)

    async def _on_timed_out(self, op: RelayOperation) -> None:
        assert op.nonce is not None
        current = await self._query_nonce(op)
        if current > op.nonce:
            logger.info(
                "watcher.settled_invisibly",
                op_id=op.op_id,
                identity=op.identity,
                nonce=op.nonce,
                ledger_nonce=current,
            )
            await self._settle_from_earlier(op)
            return
        self._fail_over(
            op,
            SubmissionTimeout(
                f"no confirmation within {self._relayers.timeout_seconds:.0f}s",
                identity=op.identity,
                nonce=op.nonce,
            ),
        )

    # ── Submission ───────────────────────────────────────────────

    async def _submit_current(self, op: RelayOperation) -> None:
        assert op.nonce is not None
        endpoint = self._relayers.ordered[op.relayer_index]

        try:
            signed = await self._builder.build(
                op.identity, op.to, op.data, endpoint.address, op.gas, op.nonce
            )
        except MetaTxError as exc:
            self._fail(op, exc)
            return
        op.signed = signed

        attempt = RelayAttempt(
            request_hash="0x" + canonical_hash(signed.request).hex(),
            relayer_used=endpoint.address,
            nonce=op.nonce,
        )
        try:
            handle = await self._client(endpoint).submit(signed)
        except MetaTxError as exc:
            op.attempts.append(attempt.superseded(AttemptStatus.FAILED, exc.code))
            if self._metrics:
                self._metrics.record_error(exc.code)
            await self._on_submit_error(op, endpoint, exc)
            return

        attempt = attempt.model_copy(
            update={"tx_hash": handle.tx_hash, "submitted_at": handle.submitted_at}
        )
        op.attempts.append(attempt)
        op.handles.append(handle)
        op.submit_retries = 0

        loop = asyncio.get_running_loop()
        op.deadline = loop.time() + self._relayers.timeout_seconds
        op.monitor = asyncio.create_task(
            self._monitor(handle, op.deadline), name=f"watch:{handle.tx_hash}"
        )
        logger.info(
            "watcher.submitted",
            op_id=op.op_id,
            identity=op.identity,
            nonce=op.nonce,
            relayer=endpoint.address,
            tx_hash=handle.tx_hash,
            attempt=len(op.attempts),
        )
        self._transition(op, WatchState.SUBMITTED)

    async def _on_submit_error(
        self, op: RelayOperation, endpoint: RelayerEndpoint, exc: MetaTxError
    ) -> None:
        if exc.code == "nonce_replay":
            await self._guard_duplicate(op, exc)
            return
        if not exc.retryable:
            self._fail(op, exc)
            return

        op.submit_retries += 1
        if op.submit_retries <= self._config.max_submission_retries:
            logger.warning(
                "watcher.submit_retry",
                op_id=op.op_id,
                identity=op.identity,
                nonce=op.nonce,
                relayer=endpoint.address,
                retry=op.submit_retries,
                error=exc.code,
                reason=exc.reason,
            )
            await asyncio.sleep(self._config.retry_backoff_s)
            return
        self._fail_over(op, exc)

    async def _monitor(self, handle: SubmissionHandle, deadline: float) -> ExecutionOutcome | None:
        """Poll the ledger for *handle* until *deadline*; ``None`` on timeout."""
        loop = asyncio.get_running_loop()
        while True:
            try:
                outcome = await self._ledger.get_outcome(handle)
            except Exception as exc:
                # Transport trouble; the deadline still bounds the wait.
                logger.warning(
                    "watcher.outcome_query_failed",
                    tx_hash=handle.tx_hash,
                    identity=handle.identity,
                    nonce=handle.nonce,
                    error=repr(exc),
                )
                outcome = None
            if outcome is not None:
                return outcome
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self._config.poll_interval_s, remaining))

    async def _query_nonce(self, op: RelayOperation) -> int:
        """Ledger nonce of *op*'s identity, polled through transport errors.

        Raises
        ------
        SubmissionRejected
            If the ledger stays unreachable for a whole attempt timeout.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._relayers.timeout_seconds
        while True:
            try:
                return await self._ledger.get_nonce(op.identity)
            except Exception as exc:
                if loop.time() >= deadline:
                    raise SubmissionRejected(
                        f"ledger unreachable while reading the nonce: {exc!r}",
                        identity=op.identity,
                        nonce=op.nonce,
                    ) from exc
                logger.warning(
                    "watcher.nonce_query_failed",
                    op_id=op.op_id,
                    identity=op.identity,
                    error=repr(exc),
                )
            await asyncio.sleep(self._config.poll_interval_s)

    def _client(self, endpoint: RelayerEndpoint) -> RelayClient:
        client = self._clients.get(endpoint.url)
        if client is None:
            client = self._client_factory(endpoint)
            self._clients[endpoint.url] = client
        return client

    # ── Failover & duplicate guard ───────────────────────────────

    def _fail_over(self, op: RelayOperation, cause: MetaTxError) -> None:
        ordered = self._relayers.ordered
        if op.relayer_index + 1 >= len(ordered):
            self._fail(
                op,
                AllRelayersExhausted(
                    f"{len(ordered)} relayer(s) tried, last error: {cause.reason}",
                    identity=op.identity,
                    nonce=op.nonce,
                    attempts=op.attempts,
                ),
            )
            return

        op.relayer_index += 1
        op.submit_retries = 0
        if self._metrics:
            self._metrics.record_failover()
        logger.warning(
            "watcher.failover",
            op_id=op.op_id,
            identity=op.identity,
            nonce=op.nonce,
            cause=cause.code,
            relayer=ordered[op.relayer_index].address,
        )
        self._transition(op, WatchState.REBUILDING)

    async def _guard_duplicate(self, op: RelayOperation, exc: MetaTxError) -> None:
        """Resolve a nonce mismatch: settled earlier, or a genuine failure."""
        assert op.nonce is not None
        current = await self._query_nonce(op)
        if op.handles and current > op.nonce:
            logger.info(
                "watcher.duplicate_avoided",
                op_id=op.op_id,
                identity=op.identity,
                nonce=op.nonce,
                error=exc.code,
            )
            await self._settle_from_earlier(op)
            return
        self._fail(op, exc)

    async def _settle_from_earlier(self, op: RelayOperation) -> None:
        """The nonce advanced: find which accepted attempt consumed it."""
        for index, handle in enumerate(op.handles):
            try:
                outcome = await self._ledger.get_outcome(handle)
            except Exception as exc:
                logger.warning(
                    "watcher.outcome_query_failed",
                    tx_hash=handle.tx_hash,
                    identity=op.identity,
                    nonce=op.nonce,
                    error=repr(exc),
                )
                continue
            if outcome is None or outcome.rejected_reason is not None:
                continue
            op.outcome = outcome
            op.settled_by = handle.tx_hash
            self._mark_attempt(op, handle.tx_hash, AttemptStatus.CONFIRMED)
            if not outcome.success:
                self._fail(
                    op,
                    RevertedExecution(
                        "inner call failed; nonce consumed",
                        identity=op.identity,
                        nonce=op.nonce,
                        return_data=outcome.return_data,
                        tx_hash=handle.tx_hash,
                    ),
                )
                return
            logger.info(
                "watcher.settled_by_earlier",
                op_id=op.op_id,
                tx_hash=handle.tx_hash,
                attempt=index + 1,
            )
            break
        self._transition(op, WatchState.CONFIRMED)

    # ── Internals ────────────────────────────────────────────────

    def _supersede(self, op: RelayOperation, status: AttemptStatus, error: str | None = None) -> None:
        op.attempts[-1] = op.attempts[-1].superseded(status, error)

    def _mark_attempt(self, op: RelayOperation, tx_hash: str, status: AttemptStatus) -> None:
        for i, attempt in enumerate(op.attempts):
            if attempt.tx_hash == tx_hash:
                op.attempts[i] = attempt.superseded(status)

    def _fail(self, op: RelayOperation, exc: MetaTxError) -> None:
        op.error = exc
        if self._metrics and exc.code == AllRelayersExhausted.code:
            self._metrics.record_error(exc.code)
        logger.warning(
            "watcher.failed",
            op_id=op.op_id,
            identity=op.identity,
            nonce=op.nonce,
            error=exc.code,
            reason=exc.reason,
        )
        self._transition(op, WatchState.FAILED)

    def _transition(self, op: RelayOperation, new_state: WatchState) -> None:
        """Execute a state transition with validation.

        Raises
        ------
        InvalidTransitionError
            If the transition is not valid.
        """
        current = op.state
        valid_next = VALID_TRANSITIONS.get(current, set())

        if new_state not in valid_next:
            raise InvalidTransitionError(
                f"Cannot transition from {current.value} to {new_state.value}. "
                f"Valid transitions: {[s.value for s in valid_next]}"
            )

        op.state = new_state
        op.state_history.append((new_state, time.monotonic()))
        if op.is_terminal:
            op.completed_at = time.monotonic()
            if self._metrics and new_state is WatchState.CONFIRMED:
                self._metrics.record_confirmation(
                    op.outcome.success if op.outcome else True, op.elapsed_seconds
                )

        logger.debug(
            "watcher.state_transition",
            op_id=op.op_id,
            from_state=current.value,
            to_state=new_state.value,
        )


# ── Exceptions ───────────────────────────────────────────────────────


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""
