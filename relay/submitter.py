"""RelaySubmitter — the relay operator's side of a meta-transaction.

For every signed request naming this operator as relayer:

1. quote the transactor fee from a fresh pool snapshot;
2. check the request's gas budget covers the inner call;
3. submit ``execute(request, signature)`` to the ledger;
4. track confirmation in an independently scheduled task;
5. once confirmed, optionally swap the collected fee back to native.

A failed fee swap is logged and reported as ``fee_recovered=False``; it
never undoes the forwarded call, which is already final on the ledger.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass

import structlog

from core.errors import (
    InsufficientGasBudget,
    MetaTxError,
    RevertedExecution,
    SubmissionRejected,
    SubmissionTimeout,
    UnauthorizedRelayer,
    error_from_dict,
)
from core.logger import request_context
from fees.quoter import FeeQuoter
from models.fees import FeeQuote
from models.forward_request import SignedForwardRequest, checksum
from models.relay import ExecutionOutcome, SubmissionHandle, SubmissionResult
from monitoring.metrics import RelayMetrics
from web3_infra.ledger import Ledger

logger = structlog.get_logger("relay.submitter")

_BPS = 10_000


@dataclass(frozen=True)
class SubmitterConfig:
    """Configuration for the relay submitter."""

    # Confirmation deadline, measured from ledger acceptance
    confirmation_timeout_s: float = 180.0

    # Receipt polling interval
    poll_interval_s: float = 2.0

    # Swap collected fees back to native after confirmation
    swap_fees_to_native: bool = False

    # Minimum swap output as a fraction of the native outlay
    swap_slippage_bps: int = 100

    # Finished submissions kept for late `wait` calls
    finished_cache_size: int = 1024

    @classmethod
    def from_settings(cls, s) -> SubmitterConfig:
        return cls(
            confirmation_timeout_s=s.RELAY_TIMEOUT_SECONDS,
            poll_interval_s=s.CONFIRMATION_POLL_SECONDS,
            swap_fees_to_native=s.SWAP_FEES_TO_NATIVE,
            swap_slippage_bps=s.SWAP_SLIPPAGE_BPS,
        )


class RelaySubmitter:
    """Executes forward requests addressed to one relayer identity.

    Parameters
    ----------
    ledger:
        Execution environment to submit to.
    address:
        The identity this operator submits as; only requests naming it
        in ``relayer`` are accepted.
    quoter:
        Fee quoter; reads live pool state on every submission.
    """

    def __init__(
        self,
        ledger: Ledger,
        address: str,
        quoter: FeeQuoter | None = None,
        config: SubmitterConfig | None = None,
        metrics: RelayMetrics | None = None,
    ) -> None:
        self._ledger = ledger
        self._address = checksum(address)
        self._quoter = quoter or FeeQuoter()
        self._config = config or SubmitterConfig()
        self._metrics = metrics

        self._locks: dict[str, asyncio.Lock] = {}
        # identity -> handle of its unconfirmed transaction
        self._inflight: dict[str, SubmissionHandle] = {}
        self._inflight_signatures: dict[str, bytes] = {}
        self._tracking: dict[str, asyncio.Task[SubmissionResult]] = {}
        # tx_hash -> finished tracking task, oldest first
        self._finished: OrderedDict[str, asyncio.Task[SubmissionResult]] = OrderedDict()

    @property
    def address(self) -> str:
        return self._address

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    @property
    def tracking_count(self) -> int:
        """Submissions whose confirmation is still being tracked."""
        return len(self._tracking)

    # ── Public API ───────────────────────────────────────────────

    async def submit(self, signed: SignedForwardRequest) -> SubmissionHandle:
        """Accept *signed* for execution and return its ledger handle.

        Idempotent: re-submitting the identical signed request while it
        is in flight returns the existing handle.

        Raises
        ------
        UnauthorizedRelayer
            If the request names another relayer.
        LiquidityUnavailable, QuoteStale
            If no usable fee quote can be made.
        InsufficientGasBudget
            If ``request.gas`` cannot cover the inner call.
        SubmissionRejected
            If the ledger refuses the transaction, or another request
            from the same identity is still in flight.
        SignatureMismatch, NonceReplay, NonceGap
            If the forwarder would reject the request.
        """
        request = signed.request
        identity = request.from_
        log = logger.bind(identity=identity, nonce=request.nonce, relayer=self._address)

        try:
            if request.relayer != self._address:
                raise UnauthorizedRelayer(
                    f"request names relayer {request.relayer}, this operator is {self._address}",
                    identity=identity,
                    nonce=request.nonce,
                )

            key = identity.lower()
            lock = self._locks.setdefault(key, asyncio.Lock())
            async with lock:
                existing = self._inflight.get(key)
                if existing is not None:
                    if (
                        existing.nonce == request.nonce
                        and self._inflight_signatures.get(key) == signed.signature
                    ):
                        log.debug("submitter.idempotent_hit", tx_hash=existing.tx_hash)
                        return existing
                    raise SubmissionRejected(
                        f"nonce {existing.nonce} of {identity} is still in flight",
                        identity=identity,
                        nonce=request.nonce,
                    )

                quote = await self._quoter.fetch_quote(request.gas, self._ledger)

                needed = await self._ledger.estimate_inner_gas(request)
                if needed > request.gas:
                    raise InsufficientGasBudget(
                        f"inner call needs {needed} gas, request allows {request.gas}",
                        identity=identity,
                        nonce=request.nonce,
                    )

                handle = await self._ledger.submit(signed, self._address)
                self._inflight[key] = handle
                self._inflight_signatures[key] = signed.signature
        except MetaTxError as exc:
            self._record_error(exc)
            log.warning("submitter.rejected", error=exc.code, reason=exc.reason)
            raise

        if self._metrics:
            self._metrics.record_submission(self._address)
            self._metrics.record_fee(quote.transactor_fee)
        log.info(
            "submitter.submitted",
            tx_hash=handle.tx_hash,
            transactor_fee=quote.transactor_fee,
            cost_in_native=quote.cost_in_native,
        )

        # Tracking events carry the request fields
        with request_context(identity=identity, nonce=request.nonce, relayer=self._address):
            task = asyncio.create_task(
                self._track(handle, quote), name=f"track:{handle.tx_hash}"
            )
            task.add_done_callback(self._on_tracked)
        self._tracking[handle.tx_hash] = task
        return handle

    async def wait(self, handle: SubmissionHandle) -> SubmissionResult:
        """Wait for the tracked outcome of *handle*.

        Cancelling the waiter does not cancel tracking.

        Raises
        ------
        RevertedExecution, SubmissionTimeout, NonceReplay, ...
            Whatever the tracking task concluded.
        """
        task = self._tracking.get(handle.tx_hash) or self._finished.get(handle.tx_hash)
        if task is None:
            raise ValueError(f"transaction {handle.tx_hash} is not tracked")
        return await asyncio.shield(task)

    async def execute(self, signed: SignedForwardRequest) -> SubmissionResult:
        """Submit and wait for confirmation."""
        return await self.wait(await self.submit(signed))

    async def stop(self) -> None:
        """Stop tracking.  Submitted transactions are not affected."""
        tasks = list(self._tracking.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tracking.clear()
        self._finished.clear()
        self._inflight.clear()
        self._inflight_signatures.clear()
        logger.info("submitter.stopped", cancelled=len(tasks))

    # ── Tracking ─────────────────────────────────────────────────

    async def _track(self, handle: SubmissionHandle, quote: FeeQuote) -> SubmissionResult:
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self._config.confirmation_timeout_s
        try:
            outcome = await self._await_outcome(handle, deadline)
        finally:
            key = handle.identity.lower()
            if self._inflight.get(key) == handle:
                self._inflight.pop(key, None)
                self._inflight_signatures.pop(key, None)

        if self._metrics:
            self._metrics.record_confirmation(outcome.success, loop.time() - started)

        if outcome.rejected_reason is not None:
            raise error_from_dict(
                {
                    "error": outcome.rejected_reason,
                    "reason": f"forwarder reverted transaction {handle.tx_hash}",
                    "identity": handle.identity,
                    "nonce": handle.nonce,
                }
            )
        if not outcome.success:
            raise RevertedExecution(
                "inner call failed; nonce consumed",
                identity=handle.identity,
                nonce=handle.nonce,
                return_data=outcome.return_data,
                tx_hash=handle.tx_hash,
            )

        fee_recovered = False
        if self._config.swap_fees_to_native and quote.transactor_fee > 0:
            fee_recovered = await self._recover_fee(handle, quote)

        return SubmissionResult(
            success=True,
            return_data=outcome.return_data,
            handle=handle,
            transactor_fee=quote.transactor_fee,
            fee_recovered=fee_recovered,
        )

    async def _await_outcome(self, handle: SubmissionHandle, deadline: float) -> ExecutionOutcome:
        loop = asyncio.get_running_loop()
        while True:
            try:
                outcome = await self._ledger.get_outcome(handle)
            except Exception as exc:
                # Transport trouble; keep polling until the deadline.
                logger.warning(
                    "submitter.outcome_query_failed",
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
                raise SubmissionTimeout(
                    f"no confirmation for {handle.tx_hash} "
                    f"within {self._config.confirmation_timeout_s:.0f}s",
                    identity=handle.identity,
                    nonce=handle.nonce,
                )
            await asyncio.sleep(min(self._config.poll_interval_s, remaining))

    async def _recover_fee(self, handle: SubmissionHandle, quote: FeeQuote) -> bool:
        min_out = quote.cost_in_native * (_BPS - self._config.swap_slippage_bps) // _BPS
        try:
            swap_hash = await self._ledger.swap_to_native(
                quote.transactor_fee, min_out, self._address
            )
        except Exception:
            logger.exception(
                "submitter.fee_swap_failed",
                tx_hash=handle.tx_hash,
                transactor_fee=quote.transactor_fee,
                min_amount_out=min_out,
            )
            return False
        logger.info(
            "submitter.fee_recovered",
            tx_hash=handle.tx_hash,
            swap_tx_hash=swap_hash,
            transactor_fee=quote.transactor_fee,
        )
        return True

    def _on_tracked(self, task: asyncio.Task[SubmissionResult]) -> None:
        tx_hash = task.get_name().removeprefix("track:")
        if self._tracking.get(tx_hash) is task:
            del self._tracking[tx_hash]
        if task.cancelled():
            return

        self._finished[tx_hash] = task
        while len(self._finished) > self._config.finished_cache_size:
            self._finished.popitem(last=False)

        exc = task.exception()
        if exc is None:
            result = task.result()
            logger.info(
                "submitter.confirmed",
                tx_hash=result.handle.tx_hash,
                identity=result.handle.identity,
                nonce=result.handle.nonce,
                fee_recovered=result.fee_recovered,
            )
        elif isinstance(exc, MetaTxError):
            self._record_error(exc)
            logger.warning(
                "submitter.failed",
                error=exc.code,
                identity=exc.identity,
                nonce=exc.nonce,
                reason=exc.reason,
            )
        else:
            logger.error("submitter.tracking_error", error=str(exc))

    def _record_error(self, exc: MetaTxError) -> None:
        if self._metrics:
            self._metrics.record_error(exc.code)
