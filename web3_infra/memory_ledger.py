"""MemoryLedger — ``Ledger`` backed by an in-process ``ForwardVerifier``.

Used for paper mode and tests.  Provides:
- Preflight verification on submit (mirrors ``eth_call`` before sending)
- Optional manual mining, to hold transactions pending
- A constant-product pool that fee swaps actually move
- Injectable rejections for underpriced / malformed submissions
"""

from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass

import structlog
from web3 import Web3

from core.errors import MetaTxError, SubmissionRejected
from fees.quoter import amount_out
from forwarder.verifier import ForwardVerifier, append_sender
from models.fees import LiquidityPoolState
from models.forward_request import ForwardRequest, SignedForwardRequest, checksum
from models.relay import ExecutionOutcome, SubmissionHandle
from web3_infra.ledger import Ledger

logger = structlog.get_logger("web3_infra.memory_ledger")


@dataclass
class _PendingTx:
    handle: SubmissionHandle
    signed: SignedForwardRequest
    sender: str


class MemoryLedger(Ledger):
    """Paper ledger.

    Parameters
    ----------
    verifier:
        Forwarder logic that executes mined transactions.
    reserve_native / reserve_token:
        Initial pool reserves (wei).
    gas_price:
        Price per gas unit reported to quoters.
    auto_mine:
        When True, transactions execute as part of ``submit``.
        When False they stay pending until ``mine()``.
    """

    def __init__(
        self,
        verifier: ForwardVerifier | None = None,
        reserve_native: int = 0,
        reserve_token: int = 0,
        gas_price: int = 30 * 10**9,
        auto_mine: bool = True,
        pool_fee_numerator: int = 997,
        pool_fee_denominator: int = 1000,
    ) -> None:
        self.verifier = verifier or ForwardVerifier()
        self._reserve_native = reserve_native
        self._reserve_token = reserve_token
        self._gas_price = gas_price
        self.auto_mine = auto_mine
        self._fee_num = pool_fee_numerator
        self._fee_den = pool_fee_denominator

        self._pending: list[_PendingTx] = []
        self._outcomes: dict[str, ExecutionOutcome] = {}
        self._block_number = 0
        self._tx_counter = itertools.count()
        self._reject_next: str | None = None
        self._fail_swaps = False
        self._lock = asyncio.Lock()

        self.submissions: list[SubmissionHandle] = []
        self.native_received: dict[str, int] = {}

    # ── Test / paper controls ────────────────────────────────────

    def reject_next(self, reason: str = "transaction underpriced") -> None:
        """Refuse the next submission before execution."""
        self._reject_next = reason

    def fail_swaps(self, enabled: bool = True) -> None:
        self._fail_swaps = enabled

    def set_pool(self, reserve_native: int, reserve_token: int) -> None:
        self._reserve_native = reserve_native
        self._reserve_token = reserve_token

    def set_gas_price(self, gas_price: int) -> None:
        self._gas_price = gas_price

    @property
    def pending(self) -> list[SubmissionHandle]:
        return [p.handle for p in self._pending]

    async def mine(self, tx_hash: str | None = None) -> list[ExecutionOutcome]:
        """Execute pending transactions (all, or just *tx_hash*) in order."""
        async with self._lock:
            if tx_hash is None:
                batch, self._pending = self._pending, []
            else:
                batch = [p for p in self._pending if p.handle.tx_hash == tx_hash]
                self._pending = [p for p in self._pending if p.handle.tx_hash != tx_hash]

        outcomes = []
        for tx in batch:
            outcomes.append(await self._execute(tx))
        return outcomes

    # ── Ledger API ───────────────────────────────────────────────

    async def get_nonce(self, identity: str) -> int:
        return self.verifier.get_nonce(identity)

    async def estimate_inner_gas(self, request: ForwardRequest) -> int:
        target = self.verifier.get_target(request.to)
        if target is None:
            return 0
        return target.estimate_gas(append_sender(request.data, request.from_))

    async def submit(self, signed: SignedForwardRequest, sender: str) -> SubmissionHandle:
        if self._reject_next is not None:
            reason, self._reject_next = self._reject_next, None
            raise SubmissionRejected(
                reason, identity=signed.identity, nonce=signed.nonce
            )

        # Preflight: the same checks the forwarder runs, without side effects.
        self.verifier.authorize(signed.request, signed.signature, sender)

        tx_hash = Web3.to_hex(
            Web3.keccak(
                signed.signature + checksum(sender).encode() + str(next(self._tx_counter)).encode()
            )
        )
        handle = SubmissionHandle(
            tx_hash=tx_hash,
            relayer=checksum(sender),
            identity=signed.identity,
            nonce=signed.nonce,
        )
        self.submissions.append(handle)
        tx = _PendingTx(handle=handle, signed=signed, sender=checksum(sender))

        logger.info(
            "memory_ledger.submitted",
            tx_hash=tx_hash,
            identity=signed.identity,
            nonce=signed.nonce,
            relayer=handle.relayer,
        )

        if self.auto_mine:
            await self._execute(tx)
        else:
            async with self._lock:
                self._pending.append(tx)
        return handle

    async def get_outcome(self, handle: SubmissionHandle) -> ExecutionOutcome | None:
        return self._outcomes.get(handle.tx_hash)

    async def get_pool_state(self) -> LiquidityPoolState:
        return LiquidityPoolState(
            reserve_in=self._reserve_native,
            reserve_out=self._reserve_token,
            fetched_at=time.time(),
        )

    async def gas_price(self) -> int:
        return self._gas_price

    async def swap_to_native(self, amount_in: int, min_amount_out: int, recipient: str) -> str:
        if self._fail_swaps:
            raise SubmissionRejected("swap reverted: pool locked")

        out = amount_out(
            amount_in, self._reserve_token, self._reserve_native, self._fee_num, self._fee_den
        )
        if out < min_amount_out:
            raise SubmissionRejected(
                f"swap output {out} below minimum {min_amount_out}"
            )
        self._reserve_token += amount_in
        self._reserve_native -= out
        key = checksum(recipient)
        self.native_received[key] = self.native_received.get(key, 0) + out
        self._block_number += 1

        swap_hash = Web3.to_hex(
            Web3.keccak(text=f"swap:{key}:{amount_in}:{next(self._tx_counter)}")
        )
        logger.info(
            "memory_ledger.swapped",
            tx_hash=swap_hash,
            amount_in=amount_in,
            amount_out=out,
        )
        return swap_hash

    # ── Internals ────────────────────────────────────────────────

    async def _execute(self, tx: _PendingTx) -> ExecutionOutcome:
        self._block_number += 1
        request = tx.signed.request
        try:
            result = await self.verifier.execute(request, tx.signed.signature, tx.sender)
        except MetaTxError as exc:
            # Forwarder reverted the whole transaction; nothing executed.
            outcome = ExecutionOutcome(
                tx_hash=tx.handle.tx_hash,
                success=False,
                block_number=self._block_number,
                rejected_reason=exc.code,
            )
            logger.warning(
                "memory_ledger.forwarder_reverted",
                tx_hash=tx.handle.tx_hash,
                reason=exc.code,
            )
        else:
            outcome = ExecutionOutcome(
                tx_hash=tx.handle.tx_hash,
                success=result.success,
                return_data=result.return_data,
                gas_used=request.gas,
                block_number=self._block_number,
            )
        self._outcomes[tx.handle.tx_hash] = outcome
        return outcome
