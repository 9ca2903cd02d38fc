"""Ledger — ABC for the execution environment behind the forwarder."""

from __future__ import annotations

from abc import ABC, abstractmethod

from models.fees import LiquidityPoolState
from models.forward_request import ForwardRequest, SignedForwardRequest
from models.relay import ExecutionOutcome, SubmissionHandle


class Ledger(ABC):
    """Abstract "submit transaction / query state" interface.

    Implementations:
    - ``MemoryLedger`` — in-process forwarder for tests and paper mode
    - ``Web3Ledger`` — forwarder contract over JSON-RPC

    Amounts are ``int`` wei.  Implementations MUST be async-safe.
    """

    @abstractmethod
    async def get_nonce(self, identity: str) -> int:
        """Next nonce the forwarder expects from *identity*."""

    @abstractmethod
    async def estimate_inner_gas(self, request: ForwardRequest) -> int:
        """Gas the inner call of *request* needs, as seen from the forwarder."""

    @abstractmethod
    async def submit(self, signed: SignedForwardRequest, sender: str) -> SubmissionHandle:
        """Send ``execute(request, signature)`` from *sender*.

        Raises ``SubmissionRejected`` if the ledger refuses the
        transaction before execution (nonce untouched), or a
        verification error if the forwarder would reject it.
        """

    @abstractmethod
    async def get_outcome(self, handle: SubmissionHandle) -> ExecutionOutcome | None:
        """Confirmed outcome, or ``None`` while still pending."""

    @abstractmethod
    async def get_pool_state(self) -> LiquidityPoolState:
        """Fresh reserves of the native/fee-token pool."""

    @abstractmethod
    async def gas_price(self) -> int:
        """Current price per gas unit in wei."""

    @abstractmethod
    async def swap_to_native(self, amount_in: int, min_amount_out: int, recipient: str) -> str:
        """Swap collected fee tokens back to native.

        Returns the hash of the swap once it is confirmed; raises if the
        swap reverted or could not be confirmed.
        """
