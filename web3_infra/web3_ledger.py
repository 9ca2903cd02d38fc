"""Web3Ledger — ``Ledger`` over JSON-RPC against the forwarder contract.

Contracts touched:
- Forwarder: ``getNonce``, ``execute`` and the ``Forwarded`` event
- Uniswap-V2 pair (native/fee token): ``getReserves``, ``token0``
- Uniswap-V2 router: ``swapExactTokensForETH``
- Fee token (ERC-20): ``allowance`` and ``approve`` for the router

Transactions are signed locally with ``eth_account``; the transactor key
is loaded per signature through ``key_access``.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import structlog
from eth_account import Account
from web3 import AsyncWeb3, Web3
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3Exception
from web3.logs import DISCARD

from core.errors import (
    SignatureMismatch,
    SubmissionRejected,
    SubmissionTimeout,
    UnauthorizedRelayer,
)
from forwarder.hashing import canonical_hash, recover_signer
from forwarder.nonce_store import check_nonce
from forwarder.verifier import append_sender
from models.fees import LiquidityPoolState
from models.forward_request import ForwardRequest, SignedForwardRequest, checksum
from models.relay import ExecutionOutcome, SubmissionHandle
from web3_infra.keys import KeyProvider, key_access
from web3_infra.ledger import Ledger

logger = structlog.get_logger("web3_infra.web3_ledger")

_REQUEST_TUPLE = {
    "components": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "relayer", "type": "address"},
        {"name": "gas", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "data", "type": "bytes"},
    ],
    "name": "req",
    "type": "tuple",
}

FORWARDER_ABI: list[dict[str, Any]] = [
    {
        "inputs": [{"name": "from", "type": "address"}],
        "name": "getNonce",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [_REQUEST_TUPLE, {"name": "signature", "type": "bytes"}],
        "name": "verify",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [_REQUEST_TUPLE, {"name": "signature", "type": "bytes"}],
        "name": "execute",
        "outputs": [{"name": "", "type": "bool"}, {"name": "", "type": "bytes"}],
        "stateMutability": "payable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": False, "name": "nonce", "type": "uint256"},
            {"indexed": False, "name": "success", "type": "bool"},
            {"indexed": False, "name": "returnData", "type": "bytes"},
        ],
        "name": "Forwarded",
        "type": "event",
    },
]

PAIR_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "getReserves",
        "outputs": [
            {"name": "reserve0", "type": "uint112"},
            {"name": "reserve1", "type": "uint112"},
            {"name": "blockTimestampLast", "type": "uint32"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "token0",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
]

ROUTER_ABI: list[dict[str, Any]] = [
    {
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "path", "type": "address[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "name": "swapExactTokensForETH",
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

ERC20_ABI: list[dict[str, Any]] = [
    {
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "approve",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

MAX_UINT256 = 2**256 - 1


def request_tuple(request: ForwardRequest) -> tuple:
    """ABI tuple for the forwarder's ``ForwardRequest`` struct."""
    return (
        request.from_,
        request.to,
        request.relayer,
        request.gas,
        request.nonce,
        request.data,
    )


def outer_gas_limit(request: ForwardRequest, overhead_gas: int) -> int:
    """Gas limit for ``execute`` so the inner call still gets ``request.gas``.

    Only 63/64 of the remaining gas is forwarded to a sub-call.
    """
    return request.gas * 64 // 63 + overhead_gas


class Web3Ledger(Ledger):
    """Forwarder contract reached through an ``AsyncWeb3`` instance.

    Parameters
    ----------
    w3:
        Connected ``AsyncWeb3``.
    forwarder_address / pool_address / router_address:
        Deployed contracts.
    wrapped_native / fee_token:
        Pool legs; the pair is ordered by ``token0``.
    transactor:
        Key of the account paying gas.
    overhead_gas:
        Gas the forwarder spends around the inner call.
    swap_deadline_s:
        Deadline for fee swaps, relative to now.
    receipt_timeout_s:
        How long to wait for the receipts of our own approve and swap
        transactions.
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        forwarder_address: str,
        pool_address: str,
        router_address: str,
        wrapped_native: str,
        fee_token: str,
        transactor: KeyProvider,
        chain_id: int,
        overhead_gas: int = 50_000,
        swap_deadline_s: int = 300,
        receipt_timeout_s: float = 120.0,
    ) -> None:
        self._w3 = w3
        self._forwarder = w3.eth.contract(address=checksum(forwarder_address), abi=FORWARDER_ABI)
        self._pool = w3.eth.contract(address=checksum(pool_address), abi=PAIR_ABI)
        self._router = w3.eth.contract(address=checksum(router_address), abi=ROUTER_ABI)
        self._wrapped_native = checksum(wrapped_native)
        self._fee_token = checksum(fee_token)
        self._fee_token_contract = w3.eth.contract(address=self._fee_token, abi=ERC20_ABI)
        self._transactor = transactor
        self._transactor_address = transactor.address
        self._chain_id = chain_id
        self._overhead_gas = overhead_gas
        self._swap_deadline_s = swap_deadline_s
        self._receipt_timeout_s = receipt_timeout_s
        # Serialises account-nonce allocation for our own transactions.
        self._send_lock = asyncio.Lock()

    @property
    def forwarder_address(self) -> str:
        return self._forwarder.address

    # ── Reads ────────────────────────────────────────────────────

    async def get_nonce(self, identity: str) -> int:
        return int(await self._forwarder.functions.getNonce(checksum(identity)).call())

    async def estimate_inner_gas(self, request: ForwardRequest) -> int:
        try:
            return int(
                await self._w3.eth.estimate_gas(
                    {
                        "from": self._forwarder.address,
                        "to": request.to,
                        "data": Web3.to_hex(append_sender(request.data, request.from_)),
                    }
                )
            )
        except (Web3Exception, ValueError) as exc:
            # A reverting inner call shows up as RevertedExecution later on.
            logger.warning(
                "web3_ledger.estimate_failed",
                identity=request.from_,
                nonce=request.nonce,
                error=str(exc),
            )
            return 0

    async def gas_price(self) -> int:
        return int(await self._w3.eth.gas_price)

    async def get_pool_state(self) -> LiquidityPoolState:
        reserve0, reserve1, _ = await self._pool.functions.getReserves().call()
        token0 = checksum(await self._pool.functions.token0().call())
        if token0 == self._wrapped_native:
            reserve_in, reserve_out = int(reserve0), int(reserve1)
        else:
            reserve_in, reserve_out = int(reserve1), int(reserve0)
        return LiquidityPoolState(
            reserve_in=reserve_in,
            reserve_out=reserve_out,
            fetched_at=time.time(),
        )

    async def get_outcome(self, handle: SubmissionHandle) -> ExecutionOutcome | None:
        try:
            receipt = await self._w3.eth.get_transaction_receipt(handle.tx_hash)
        except TransactionNotFound:
            return None
        if receipt is None:
            return None

        if receipt["status"] == 0:
            return ExecutionOutcome(
                tx_hash=handle.tx_hash,
                success=False,
                gas_used=int(receipt["gasUsed"]),
                block_number=int(receipt["blockNumber"]),
                rejected_reason="forwarder_reverted",
            )

        events = self._forwarder.events.Forwarded().process_receipt(receipt, errors=DISCARD)
        success, return_data = True, b""
        if events:
            args = events[0]["args"]
            success, return_data = bool(args["success"]), bytes(args["returnData"])
        return ExecutionOutcome(
            tx_hash=handle.tx_hash,
            success=success,
            return_data=return_data,
            gas_used=int(receipt["gasUsed"]),
            block_number=int(receipt["blockNumber"]),
        )

    # ── Writes ───────────────────────────────────────────────────

    async def preflight(self, signed: SignedForwardRequest, sender: str) -> None:
        """Run the forwarder's checks against chain state without sending."""
        request = signed.request
        signer = recover_signer(canonical_hash(request), signed.signature)
        if signer != request.from_:
            raise SignatureMismatch(
                f"signature recovers to {signer}, not {request.from_}",
                identity=request.from_,
                nonce=request.nonce,
            )
        check_nonce(request.from_, request.nonce, await self.get_nonce(request.from_))
        if checksum(sender) != request.relayer:
            raise UnauthorizedRelayer(
                f"sender {sender} is not the named relayer {request.relayer}",
                identity=request.from_,
                nonce=request.nonce,
            )

    async def submit(self, signed: SignedForwardRequest, sender: str) -> SubmissionHandle:
        if checksum(sender) != self._transactor_address:
            raise SubmissionRejected(
                f"ledger signs as {self._transactor_address}, not {sender}",
                identity=signed.identity,
                nonce=signed.nonce,
            )
        await self.preflight(signed, sender)

        call = self._forwarder.functions.execute(request_tuple(signed.request), signed.signature)
        tx_hash = await self._send(
            call,
            gas=outer_gas_limit(signed.request, self._overhead_gas),
            identity=signed.identity,
            nonce=signed.nonce,
        )
        logger.info(
            "web3_ledger.submitted",
            tx_hash=tx_hash,
            identity=signed.identity,
            nonce=signed.nonce,
        )
        return SubmissionHandle(
            tx_hash=tx_hash,
            relayer=self._transactor_address,
            identity=signed.identity,
            nonce=signed.nonce,
        )

    async def swap_to_native(self, amount_in: int, min_amount_out: int, recipient: str) -> str:
        await self._ensure_router_allowance(amount_in)

        call = self._router.functions.swapExactTokensForETH(
            amount_in,
            min_amount_out,
            [self._fee_token, self._wrapped_native],
            checksum(recipient),
            int(time.time()) + self._swap_deadline_s,
        )
        tx_hash = await self._send(call, gas=None)
        logger.info(
            "web3_ledger.swap_submitted",
            tx_hash=tx_hash,
            amount_in=amount_in,
            min_amount_out=min_amount_out,
        )
        await self._wait_mined(tx_hash, "swap")
        return tx_hash

    async def _ensure_router_allowance(self, amount: int) -> None:
        allowance = await self._fee_token_contract.functions.allowance(
            self._transactor_address, self._router.address
        ).call()
        if int(allowance) >= amount:
            return
        call = self._fee_token_contract.functions.approve(self._router.address, MAX_UINT256)
        tx_hash = await self._send(call, gas=None)
        logger.info(
            "web3_ledger.approve_submitted",
            tx_hash=tx_hash,
            spender=self._router.address,
            allowance=int(allowance),
        )
        await self._wait_mined(tx_hash, "approve")

    async def _wait_mined(self, tx_hash: str, what: str) -> None:
        """Wait for the receipt of one of our own transactions.

        Raises
        ------
        SubmissionTimeout
            If no receipt shows up within ``receipt_timeout_s``.
        SubmissionRejected
            If the transaction reverted.
        """
        try:
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._receipt_timeout_s
            )
        except TimeExhausted as exc:
            raise SubmissionTimeout(
                f"{what} transaction {tx_hash} not mined within {self._receipt_timeout_s:.0f}s"
            ) from exc
        if receipt["status"] != 1:
            raise SubmissionRejected(f"{what} transaction {tx_hash} reverted")

    async def _send(
        self,
        call: Any,
        gas: int | None,
        identity: str | None = None,
        nonce: int | None = None,
    ) -> str:
        """Build, sign and broadcast *call* from the transactor account."""
        async with self._send_lock:
            try:
                params: dict[str, Any] = {
                    "from": self._transactor_address,
                    "chainId": self._chain_id,
                    "nonce": await self._w3.eth.get_transaction_count(
                        self._transactor_address, "pending"
                    ),
                    "gasPrice": await self._w3.eth.gas_price,
                }
                if gas is not None:
                    params["gas"] = gas
                tx = await call.build_transaction(params)
                with key_access(self._transactor) as key:
                    raw = Account.sign_transaction(tx, key).raw_transaction
                sent = await self._w3.eth.send_raw_transaction(raw)
            except (Web3Exception, ValueError) as exc:
                raise SubmissionRejected(
                    f"ledger refused transaction: {exc}",
                    identity=identity,
                    nonce=nonce,
                ) from exc
        return Web3.to_hex(sent)
