"""FeeQuoter — converts a request's gas cost into a fee-token amount.

Uses the constant-product (x·y=k) output formula with the pool fee
applied to the input side::

    gas_used       = gas + forwarder_overhead + swap_overhead
    cost_in_native = gas_used * gas_price
    amount_out     = cost_in_native * num * reserve_out
                     // (reserve_in * den + cost_in_native * num)

With ``num/den = 997/1000`` this is Uniswap-V2's ``getAmountOut``.
Floor division keeps ``(reserve_in + in) * (reserve_out - out)`` at or
above the pre-quote product.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Protocol

import structlog

from core.errors import LiquidityUnavailable, QuoteStale
from models.fees import FeeQuote, LiquidityPoolState

logger = structlog.get_logger("fees.quoter")


class QuoteSource(Protocol):
    """Where live pricing inputs come from (a ``Ledger`` satisfies this)."""

    async def get_pool_state(self) -> LiquidityPoolState: ...

    async def gas_price(self) -> int: ...


@dataclass(frozen=True)
class FeeQuoterConfig:
    """Configuration for fee quoting."""

    # Gas the forwarder itself burns around the inner call
    forwarder_overhead_gas: int = 50_000

    # Gas for swapping the collected fee back to native
    swap_overhead_gas: int = 120_000

    # Pool fee as a fraction: 997/1000 leaves 0.3% in the pool
    fee_numerator: int = 997
    fee_denominator: int = 1000

    # Quotes built on inputs older than this are rejected
    freshness_window_s: float = 30.0

    def __post_init__(self) -> None:
        if self.fee_denominator <= 0 or not 0 < self.fee_numerator <= self.fee_denominator:
            raise ValueError("fee fraction must satisfy 0 < numerator <= denominator")
        if self.freshness_window_s <= 0:
            raise ValueError("freshness_window_s must be positive")

    @classmethod
    def from_settings(cls, s) -> FeeQuoterConfig:
        return cls(
            forwarder_overhead_gas=s.FORWARDER_OVERHEAD_GAS,
            swap_overhead_gas=s.SWAP_OVERHEAD_GAS,
            fee_numerator=s.POOL_FEE_NUMERATOR,
            fee_denominator=s.POOL_FEE_DENOMINATOR,
            freshness_window_s=s.QUOTE_FRESHNESS_SECONDS,
        )


def amount_out(amount_in: int, reserve_in: int, reserve_out: int, num: int, den: int) -> int:
    """Constant-product output for *amount_in* after the pool fee."""
    if reserve_in <= 0 or reserve_out <= 0:
        raise LiquidityUnavailable(
            f"pool has an empty reserve (in={reserve_in}, out={reserve_out})"
        )
    amount_in_with_fee = amount_in * num
    return amount_in_with_fee * reserve_out // (reserve_in * den + amount_in_with_fee)


class FeeQuoter:
    """Stateless fee calculator; ``fetch_quote`` reads live inputs per call.

    Parameters
    ----------
    config:
        Overheads, pool fee fraction and freshness window.
    clock:
        Returns current Unix time; injectable for tests.
    """

    def __init__(
        self,
        config: FeeQuoterConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or FeeQuoterConfig()
        self._clock = clock

    @property
    def config(self) -> FeeQuoterConfig:
        return self._config

    def gas_used(self, gas: int) -> int:
        return gas + self._config.forwarder_overhead_gas + self._config.swap_overhead_gas

    def quote(
        self,
        gas: int,
        gas_price: int,
        pool: LiquidityPoolState,
        quoted_at: float | None = None,
    ) -> FeeQuote:
        """Compute the transactor fee for a request with gas budget *gas*.

        Raises
        ------
        LiquidityUnavailable
            If either reserve is zero.
        QuoteStale
            If *quoted_at* (default: the pool snapshot time) is older
            than the freshness window.
        """
        if gas < 0 or gas_price < 0:
            raise ValueError("gas and gas_price must be non-negative")

        now = self._clock()
        as_of = pool.fetched_at if quoted_at is None else quoted_at
        age = now - as_of
        if age > self._config.freshness_window_s:
            raise QuoteStale(
                f"pricing inputs are {age:.1f}s old "
                f"(window {self._config.freshness_window_s:.1f}s)"
            )

        used = self.gas_used(gas)
        cost = used * gas_price
        fee = amount_out(
            cost,
            pool.reserve_in,
            pool.reserve_out,
            self._config.fee_numerator,
            self._config.fee_denominator,
        )
        return FeeQuote(
            gas_used=used,
            gas_price=gas_price,
            cost_in_native=cost,
            transactor_fee=fee,
            pool=pool,
            quoted_at=now,
        )

    async def fetch_quote(self, gas: int, source: QuoteSource) -> FeeQuote:
        """Quote against a freshly read pool snapshot and gas price."""
        pool = await source.get_pool_state()
        gas_price = await source.gas_price()
        quote = self.quote(gas, gas_price, pool)
        logger.debug(
            "fee_quoter.quoted",
            gas=gas,
            gas_price=gas_price,
            cost_in_native=quote.cost_in_native,
            transactor_fee=quote.transactor_fee,
            reserve_in=pool.reserve_in,
            reserve_out=pool.reserve_out,
        )
        return quote
