"""Fee models — pool snapshot and the resulting quote (all amounts in wei)."""

from __future__ import annotations

import time

from pydantic import BaseModel, ConfigDict, Field


class LiquidityPoolState(BaseModel):
    """Reserves of the native/fee-token pair at read time.

    ``reserve_in`` is the native side, ``reserve_out`` the fee token.
    Never cached: every quote works on a freshly fetched snapshot.
    """

    model_config = ConfigDict(frozen=True)

    reserve_in: int = Field(..., ge=0)
    reserve_out: int = Field(..., ge=0)
    fetched_at: float = Field(default_factory=time.time, description="Unix seconds")

    @property
    def product(self) -> int:
        return self.reserve_in * self.reserve_out


class FeeQuote(BaseModel):
    """Token-denominated fee covering a relayer's gas outlay."""

    model_config = ConfigDict(frozen=True)

    gas_used: int = Field(..., ge=0)
    gas_price: int = Field(..., ge=0)
    cost_in_native: int = Field(..., ge=0)
    transactor_fee: int = Field(..., ge=0, description="Fee token amount")
    pool: LiquidityPoolState
    quoted_at: float = Field(default_factory=time.time)
