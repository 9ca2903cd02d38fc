"""metatx-relay — fees package."""

from .quoter import FeeQuoter, FeeQuoterConfig, QuoteSource, amount_out

__all__ = [
    "FeeQuoter",
    "FeeQuoterConfig",
    "QuoteSource",
    "amount_out",
]
