"""
EIP-1559 fee policy for queue transactions.
"""

import random
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class FeeQuote:
    """Fee fields for one EIP-1559 transaction."""
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    base_fee_per_gas: int

    def estimated_cost_wei(self, gas_limit: int) -> int:
        return gas_limit * self.max_fee_per_gas


def jittered_priority_fee(
    base_priority_fee: int,
    jitter_percent: int,
    rng: Optional[random.Random] = None,
) -> int:
    """
    Priority fee raised by a random 0..jitter_percent-1 percent.

    Transactions in one payment burst get slightly different tips so they
    do not compete for the same slot ordering.
    """
    if jitter_percent <= 0:
        return base_priority_fee
    jitter = (rng or random).randrange(jitter_percent)
    return base_priority_fee + (base_priority_fee * jitter) // 100


def quote_fees(
    base_fee_per_gas: Optional[int],
    *,
    priority_fee: int,
    multiplier_percent: int,
    default_base_fee: int,
) -> FeeQuote:
    """Max fee = base fee x multiplier_percent / 100 + priority fee."""
    base_fee = base_fee_per_gas if base_fee_per_gas else default_base_fee
    max_fee = (base_fee * multiplier_percent) // 100 + priority_fee
    return FeeQuote(
        max_fee_per_gas=max_fee,
        max_priority_fee_per_gas=priority_fee,
        base_fee_per_gas=base_fee,
    )


def batch_mint_gas_limit(recipients: int, *, single_gas: int, base_gas: int, per_recipient_gas: int) -> int:
    """Gas limit for a mint call covering ``recipients`` addresses."""
    if recipients == 1:
        return single_gas
    return base_gas + per_recipient_gas * recipients
