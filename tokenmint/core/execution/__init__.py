"""
Transaction execution helpers

- NonceAllocator: per-account nonce issuance with chain resync
- Fee policy: EIP-1559 fee quotes and gas limits for queue transactions
"""

from .gas import FeeQuote, batch_mint_gas_limit, jittered_priority_fee, quote_fees
from .nonce_manager import NonceAllocator, NonceSource, NonceState, NonceStrategy

__all__ = [
    "NonceAllocator",
    "NonceSource",
    "NonceState",
    "NonceStrategy",
    "FeeQuote",
    "quote_fees",
    "jittered_priority_fee",
    "batch_mint_gas_limit",
]
