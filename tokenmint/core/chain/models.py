"""
Chain data models.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional


def _hex_to_int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    return int(value, 16)


@dataclass
class Block:
    """Subset of a block header used for fee calculation."""
    number: int
    base_fee_per_gas: Optional[int] = None
    timestamp: int = 0

    @classmethod
    def from_rpc(cls, raw: Dict[str, Any]) -> "Block":
        base_fee = raw.get("baseFeePerGas")
        return cls(
            number=_hex_to_int(raw.get("number")),
            base_fee_per_gas=_hex_to_int(base_fee) if base_fee is not None else None,
            timestamp=_hex_to_int(raw.get("timestamp")),
        )


@dataclass
class Receipt:
    """Outcome of an included transaction."""
    tx_hash: str
    success: bool
    block_number: int
    gas_used: int
    effective_gas_price: int = 0
    block_hash: Optional[str] = None

    @property
    def cost_wei(self) -> int:
        return self.gas_used * self.effective_gas_price

    @classmethod
    def from_rpc(cls, raw: Dict[str, Any]) -> "Receipt":
        # status 0x1 = success, 0x0 = revert
        return cls(
            tx_hash=raw["transactionHash"],
            success=_hex_to_int(raw.get("status"), default=1) == 1,
            block_number=_hex_to_int(raw.get("blockNumber")),
            gas_used=_hex_to_int(raw.get("gasUsed")),
            effective_gas_price=_hex_to_int(raw.get("effectiveGasPrice")),
            block_hash=raw.get("blockHash"),
        )
