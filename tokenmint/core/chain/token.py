"""
Launch token and payment stablecoin contract surfaces.
"""

import asyncio
from typing import Sequence, Tuple

from . import abi
from .client import ChainClient


class TokenContract:
    """Read views and calldata builders for a mintable launch token."""

    def __init__(self, chain: ChainClient, address: str):
        self.chain = chain
        self.address = address

    async def mint_amount(self) -> int:
        return int(await self.chain.read_contract(self.address, abi.MINT_AMOUNT))

    async def remaining_supply(self) -> int:
        return int(await self.chain.read_contract(self.address, abi.REMAINING_SUPPLY))

    async def supply_snapshot(self) -> Tuple[int, int]:
        """(remaining_supply, mint_amount) read concurrently."""
        remaining, per_mint = await asyncio.gather(self.remaining_supply(), self.mint_amount())
        return remaining, per_mint

    async def has_minted(self, key: str) -> bool:
        return bool(
            await self.chain.read_contract(self.address, abi.HAS_MINTED, [key], returns=("bool",))
        )

    @staticmethod
    def mint_calldata(recipient: str, key: str) -> str:
        return abi.encode_call(abi.MINT, [recipient, key])

    @staticmethod
    def batch_mint_calldata(recipients: Sequence[str], keys: Sequence[str]) -> str:
        if len(recipients) != len(keys):
            raise ValueError("recipients and keys must have the same length")
        return abi.encode_call(abi.BATCH_MINT, [list(recipients), list(keys)])


def transfer_with_authorization_calldata(
    *,
    from_address: str,
    to_address: str,
    value: int,
    valid_after: int,
    valid_before: int,
    nonce: str,
    v: int,
    r: str,
    s: str,
) -> str:
    """EIP-3009 ``transferWithAuthorization`` calldata."""
    return abi.encode_call(
        abi.TRANSFER_WITH_AUTHORIZATION,
        [from_address, to_address, value, valid_after, valid_before, nonce, v, r, s],
    )
