"""
Signing wallet bound to a chain client.
"""

import logging
from typing import Any, Dict

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_utils import to_checksum_address

from .client import ChainClient


logger = logging.getLogger(__name__)


class WalletClient:
    """
    One externally-owned account that signs and broadcasts transactions.

    The caller always supplies the nonce; the wallet never reads or caches
    it, so nonce ownership stays with the allocator.
    """

    def __init__(self, chain: ChainClient, account: LocalAccount, chain_id: int):
        self.chain = chain
        self.account = account
        self.chain_id = chain_id

    @classmethod
    def from_private_key(cls, chain: ChainClient, private_key: str, chain_id: int) -> "WalletClient":
        return cls(chain, Account.from_key(private_key), chain_id)

    @property
    def address(self) -> str:
        return self.account.address

    def build_transaction(
        self,
        *,
        to: str,
        data: str,
        nonce: int,
        gas: int,
        max_fee_per_gas: int,
        max_priority_fee_per_gas: int,
        value: int = 0,
    ) -> Dict[str, Any]:
        return {
            "type": 2,
            "chainId": self.chain_id,
            "nonce": nonce,
            "to": to_checksum_address(to),
            "value": value,
            "data": data,
            "gas": gas,
            "maxFeePerGas": max_fee_per_gas,
            "maxPriorityFeePerGas": max_priority_fee_per_gas,
        }

    async def send_transaction(
        self,
        *,
        to: str,
        data: str,
        nonce: int,
        gas: int,
        max_fee_per_gas: int,
        max_priority_fee_per_gas: int,
        value: int = 0,
    ) -> str:
        """Sign an EIP-1559 transaction and broadcast it; returns the tx hash."""
        tx = self.build_transaction(
            to=to,
            data=data,
            nonce=nonce,
            gas=gas,
            max_fee_per_gas=max_fee_per_gas,
            max_priority_fee_per_gas=max_priority_fee_per_gas,
            value=value,
        )
        signed = self.account.sign_transaction(tx)
        tx_hash = await self.chain.send_raw_transaction(signed.raw_transaction)
        logger.info(f"Broadcast tx {tx_hash} (nonce={nonce}, to={tx['to']})")
        return tx_hash
