"""
Chain access layer

- ChainClient: JSON-RPC reads, broadcast and receipt polling
- WalletClient: signs EIP-1559 transactions for one account
- TokenContract: launch token views and calldata
"""

from .client import ChainClient
from .errors import ChainError, RpcError, TransactionRevertError, TransactionTimeoutError
from .models import Block, Receipt
from .token import TokenContract, transfer_with_authorization_calldata
from .wallet import WalletClient

__all__ = [
    "ChainClient",
    "WalletClient",
    "TokenContract",
    "transfer_with_authorization_calldata",
    "Block",
    "Receipt",
    "ChainError",
    "RpcError",
    "TransactionRevertError",
    "TransactionTimeoutError",
]
