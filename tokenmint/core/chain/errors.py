"""
Chain access errors.
"""

from typing import Any, Optional


class ChainError(Exception):
    """Base exception for chain access errors."""
    pass


class RpcError(ChainError):
    """JSON-RPC call failed at the transport or returned an error object."""

    def __init__(self, message: str, method: Optional[str] = None, payload: Any = None):
        super().__init__(message)
        self.method = method
        self.payload = payload


class TransactionRevertError(ChainError):
    """Transaction was included but reverted."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class TransactionTimeoutError(ChainError):
    """Receipt was not observed before the deadline."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash
