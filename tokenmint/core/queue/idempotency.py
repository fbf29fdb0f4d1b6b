"""
Deterministic mint idempotency keys.
"""

from eth_utils import keccak


def mint_idempotency_key(payer: str, timestamp_ms: int, token_address: str) -> str:
    """
    bytes32 key for one logical mint: keccak256("{payer}-{timestamp}-{token}").

    The same payer, timestamp and token always yield the same key, which the
    token contract and the queue both use to refuse a second mint.
    """
    preimage = f"{payer}-{int(timestamp_ms)}-{token_address}".encode("utf-8")
    return "0x" + keccak(preimage).hex()
