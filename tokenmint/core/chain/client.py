"""
JSON-RPC chain client.

Thin async wrapper over the handful of Ethereum JSON-RPC methods the
queues need. One instance is created at process start and shared by the
wallets and allocators bound to it.
"""

import asyncio
import itertools
import logging
import time
from typing import Any, List, Optional, Sequence, Tuple

import httpx
from eth_utils import encode_hex, to_checksum_address

from .abi import decode_result, encode_call
from .errors import RpcError, TransactionTimeoutError
from .models import Block, Receipt


logger = logging.getLogger(__name__)


class ChainClient:
    """
    Async JSON-RPC client for one EVM chain.

    Provides:
    - Contract reads (eth_call + ABI decoding)
    - Block / nonce / receipt lookups
    - Raw transaction broadcast
    - Receipt polling with a hard deadline
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        timeout: float = 30.0,
        poll_interval: float = 2.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        self.poll_interval = poll_interval
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def _rpc_call(self, method: str, params: List[Any]) -> Any:
        """Make an RPC call to the chain."""
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": next(self._ids),
        }

        try:
            response = await self._client.post(self.rpc_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise RpcError(f"RPC transport error on {method}: {e}", method=method) from e

        result = response.json()
        if "error" in result:
            error = result["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise RpcError(f"RPC error on {method}: {message}", method=method, payload=error)

        return result.get("result")

    async def read_contract(
        self,
        address: str,
        signature: str,
        args: Sequence[Any] = (),
        returns: Sequence[str] = ("uint256",),
    ) -> Any:
        """
        Call a view function and decode its result.

        Single-value returns are unwrapped; multi-value returns come back
        as a tuple.
        """
        call = {
            "to": to_checksum_address(address),
            "data": encode_call(signature, args),
        }
        data = await self._rpc_call("eth_call", [call, "latest"])
        decoded: Tuple[Any, ...] = decode_result(returns, data)
        return decoded[0] if len(decoded) == 1 else decoded

    async def get_block(self, tag: str = "latest") -> Block:
        raw = await self._rpc_call("eth_getBlockByNumber", [tag, False])
        if raw is None:
            raise RpcError(f"Block {tag} not found", method="eth_getBlockByNumber")
        return Block.from_rpc(raw)

    async def get_block_number(self) -> int:
        return int(await self._rpc_call("eth_blockNumber", []), 16)

    async def get_transaction_count(self, address: str, tag: str = "pending") -> int:
        """Account nonce; the ``pending`` tag includes mempool transactions."""
        result = await self._rpc_call(
            "eth_getTransactionCount",
            [to_checksum_address(address), tag],
        )
        return int(result, 16)

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Receipt]:
        raw = await self._rpc_call("eth_getTransactionReceipt", [tx_hash])
        if not raw:
            return None
        return Receipt.from_rpc(raw)

    async def send_raw_transaction(self, raw_transaction: bytes) -> str:
        """Submit a signed transaction to the network."""
        tx_hash = await self._rpc_call("eth_sendRawTransaction", [encode_hex(raw_transaction)])
        logger.debug("Transaction submitted: %s", tx_hash)
        return tx_hash

    async def wait_for_receipt(
        self,
        tx_hash: str,
        confirmations: int = 1,
        timeout: float = 120.0,
    ) -> Receipt:
        """
        Poll until ``tx_hash`` has ``confirmations`` blocks on top of it.

        Raises:
            TransactionTimeoutError: no sufficiently confirmed receipt before
                ``timeout`` seconds elapsed.
        """
        deadline = time.monotonic() + timeout

        while True:
            try:
                receipt = await self.get_transaction_receipt(tx_hash)
                if receipt:
                    if confirmations <= 1:
                        return receipt
                    current = await self.get_block_number()
                    if current - receipt.block_number + 1 >= confirmations:
                        return receipt
            except RpcError as e:
                logger.warning(f"Error checking transaction status: {e}")

            if time.monotonic() >= deadline:
                raise TransactionTimeoutError(
                    f"Confirmation timeout after {timeout}s: {tx_hash}",
                    tx_hash=tx_hash,
                )
            await asyncio.sleep(self.poll_interval)

    async def close(self) -> None:
        """Close HTTP client."""
        await self._client.aclose()
