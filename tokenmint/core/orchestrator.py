"""
Minting service: wires the payment and mint queues together.

The payment queue's completion callback is where a settled mint payment
becomes mint queue entries, and where a settled deploy payment is handed
to the token deployer.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncEngine

from tokenmint.config import Settings, settings as default_settings
from tokenmint.core.chain import ChainClient, WalletClient
from tokenmint.core.execution import NonceAllocator, NonceStrategy
from tokenmint.core.fixed_point import price_for_quantity
from tokenmint.core.queue.errors import AlreadyMintedError, PollTimeoutError, QueueError
from tokenmint.core.queue.idempotency import mint_idempotency_key
from tokenmint.core.queue.mint_processor import MintBatchQueue
from tokenmint.core.queue.models import (
    BatchMintRecord,
    MintQueueItem,
    MintQueueStatus,
    PaymentQueueItem,
    PaymentType,
    TransferAuthorization,
)
from tokenmint.core.queue.payment_processor import PaymentSettlementQueue
from tokenmint.core.queue.polling import await_terminal_state
from tokenmint.db.session import SessionFactory, build_engine, build_session_factory, create_tables


logger = logging.getLogger(__name__)


class PaymentValidationError(QueueError):
    """Authorization does not pay the expected amount to the expected wallet."""
    pass


class PaymentTimeoutError(PollTimeoutError):
    """Payment did not settle within the caller's wait."""
    pass


class TokenDeployer(Protocol):
    async def deploy(self, config: Dict[str, Any], payer: str, payment_tx_hash: str) -> Dict[str, Any]: ...


class MintingService:
    """Entry point used by the HTTP layer and the CLI."""

    def __init__(
        self,
        session_factory: SessionFactory,
        payment_queue: PaymentSettlementQueue,
        mint_queue: MintBatchQueue,
        *,
        config: Optional[Settings] = None,
        deployer: Optional[TokenDeployer] = None,
        chain: Optional[ChainClient] = None,
        engine: Optional[AsyncEngine] = None,
    ) -> None:
        self.session_factory = session_factory
        self.payment_queue = payment_queue
        self.mint_queue = mint_queue
        self.config = config or default_settings
        self.deployer = deployer
        self._chain = chain
        self._engine = engine
        self.payment_queue.set_completion_callback(self.on_payment_completed)

    # ---------------------------
    # Lifecycle
    # ---------------------------
    async def init_db(self) -> None:
        if self._engine is not None:
            await create_tables(self._engine)

    async def start(self) -> None:
        await self.init_db()
        await self.payment_queue.start()
        await self.mint_queue.start()
        logger.info("Minting service started")

    async def stop(self) -> None:
        await self.payment_queue.stop()
        await self.mint_queue.stop()
        logger.info("Minting service stopped")

    async def close(self) -> None:
        await self.stop()
        if self._chain is not None:
            await self._chain.close()
        if self._engine is not None:
            await self._engine.dispose()

    # ---------------------------
    # Payments
    # ---------------------------
    def quote(self, price: Any, quantity: int = 1) -> int:
        """Base units of the payment token owed for ``quantity`` mints."""
        return price_for_quantity(price, quantity, self.config.payment_token_decimals)

    async def enqueue_payment(
        self,
        payment_type: PaymentType,
        authorization: Dict[str, Any],
        payment_token_address: str,
        *,
        token_address: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        expected_amount: Optional[int] = None,
    ) -> str:
        """
        Validate an authorization against the expected price and queue it.

        Raises:
            AuthorizationFormatError: malformed authorization.
            PaymentValidationError: wrong amount or recipient.
        """
        auth = TransferAuthorization.parse(authorization)

        if expected_amount is not None and auth.value != int(expected_amount):
            raise PaymentValidationError(
                f"Payment amount mismatch: expected {expected_amount}, got {auth.value}"
            )
        recipient = self.config.resolve_recipient(self.payment_queue.wallet.address)
        if auth.to.lower() != recipient.lower():
            raise PaymentValidationError(f"Payment must be sent to {recipient}, got {auth.to}")

        return await self.payment_queue.enqueue(
            payment_type,
            auth.to_payload(),
            payer=auth.from_address,
            amount=auth.value,
            payment_token_address=payment_token_address,
            token_address=token_address,
            metadata=metadata,
        )

    async def get_payment_status(self, payment_id: str) -> Optional[PaymentQueueItem]:
        return await self.payment_queue.get_status(payment_id)

    async def get_payment_stats(self) -> Dict[str, Any]:
        return await self.payment_queue.get_stats()

    async def wait_for_payment(
        self,
        payment_id: str,
        timeout: float = 30.0,
        poll_interval: float = 0.5,
    ) -> Optional[PaymentQueueItem]:
        """
        Block until the payment is terminal.

        Returns None for an unknown id. Raises PaymentTimeoutError when the
        payment is still in flight after ``timeout`` seconds.
        """
        try:
            return await await_terminal_state(
                lambda: self.payment_queue.get_status(payment_id),
                lambda item: item is None or item.status.is_terminal,
                timeout=timeout,
                poll_interval=poll_interval,
                label=f"payment {payment_id}",
            )
        except PollTimeoutError as e:
            raise PaymentTimeoutError(str(e), last_value=e.last_value) from e

    # ---------------------------
    # Mints
    # ---------------------------
    async def enqueue_mint(
        self,
        payer_address: str,
        idempotency_key: str,
        token_address: str,
        payment_tx_hash: Optional[str] = None,
        authorization_data: Optional[Dict[str, Any]] = None,
        payment_type: str = "x402",
    ) -> str:
        return await self.mint_queue.enqueue(
            payer_address,
            idempotency_key,
            token_address,
            payment_tx_hash=payment_tx_hash,
            authorization_data=authorization_data,
            payment_type=payment_type,
        )

    async def get_mint_status(self, mint_id: str) -> Optional[MintQueueStatus]:
        return await self.mint_queue.get_status(mint_id)

    async def get_mint_stats(self) -> Dict[str, Any]:
        return await self.mint_queue.get_stats()

    async def get_recent_batches(self, limit: int = 10) -> List[BatchMintRecord]:
        return await self.mint_queue.get_recent_batches(limit)

    async def get_payer_status(self, payer_address: str, limit: int = 10) -> List[MintQueueItem]:
        return await self.mint_queue.get_payer_status(payer_address, limit)

    # ---------------------------
    # Payment completion
    # ---------------------------
    async def on_payment_completed(self, item: PaymentQueueItem, tx_hash: str) -> Optional[Dict[str, Any]]:
        """Turn a settled payment into its follow-up work; the return value is stored on the row."""
        metadata = item.metadata or {}

        if item.payment_type == PaymentType.DEPLOY:
            if self.deployer is None:
                logger.warning(f"Deploy payment {item.id} settled but no deployer is configured")
                return {"success": False, "error": "Token deployment is not configured"}
            logger.info(f"Deploying token for {item.payer} (payment {tx_hash})")
            return await self.deployer.deploy(metadata, item.payer, tx_hash)

        if metadata.get("x402"):
            return {"success": True, "x402": True, "message": "Payment settled, mint handled by the x402 flow"}

        if not item.token_address:
            logger.error(f"Mint payment {item.id} has no token address")
            return {"success": False, "error": "Missing token address"}

        quantity = max(int(metadata.get("quantity", 1)), 1)
        timestamp = metadata.get("timestamp")
        if timestamp is None:
            timestamp = int(item.created_at.timestamp() * 1000) if item.created_at else 0

        queue_ids: List[str] = []
        for offset in range(quantity):
            key = mint_idempotency_key(item.payer, int(timestamp) + offset, item.token_address)
            try:
                queue_ids.append(
                    await self.mint_queue.enqueue(
                        item.payer,
                        key,
                        item.token_address,
                        payment_tx_hash=tx_hash,
                        payment_type="traditional",
                    )
                )
            except AlreadyMintedError:
                logger.warning(f"Mint {key} for payment {item.id} already minted, skipping")

        logger.info(f"Queued {len(queue_ids)} mints for payment {item.id}")
        return {"success": True, "queueIds": queue_ids, "quantity": quantity}


def build_service(
    config: Optional[Settings] = None,
    *,
    deployer: Optional[TokenDeployer] = None,
) -> MintingService:
    """Construct the service and every handle it needs from settings."""
    config = config or default_settings
    if not config.has_payment_wallet:
        raise ValueError("PAYMENT_WALLET_PRIVATE_KEY (or SERVER_PRIVATE_KEY) is required")
    if config.shares_wallet and not config.allow_shared_wallet:
        raise ValueError(
            "Payment and mint queues would sign with the same wallet; set MINT_WALLET_PRIVATE_KEY "
            "to a separate key, or ALLOW_SHARED_WALLET=true to accept a shared nonce counter"
        )

    engine = build_engine(config.database_url, echo=config.sql_echo)
    session_factory = build_session_factory(engine)

    chain = ChainClient(
        config.rpc_url,
        timeout=config.rpc_timeout_seconds,
        poll_interval=config.receipt_poll_interval_seconds,
    )
    payment_wallet = WalletClient.from_private_key(chain, config.payment_wallet_private_key, config.chain_id)
    mint_wallet = WalletClient.from_private_key(chain, config.mint_wallet_private_key, config.chain_id)

    payment_nonces = NonceAllocator(chain, payment_wallet.address, NonceStrategy.CACHED, name="payment")
    if mint_wallet.address == payment_wallet.address:
        # One account, one counter. A mint-side resync can reissue nonces the
        # payment queue has reserved but not yet broadcast.
        logger.warning("Mint and payment queues share wallet %s", mint_wallet.address)
        mint_nonces = payment_nonces
    else:
        mint_nonces = NonceAllocator(chain, mint_wallet.address, NonceStrategy.CACHED, name="mint")

    payment_queue = PaymentSettlementQueue(
        session_factory,
        payment_wallet,
        payment_nonces,
        config=config,
    )
    mint_queue = MintBatchQueue(
        session_factory,
        mint_wallet,
        mint_nonces,
        config=config,
    )
    return MintingService(
        session_factory,
        payment_queue,
        mint_queue,
        config=config,
        deployer=deployer,
        chain=chain,
        engine=engine,
    )
