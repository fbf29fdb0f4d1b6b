"""
Payment settlement queue.

Turns signed EIP-3009 authorizations into transferWithAuthorization
transactions. Submission and confirmation run as two independent
recurring tasks so new payments keep moving while earlier ones wait for
block inclusion.
"""

import asyncio
import logging
import random
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from tokenmint.config import Settings, settings as default_settings
from tokenmint.core.chain import WalletClient, transfer_with_authorization_calldata
from tokenmint.core.execution import NonceAllocator, jittered_priority_fee, quote_fees
from tokenmint.db.repositories import (
    MintQueueRepository,
    PaymentQueueRepository,
    SettingsRepository,
)
from tokenmint.db.session import SessionFactory
from tokenmint.db.time import utcnow

from .models import PaymentQueueItem, PaymentStatus, PaymentType, TransferAuthorization
from .scheduler import RecurringTask


logger = logging.getLogger(__name__)

PaymentCallback = Callable[[PaymentQueueItem, str], Awaitable[Any]]

BATCH_INTERVAL_KEY = "payment_batch_interval_ms"
BATCH_SIZE_KEY = "payment_batch_size"
CONFIRM_INTERVAL_KEY = "payment_confirm_interval_ms"


class PaymentSettlementQueue:
    """
    Persistent queue of stablecoin payments for one signing wallet.

    Lifecycle per row: pending -> processing -> sent -> completed or
    confirmation_failed; a broadcast error ends in failed instead.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        wallet: WalletClient,
        allocator: NonceAllocator,
        *,
        config: Optional[Settings] = None,
        on_payment_completed: Optional[PaymentCallback] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.session_factory = session_factory
        self.wallet = wallet
        self.chain = wallet.chain
        self.allocator = allocator
        self.config = config or default_settings
        self._on_payment_completed = on_payment_completed
        self._rng = rng
        self._batch_size = self.config.payment_batch_size
        self._callback_results: Dict[str, Any] = {}

        self._submit_task = RecurringTask(
            "payment-submit",
            self._submit_cycle,
            self.config.payment_batch_interval_seconds,
            logger=logger,
        )
        self._confirm_task = RecurringTask(
            "payment-confirm",
            self._confirm_cycle,
            self.config.payment_confirm_interval_seconds,
            logger=logger,
        )

    def set_completion_callback(self, callback: Optional[PaymentCallback]) -> None:
        self._on_payment_completed = callback

    # ---------------------------
    # Lifecycle
    # ---------------------------
    async def start(self) -> None:
        await self.allocator.initialize()
        await self.recover_stuck()
        await self._load_tunables()
        self._submit_task.start()
        self._confirm_task.start()
        logger.info(
            f"Payment queue started for {self.wallet.address} "
            f"(submit every {self._submit_task.interval_seconds}s, batch size {self._batch_size})"
        )

    async def stop(self) -> None:
        await self._submit_task.stop()
        await self._confirm_task.stop()
        logger.info("Payment queue stopped")

    @property
    def is_running(self) -> bool:
        return self._submit_task.is_running

    @property
    def is_processing(self) -> bool:
        return self._submit_task.is_busy

    # ---------------------------
    # Public operations
    # ---------------------------
    async def enqueue(
        self,
        payment_type: PaymentType,
        authorization: Dict[str, Any],
        payer: str,
        amount: int,
        payment_token_address: str,
        token_address: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Persist a pending payment and return its id.

        Raises:
            AuthorizationFormatError: the authorization has no usable signature.
        """
        auth = TransferAuthorization.parse(authorization)
        async with self.session_factory() as session:
            async with session.begin():
                item = await PaymentQueueRepository(session).create(
                    payment_type=PaymentType(payment_type),
                    authorization=auth.to_payload(),
                    payer=payer,
                    amount=amount,
                    payment_token_address=payment_token_address,
                    token_address=token_address,
                    metadata=metadata,
                )
        logger.info(f"Payment {item.id} queued ({item.payment_type.value}, payer {payer}, amount {amount})")
        return item.id

    async def get_status(self, payment_id: str) -> Optional[PaymentQueueItem]:
        async with self.session_factory() as session:
            return await PaymentQueueRepository(session).get(payment_id)

    async def get_stats(self) -> Dict[str, Any]:
        async with self.session_factory() as session:
            counts = await PaymentQueueRepository(session).count_by_status()
        nonce = self.allocator.get_state()
        return {
            **counts,
            "total": sum(counts.values()),
            "isProcessing": self.is_processing,
            "currentNonce": nonce["currentNonce"],
            "lastIssuedNonce": nonce["lastIssued"],
            "wallet": self.wallet.address,
        }

    async def process_batch(self) -> bool:
        """Run one submit cycle now; False if one is already running."""
        return await self._submit_task.run_once()

    async def check_confirmations(self) -> bool:
        """Run one confirmation cycle now; False if one is already running."""
        return await self._confirm_task.run_once()

    async def recover_stuck(self) -> int:
        """
        Put payments a previous process claimed but never broadcast back
        to pending.

        A row that was broadcast under a different nonce is harmless: the
        authorization nonce lets the token contract accept it only once.
        """
        async with self.session_factory() as session:
            async with session.begin():
                requeued = await PaymentQueueRepository(session).requeue_unsent()
        if requeued:
            logger.warning(f"Re-queued {requeued} payments stuck in processing")
        return requeued

    # ---------------------------
    # Submit cycle
    # ---------------------------
    async def _load_tunables(self) -> None:
        async with self.session_factory() as session:
            values = await SettingsRepository(session).get_ints({
                BATCH_INTERVAL_KEY: self.config.payment_batch_interval_ms,
                BATCH_SIZE_KEY: self.config.payment_batch_size,
                CONFIRM_INTERVAL_KEY: self.config.payment_confirm_interval_ms,
            })
        self._batch_size = values[BATCH_SIZE_KEY]
        self._submit_task.interval_seconds = values[BATCH_INTERVAL_KEY] / 1000
        self._confirm_task.interval_seconds = values[CONFIRM_INTERVAL_KEY] / 1000

    async def _submit_cycle(self) -> None:
        await self._load_tunables()

        async with self.session_factory() as session:
            pending = await PaymentQueueRepository(session).list_pending(self._batch_size)
        if not pending:
            return

        logger.info(f"Processing {len(pending)} payments")

        # Every nonce is reserved before the first broadcast so the parallel
        # sends below use a contiguous, known range.
        assignments: List[Tuple[PaymentQueueItem, int]] = []
        try:
            for item in pending:
                assignments.append((item, await self.allocator.get_next()))
        except Exception:
            logger.error("Nonce allocation failed, leaving payments pending")
            await self.allocator.recover_from_failure()
            raise

        claimed: List[Tuple[PaymentQueueItem, int]] = []
        async with self.session_factory() as session:
            async with session.begin():
                repo = PaymentQueueRepository(session)
                for item, nonce in assignments:
                    if await repo.transition(item.id, PaymentStatus.PENDING, PaymentStatus.PROCESSING, nonce=nonce):
                        claimed.append((item, nonce))

        logger.info(
            "Assigned nonces %s to %d payments",
            [nonce for _, nonce in claimed],
            len(claimed),
        )

        results = await asyncio.gather(*(self._submit_one(item, nonce) for item, nonce in claimed))
        failed_nonces = [nonce for (_, nonce), ok in zip(claimed, results) if not ok]

        if failed_nonces or len(claimed) != len(assignments):
            await self.allocator.recover_from_failure(min(failed_nonces) if failed_nonces else None)

        logger.info(f"Payment batch done: {len(claimed) - len(failed_nonces)} sent, {len(failed_nonces)} failed")

    async def _submit_one(self, item: PaymentQueueItem, nonce: int) -> bool:
        """Broadcast one payment; False when the broadcast failed."""
        try:
            auth = TransferAuthorization.parse(item.authorization)
            v, r, s = auth.split_signature()
            data = transfer_with_authorization_calldata(
                from_address=auth.from_address,
                to_address=auth.to,
                value=auth.value,
                valid_after=auth.valid_after,
                valid_before=auth.valid_before,
                nonce=auth.nonce,
                v=v,
                r=r,
                s=s,
            )

            block = await self.chain.get_block()
            priority_fee = jittered_priority_fee(
                self.config.payment_priority_fee_wei,
                self.config.payment_priority_jitter_percent,
                self._rng,
            )
            fees = quote_fees(
                block.base_fee_per_gas,
                priority_fee=priority_fee,
                multiplier_percent=self.config.payment_base_fee_multiplier_percent,
                default_base_fee=self.config.default_base_fee_wei,
            )

            tx_hash = await self.wallet.send_transaction(
                to=item.payment_token_address,
                data=data,
                nonce=nonce,
                gas=self.config.payment_gas_limit,
                max_fee_per_gas=fees.max_fee_per_gas,
                max_priority_fee_per_gas=fees.max_priority_fee_per_gas,
            )
        except Exception as e:
            logger.error(f"Payment {item.id} broadcast failed (nonce {nonce}): {e}")
            await self._fail(item, PaymentStatus.PROCESSING, PaymentStatus.FAILED, str(e))
            return False

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await PaymentQueueRepository(session).transition(
                        item.id,
                        PaymentStatus.PROCESSING,
                        PaymentStatus.SENT,
                        tx_hash=tx_hash,
                        sent_at=utcnow(),
                    )
        except Exception as e:
            # The transaction is on the network; the nonce is spent either way.
            logger.error(f"Payment {item.id} sent as {tx_hash} but not recorded: {e}", exc_info=True)
            return True

        logger.info(f"Payment {item.id} sent: {tx_hash} (nonce {nonce}, max fee {fees.max_fee_per_gas})")
        return True

    async def _fail(
        self,
        item: PaymentQueueItem,
        from_status: PaymentStatus,
        to_status: PaymentStatus,
        error: str,
    ) -> None:
        """Terminal failure plus cleanup of mint rows this payment was funding."""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    moved = await PaymentQueueRepository(session).transition(
                        item.id,
                        from_status,
                        to_status,
                        error=error,
                        processed_at=utcnow(),
                    )
                    orphaned = 0
                    if moved and item.token_address and item.created_at:
                        orphaned = await MintQueueRepository(session).fail_linked(
                            payer=item.payer,
                            token_address=item.token_address,
                            around=item.created_at,
                            window_seconds=self.config.linked_mint_window_seconds,
                            error=f"Payment failed: {error}",
                        )
        except Exception as e:
            logger.error(f"Could not record failure of payment {item.id}: {e}", exc_info=True)
            return

        if orphaned:
            logger.warning(f"Failed {orphaned} mint rows linked to payment {item.id}")

    # ---------------------------
    # Confirmation cycle
    # ---------------------------
    async def _confirm_cycle(self) -> None:
        since = utcnow() - timedelta(seconds=self.config.payment_confirmation_window_seconds)
        async with self.session_factory() as session:
            sent = await PaymentQueueRepository(session).list_sent(since)
        if not sent:
            return

        logger.debug(f"Checking confirmations for {len(sent)} payments")
        results = await asyncio.gather(*(self._check_one(item) for item in sent), return_exceptions=True)
        for item, outcome in zip(sent, results):
            if isinstance(outcome, Exception):
                logger.error(f"Confirmation of payment {item.id} failed: {outcome}")

    async def _check_one(self, item: PaymentQueueItem) -> None:
        try:
            receipt = await self.chain.get_transaction_receipt(item.tx_hash)
        except Exception as e:
            logger.warning(f"Receipt lookup failed for payment {item.id} ({item.tx_hash}): {e}")
            return

        if receipt is None:
            age = (utcnow() - item.sent_at).total_seconds() if item.sent_at else 0
            if age > self.config.payment_confirmation_timeout_seconds:
                logger.error(f"Payment {item.id} not confirmed after {int(age)}s: {item.tx_hash}")
                await self._fail(
                    item,
                    PaymentStatus.SENT,
                    PaymentStatus.CONFIRMATION_FAILED,
                    f"Transaction not confirmed after {self.config.payment_confirmation_timeout_seconds}s",
                )
                await self.allocator.recover_from_failure(item.nonce)
            return

        if not receipt.success:
            logger.error(f"Payment {item.id} reverted: {item.tx_hash}")
            await self._fail(item, PaymentStatus.SENT, PaymentStatus.CONFIRMATION_FAILED, "Transaction reverted")
            return

        if item.nonce is not None:
            self.allocator.confirm_used(item.nonce)

        # A callback that already ran is not run again when only the status
        # write failed; its result is kept until the write lands.
        if item.id in self._callback_results:
            result = self._callback_results[item.id]
        else:
            result = None
            if self._on_payment_completed:
                try:
                    result = await self._on_payment_completed(item, item.tx_hash)
                except Exception as e:
                    logger.error(f"Completion callback failed for payment {item.id}: {e}", exc_info=True)
            self._callback_results[item.id] = result

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    moved = await PaymentQueueRepository(session).transition(
                        item.id,
                        PaymentStatus.SENT,
                        PaymentStatus.COMPLETED,
                        result=result,
                        processed_at=utcnow(),
                    )
        except Exception as e:
            logger.error(f"Payment {item.id} confirmed but not recorded, retrying next cycle: {e}", exc_info=True)
            return

        self._callback_results.pop(item.id, None)
        if moved:
            logger.info(f"Payment {item.id} confirmed in block {receipt.block_number}")
