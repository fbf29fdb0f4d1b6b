"""
Mint batch queue.

Collects mint requests and, once per interval, mints them with one
transaction per token contract. Each transaction is awaited inline: the
next cycle must see the token's supply counters after this one settles.
"""

import logging
import math
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from tokenmint.cache import TTLCache
from tokenmint.config import Settings, settings as default_settings
from tokenmint.core.chain import TokenContract, TransactionRevertError, WalletClient
from tokenmint.core.execution import NonceAllocator, batch_mint_gas_limit, quote_fees
from tokenmint.db.repositories import BatchMintRepository, MintQueueRepository, SettingsRepository
from tokenmint.db.session import SessionFactory

from .errors import AlreadyMintedError, InsufficientSupplyError
from .models import BatchMintRecord, MintQueueItem, MintQueueStatus, MintStatus
from .scheduler import RecurringTask


logger = logging.getLogger(__name__)

BATCH_INTERVAL_KEY = "batch_interval_seconds"
MAX_BATCH_SIZE_KEY = "max_batch_size"


class MintBatchQueue:
    """
    Persistent mint queue for one minter wallet.

    Lifecycle per row: pending -> processing -> completed or failed.
    Completed rows are copied to mint history in the same transaction.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        wallet: WalletClient,
        allocator: NonceAllocator,
        *,
        config: Optional[Settings] = None,
        token_factory: Optional[Callable[[str], TokenContract]] = None,
    ) -> None:
        self.session_factory = session_factory
        self.wallet = wallet
        self.chain = wallet.chain
        self.allocator = allocator
        self.config = config or default_settings
        self._token_factory = token_factory or (lambda address: TokenContract(self.chain, address))
        self._max_batch_size = self.config.mint_max_batch_size
        self._status_cache = TTLCache(default_ttl=self.config.status_cache_ttl_seconds)

        self._batch_task = RecurringTask(
            "mint-batch",
            self._batch_cycle,
            self.config.mint_batch_interval_seconds,
            logger=logger,
        )

    # ---------------------------
    # Lifecycle
    # ---------------------------
    async def start(self) -> None:
        await self.allocator.initialize()
        await self.recover_stuck()
        await self._load_tunables()
        self._batch_task.start()
        logger.info(
            f"Mint queue started for {self.wallet.address} "
            f"(every {self._batch_task.interval_seconds}s, max batch {self._max_batch_size})"
        )

    async def stop(self) -> None:
        await self._batch_task.stop()
        logger.info("Mint queue stopped")

    @property
    def is_running(self) -> bool:
        return self._batch_task.is_running

    @property
    def is_processing(self) -> bool:
        return self._batch_task.is_busy

    @property
    def interval_seconds(self) -> float:
        return self._batch_task.interval_seconds

    @property
    def max_batch_size(self) -> int:
        return self._max_batch_size

    # ---------------------------
    # Enqueue and status
    # ---------------------------
    async def enqueue(
        self,
        payer_address: str,
        idempotency_key: str,
        token_address: str,
        payment_tx_hash: Optional[str] = None,
        authorization_data: Optional[Dict[str, Any]] = None,
        payment_type: str = "x402",
    ) -> str:
        """
        Queue a mint and return the row id.

        A key that is already pending or processing returns the existing
        row's id. A key that previously failed is queued again.

        Raises:
            AlreadyMintedError: the key completed or is in mint history.
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    repo = MintQueueRepository(session)
                    existing = await repo.get_row_by_key(idempotency_key)

                    if existing is not None:
                        if existing.status == MintStatus.COMPLETED.value:
                            raise AlreadyMintedError(idempotency_key)
                        if existing.status != MintStatus.FAILED.value:
                            logger.info(f"Mint {idempotency_key} already queued as {existing.id}")
                            return existing.id
                        if await repo.history_exists(idempotency_key):
                            raise AlreadyMintedError(idempotency_key)
                        position = await repo.next_position()
                        await repo.requeue(existing, position)
                        logger.info(f"Re-queued failed mint {existing.id} at position {position}")
                        return existing.id

                    if await repo.history_exists(idempotency_key):
                        raise AlreadyMintedError(idempotency_key)

                    position = await repo.next_position()
                    row = await repo.insert(
                        payer_address=payer_address,
                        key=idempotency_key,
                        token_address=token_address,
                        payment_type=payment_type,
                        queue_position=position,
                        payment_tx_hash=payment_tx_hash,
                        authorization_data=authorization_data,
                    )
                    mint_id = row.id
        except IntegrityError:
            # Lost a race with a concurrent insert of the same key
            async with self.session_factory() as session:
                row = await MintQueueRepository(session).get_row_by_key(idempotency_key)
            if row is None:
                raise
            if row.status == MintStatus.COMPLETED.value:
                raise AlreadyMintedError(idempotency_key)
            return row.id

        logger.info(f"Mint {mint_id} queued for {payer_address} on {token_address} (position {position})")
        return mint_id

    async def get_status(self, mint_id: str) -> Optional[MintQueueStatus]:
        """Row state with a queue position computed now, not the stored one."""
        cached = await self._status_cache.get(mint_id)
        if cached is not None:
            return cached

        async with self.session_factory() as session:
            repo = MintQueueRepository(session)
            item = await repo.get(mint_id)
            if item is None:
                return None
            if item.status != MintStatus.PENDING:
                await self._status_cache.delete(mint_id)
                return MintQueueStatus(item=item)
            ahead = await repo.pending_ahead(item)

        position = ahead + 1
        batches = math.ceil(position / max(self._max_batch_size, 1))
        status = MintQueueStatus(
            item=item,
            queue_position=position,
            estimated_wait_seconds=int(batches * self.interval_seconds),
        )
        await self._status_cache.set(mint_id, status)
        return status

    async def clear_status_cache(self) -> None:
        await self._status_cache.clear()

    async def get_payer_status(self, payer_address: str, limit: int = 10) -> List[MintQueueItem]:
        async with self.session_factory() as session:
            return await MintQueueRepository(session).list_for_payer(payer_address, limit)

    async def get_recent_batches(self, limit: int = 10) -> List[BatchMintRecord]:
        async with self.session_factory() as session:
            return await BatchMintRepository(session).list_recent(limit)

    async def get_stats(self) -> Dict[str, Any]:
        async with self.session_factory() as session:
            mint_repo = MintQueueRepository(session)
            counts = await mint_repo.count_by_status()
            minted = await mint_repo.count_history()
            batches = await BatchMintRepository(session).count_by_status()
        return {
            **counts,
            "totalMinted": minted,
            "batches": batches,
            "isProcessing": self.is_processing,
            "batchIntervalSeconds": self.interval_seconds,
            "maxBatchSize": self._max_batch_size,
            "statusCache": self._status_cache.snapshot(),
            "nonce": self.allocator.get_state(),
        }

    async def process_batch(self) -> bool:
        """Run one batch cycle now; False if one is already running."""
        return await self._batch_task.run_once()

    # ---------------------------
    # Batch cycle
    # ---------------------------
    async def _load_tunables(self) -> None:
        async with self.session_factory() as session:
            values = await SettingsRepository(session).get_ints({
                BATCH_INTERVAL_KEY: self.config.mint_batch_interval_seconds,
                MAX_BATCH_SIZE_KEY: self.config.mint_max_batch_size,
            })
        self._batch_task.interval_seconds = values[BATCH_INTERVAL_KEY]
        self._max_batch_size = values[MAX_BATCH_SIZE_KEY]

    async def _batch_cycle(self) -> None:
        await self._load_tunables()
        try:
            batch = await self._select_batch()
            if not batch:
                return

            groups: Dict[str, List[MintQueueItem]] = {}
            for item in batch:
                groups.setdefault(item.token_address, []).append(item)

            logger.info(f"Processing {len(batch)} mints across {len(groups)} token(s)")
            for token_address, items in groups.items():
                await self._process_group(token_address, items)
        finally:
            await self._status_cache.clear()

    async def _select_batch(self) -> List[MintQueueItem]:
        """
        FIFO slice of up to max_batch_size rows, widened so each selected
        payer's whole pending burst for that token rides along.

        The widened batch never exceeds the configured hard limit.
        """
        hard_limit = max(self.config.mint_batch_hard_limit, self._max_batch_size)
        async with self.session_factory() as session:
            repo = MintQueueRepository(session)
            head = await repo.oldest_pending(self._max_batch_size)
            if not head:
                return []
            pairs = {(item.payer_address.lower(), item.token_address) for item in head}
            bursts = await repo.pending_for_pairs(pairs, hard_limit)

        selected = {item.id: item for item in head}
        for item in bursts:
            selected.setdefault(item.id, item)
        batch = sorted(selected.values(), key=lambda i: (i.created_at, i.queue_position))[:hard_limit]

        if len(batch) > len(head):
            logger.info(f"Pulled {len(batch) - len(head)} extra rows to keep payer bursts together")
        return batch

    async def _process_group(self, token_address: str, items: List[MintQueueItem]) -> None:
        try:
            await self._mint_group(token_address, items)
        except Exception as e:
            logger.error(f"Mint batch for {token_address} failed: {e}")
            await self._fail_group(e)

    async def _mint_group(self, token_address: str, items: List[MintQueueItem]) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                claimed = await MintQueueRepository(session).mark_processing([i.id for i in items])
        if len(claimed) != len(items):
            logger.warning(f"Expected {len(items)} pending rows for {token_address}, claimed {len(claimed)}")
            items = [item for item in items if item.id in claimed]
        if not items:
            return

        nonce = await self.allocator.get_next()
        token = self._token_factory(token_address)

        remaining, per_mint = await token.supply_snapshot()
        required = per_mint * len(items)
        if remaining < required:
            raise InsufficientSupplyError(required, remaining, token_address)

        block = await self.chain.get_block()
        fees = quote_fees(
            block.base_fee_per_gas,
            priority_fee=self.config.mint_priority_fee_wei,
            multiplier_percent=self.config.mint_base_fee_multiplier_percent,
            default_base_fee=self.config.default_base_fee_wei,
        )

        recipients = [item.payer_address for item in items]
        keys = [item.tx_hash_bytes32 for item in items]
        if len(items) == 1:
            data = TokenContract.mint_calldata(recipients[0], keys[0])
        else:
            data = TokenContract.batch_mint_calldata(recipients, keys)
        gas = batch_mint_gas_limit(
            len(items),
            single_gas=self.config.mint_single_gas_limit,
            base_gas=self.config.mint_batch_base_gas,
            per_recipient_gas=self.config.mint_batch_per_recipient_gas,
        )

        logger.info(
            f"Minting {len(items)} on {token_address}: nonce {nonce}, gas {gas}, "
            f"max fee {fees.max_fee_per_gas}, priority {fees.max_priority_fee_per_gas}"
        )
        tx_hash = await self.wallet.send_transaction(
            to=token_address,
            data=data,
            nonce=nonce,
            gas=gas,
            max_fee_per_gas=fees.max_fee_per_gas,
            max_priority_fee_per_gas=fees.max_priority_fee_per_gas,
        )

        async with self.session_factory() as session:
            async with session.begin():
                await BatchMintRepository(session).create(tx_hash, len(items), token_address, nonce)

        receipt = await self.chain.wait_for_receipt(
            tx_hash,
            confirmations=1,
            timeout=self.config.mint_receipt_timeout_seconds,
        )
        if not receipt.success:
            raise TransactionRevertError(f"Mint transaction reverted: {tx_hash}", tx_hash=tx_hash)

        async with self.session_factory() as session:
            async with session.begin():
                await BatchMintRepository(session).confirm(tx_hash, receipt.block_number, receipt.gas_used)
                completed = await MintQueueRepository(session).complete(
                    items, tx_hash, per_mint, receipt.block_number
                )
        if completed != len(items):
            logger.warning(f"{len(items) - completed} rows in {tx_hash} left processing before completion")

        self.allocator.confirm_used(nonce)
        logger.info(f"Minted {len(items)} on {token_address} in block {receipt.block_number}: {tx_hash}")

    async def _fail_group(self, error: Exception) -> None:
        try:
            await self.allocator.recover_from_failure()
        except Exception as e:
            logger.error(f"Nonce resync after mint failure failed: {e}")

        async with self.session_factory() as session:
            async with session.begin():
                failed = await MintQueueRepository(session).fail_processing(str(error))
        await self._status_cache.clear()
        logger.warning(f"Marked {failed} processing mints as failed")

    # ---------------------------
    # Recovery
    # ---------------------------
    async def recover_stuck(self) -> Dict[str, int]:
        """
        Reconcile rows a previous process left in processing.

        Keys the token contract has already minted are completed; the rest
        go back to pending. Rows whose contract cannot be read stay put.
        """
        async with self.session_factory() as session:
            stuck = await MintQueueRepository(session).list_processing()

        summary = {"completed": 0, "requeued": 0, "skipped": 0}
        if not stuck:
            return summary

        logger.warning(f"Found {len(stuck)} mints stuck in processing")
        for item in stuck:
            try:
                minted = await self._token_factory(item.token_address).has_minted(item.tx_hash_bytes32)
            except Exception as e:
                logger.error(f"Could not check mint {item.id} on-chain: {e}")
                summary["skipped"] += 1
                continue

            async with self.session_factory() as session:
                async with session.begin():
                    repo = MintQueueRepository(session)
                    if minted:
                        await repo.complete([item], None, None, None)
                        summary["completed"] += 1
                    else:
                        await repo.set_status(item.id, MintStatus.PROCESSING, MintStatus.PENDING)
                        summary["requeued"] += 1

        await self._status_cache.clear()
        logger.info(
            "Recovery: %d completed, %d re-queued, %d skipped",
            summary["completed"],
            summary["requeued"],
            summary["skipped"],
        )
        return summary
