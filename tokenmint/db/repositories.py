"""Database repositories for the payment and mint queues."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tokenmint.core.queue.models import (
    BatchMintRecord,
    BatchStatus,
    MintQueueItem,
    MintStatus,
    PaymentQueueItem,
    PaymentStatus,
    PaymentType,
)
from tokenmint.db.models import (
    BatchMintRow,
    MintHistoryRow,
    MintQueueRow,
    PaymentQueueRow,
    SystemSettingRow,
)
from tokenmint.db.time import utcnow


logger = logging.getLogger(__name__)


def _status_value(status: Any) -> str:
    return status.value if hasattr(status, "value") else str(status)


class PaymentQueueRepository:
    """Repository for payment queue rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        payment_type: PaymentType,
        authorization: dict[str, Any],
        payer: str,
        amount: int | str,
        payment_token_address: str,
        token_address: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PaymentQueueItem:
        row = PaymentQueueRow(
            payment_type=_status_value(payment_type),
            authorization=authorization,
            payer=payer,
            amount=str(amount),
            payment_token_address=payment_token_address,
            token_address=token_address,
            metadata_=metadata,
            status=PaymentStatus.PENDING.value,
            created_at=utcnow(),
        )
        self.session.add(row)
        await self.session.flush()
        return PaymentQueueItem.from_row(row)

    async def get(self, payment_id: str) -> PaymentQueueItem | None:
        row = await self.session.get(PaymentQueueRow, payment_id)
        return PaymentQueueItem.from_row(row) if row else None

    async def list_pending(self, limit: int) -> list[PaymentQueueItem]:
        """Oldest pending payments first."""
        result = await self.session.execute(
            select(PaymentQueueRow)
            .where(PaymentQueueRow.status == PaymentStatus.PENDING.value)
            .order_by(PaymentQueueRow.created_at, PaymentQueueRow.id)
            .limit(limit)
        )
        return [PaymentQueueItem.from_row(r) for r in result.scalars().all()]

    async def list_sent(self, since: datetime) -> list[PaymentQueueItem]:
        """Broadcast payments sent after ``since``, awaiting a receipt."""
        result = await self.session.execute(
            select(PaymentQueueRow)
            .where(
                PaymentQueueRow.status == PaymentStatus.SENT.value,
                PaymentQueueRow.sent_at >= since,
            )
            .order_by(PaymentQueueRow.sent_at)
        )
        return [PaymentQueueItem.from_row(r) for r in result.scalars().all()]

    async def transition(
        self,
        payment_id: str,
        from_status: PaymentStatus,
        to_status: PaymentStatus,
        **values: Any,
    ) -> bool:
        """
        Move a row between states.

        Only succeeds when the row is still in ``from_status``; returns
        False when another code path already moved it.
        """
        if "metadata" in values:
            values["metadata_"] = values.pop("metadata")
        result = await self.session.execute(
            update(PaymentQueueRow)
            .where(
                PaymentQueueRow.id == payment_id,
                PaymentQueueRow.status == from_status.value,
            )
            .values(status=to_status.value, **values)
        )
        return result.rowcount == 1

    async def requeue_unsent(self) -> int:
        """Move processing rows that never got a tx hash back to pending."""
        result = await self.session.execute(
            update(PaymentQueueRow)
            .where(
                PaymentQueueRow.status == PaymentStatus.PROCESSING.value,
                PaymentQueueRow.tx_hash.is_(None),
            )
            .values(status=PaymentStatus.PENDING.value, nonce=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def count_by_status(self) -> dict[str, int]:
        result = await self.session.execute(
            select(PaymentQueueRow.status, func.count()).group_by(PaymentQueueRow.status)
        )
        counts = {status.value: 0 for status in PaymentStatus}
        for status, count in result.all():
            counts[status] = count
        return counts


class MintQueueRepository:
    """Repository for mint queue and mint history rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, mint_id: str) -> MintQueueItem | None:
        row = await self.session.get(MintQueueRow, mint_id)
        return MintQueueItem.from_row(row) if row else None

    async def get_row_by_key(self, key: str) -> MintQueueRow | None:
        result = await self.session.execute(
            select(MintQueueRow).where(MintQueueRow.tx_hash_bytes32 == key)
        )
        return result.scalar_one_or_none()

    async def history_exists(self, key: str) -> bool:
        result = await self.session.execute(
            select(MintHistoryRow.id).where(MintHistoryRow.tx_hash_bytes32 == key).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def next_position(self) -> int:
        """One past the highest position among pending rows."""
        result = await self.session.execute(
            select(func.coalesce(func.max(MintQueueRow.queue_position), 0)).where(
                MintQueueRow.status == MintStatus.PENDING.value
            )
        )
        return int(result.scalar_one()) + 1

    async def insert(
        self,
        payer_address: str,
        key: str,
        token_address: str,
        payment_type: str,
        queue_position: int,
        payment_tx_hash: str | None = None,
        authorization_data: dict[str, Any] | None = None,
    ) -> MintQueueRow:
        now = utcnow()
        row = MintQueueRow(
            payer_address=payer_address,
            tx_hash_bytes32=key,
            token_address=token_address,
            payment_type=payment_type,
            payment_tx_hash=payment_tx_hash,
            authorization_data=authorization_data,
            status=MintStatus.PENDING.value,
            queue_position=queue_position,
            created_at=now,
            updated_at=now,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def requeue(self, row: MintQueueRow, queue_position: int) -> None:
        """Put a failed row back at the end of the pending queue."""
        now = utcnow()
        row.status = MintStatus.PENDING.value
        row.queue_position = queue_position
        row.error_message = None
        row.mint_tx_hash = None
        row.processed_at = None
        row.created_at = now
        row.updated_at = now
        await self.session.flush()

    async def oldest_pending(self, limit: int) -> list[MintQueueItem]:
        result = await self.session.execute(
            select(MintQueueRow)
            .where(MintQueueRow.status == MintStatus.PENDING.value)
            .order_by(MintQueueRow.created_at, MintQueueRow.queue_position)
            .limit(limit)
        )
        return [MintQueueItem.from_row(r) for r in result.scalars().all()]

    async def pending_for_pairs(
        self,
        pairs: Iterable[tuple[str, str]],
        limit: int,
    ) -> list[MintQueueItem]:
        """Every pending row whose (payer, token) is in ``pairs``, FIFO."""
        conditions = [
            and_(
                func.lower(MintQueueRow.payer_address) == payer.lower(),
                MintQueueRow.token_address == token,
            )
            for payer, token in pairs
        ]
        if not conditions:
            return []
        result = await self.session.execute(
            select(MintQueueRow)
            .where(MintQueueRow.status == MintStatus.PENDING.value, or_(*conditions))
            .order_by(MintQueueRow.created_at, MintQueueRow.queue_position)
            .limit(limit)
        )
        return [MintQueueItem.from_row(r) for r in result.scalars().all()]

    async def mark_processing(self, ids: Sequence[str]) -> set[str]:
        """Claim pending rows; returns the ids actually claimed."""
        if not ids:
            return set()
        result = await self.session.execute(
            update(MintQueueRow)
            .where(
                MintQueueRow.id.in_(list(ids)),
                MintQueueRow.status == MintStatus.PENDING.value,
            )
            .values(status=MintStatus.PROCESSING.value, updated_at=utcnow())
            .returning(MintQueueRow.id)
            .execution_options(synchronize_session=False)
        )
        return set(result.scalars().all())

    async def complete(
        self,
        items: Sequence[MintQueueItem],
        mint_tx_hash: str | None,
        amount: int | None,
        block_number: int | None,
    ) -> int:
        """
        Mark processing rows completed and copy them into history.

        Only rows still in processing move; a row another path already
        failed gets no history record. Returns the number completed.
        """
        if not items:
            return 0
        now = utcnow()
        ids = [item.id for item in items]
        result = await self.session.execute(
            update(MintQueueRow)
            .where(
                MintQueueRow.id.in_(ids),
                MintQueueRow.status == MintStatus.PROCESSING.value,
            )
            .values(
                status=MintStatus.COMPLETED.value,
                mint_tx_hash=mint_tx_hash,
                error_message=None,
                processed_at=now,
                updated_at=now,
            )
            .returning(MintQueueRow.id)
            .execution_options(synchronize_session=False)
        )
        moved = set(result.scalars().all())
        completed = [item for item in items if item.id in moved]
        if not completed:
            return 0

        existing = await self.session.execute(
            select(MintHistoryRow.tx_hash_bytes32).where(
                MintHistoryRow.tx_hash_bytes32.in_([item.tx_hash_bytes32 for item in completed])
            )
        )
        recorded = set(existing.scalars().all())
        for item in completed:
            if item.tx_hash_bytes32 in recorded:
                continue
            self.session.add(
                MintHistoryRow(
                    payer_address=item.payer_address,
                    payment_tx_hash=item.payment_tx_hash,
                    tx_hash_bytes32=item.tx_hash_bytes32,
                    token_address=item.token_address,
                    mint_tx_hash=mint_tx_hash,
                    amount=str(amount) if amount is not None else None,
                    block_number=block_number,
                    payment_type=item.payment_type,
                    completed_at=now,
                )
            )
        await self.session.flush()
        return len(completed)

    async def fail_processing(self, error: str) -> int:
        """Fail every row currently in processing, bumping its retry count."""
        now = utcnow()
        result = await self.session.execute(
            update(MintQueueRow)
            .where(MintQueueRow.status == MintStatus.PROCESSING.value)
            .values(
                status=MintStatus.FAILED.value,
                error_message=error,
                retry_count=MintQueueRow.retry_count + 1,
                processed_at=now,
                updated_at=now,
            )
        )
        return result.rowcount

    async def fail_linked(
        self,
        payer: str,
        token_address: str,
        around: datetime,
        window_seconds: int,
        error: str,
    ) -> int:
        """Fail live mint rows funded by a payment that did not settle."""
        window = timedelta(seconds=window_seconds)
        now = utcnow()
        result = await self.session.execute(
            update(MintQueueRow)
            .where(
                func.lower(MintQueueRow.payer_address) == payer.lower(),
                MintQueueRow.token_address == token_address,
                MintQueueRow.status.in_(
                    [MintStatus.PENDING.value, MintStatus.PROCESSING.value]
                ),
                MintQueueRow.created_at >= around - window,
                MintQueueRow.created_at <= around + window,
            )
            .values(
                status=MintStatus.FAILED.value,
                error_message=error,
                processed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def list_processing(self) -> list[MintQueueItem]:
        result = await self.session.execute(
            select(MintQueueRow)
            .where(MintQueueRow.status == MintStatus.PROCESSING.value)
            .order_by(MintQueueRow.created_at)
        )
        return [MintQueueItem.from_row(r) for r in result.scalars().all()]

    async def set_status(self, mint_id: str, from_status: MintStatus, to_status: MintStatus, **values: Any) -> bool:
        result = await self.session.execute(
            update(MintQueueRow)
            .where(MintQueueRow.id == mint_id, MintQueueRow.status == from_status.value)
            .values(status=to_status.value, updated_at=utcnow(), **values)
        )
        return result.rowcount == 1

    async def pending_ahead(self, item: MintQueueItem) -> int:
        """Number of pending rows that will be picked before ``item``."""
        result = await self.session.execute(
            select(func.count())
            .select_from(MintQueueRow)
            .where(
                MintQueueRow.status == MintStatus.PENDING.value,
                MintQueueRow.id != item.id,
                or_(
                    MintQueueRow.created_at < item.created_at,
                    and_(
                        MintQueueRow.created_at == item.created_at,
                        MintQueueRow.queue_position < item.queue_position,
                    ),
                ),
            )
        )
        return int(result.scalar_one())

    async def list_for_payer(self, payer: str, limit: int = 10) -> list[MintQueueItem]:
        result = await self.session.execute(
            select(MintQueueRow)
            .where(func.lower(MintQueueRow.payer_address) == payer.lower())
            .order_by(MintQueueRow.created_at.desc())
            .limit(limit)
        )
        return [MintQueueItem.from_row(r) for r in result.scalars().all()]

    async def count_by_status(self) -> dict[str, int]:
        result = await self.session.execute(
            select(MintQueueRow.status, func.count()).group_by(MintQueueRow.status)
        )
        counts = {status.value: 0 for status in MintStatus}
        for status, count in result.all():
            counts[status] = count
        return counts

    async def count_history(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(MintHistoryRow))
        return int(result.scalar_one())


class BatchMintRepository:
    """Repository for batch mint audit rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        batch_tx_hash: str,
        mint_count: int,
        token_address: str | None = None,
        nonce: int | None = None,
    ) -> BatchMintRecord:
        row = BatchMintRow(
            batch_tx_hash=batch_tx_hash,
            mint_count=mint_count,
            token_address=token_address,
            nonce=nonce,
            status=BatchStatus.PENDING.value,
            created_at=utcnow(),
        )
        self.session.add(row)
        await self.session.flush()
        return BatchMintRecord.from_row(row)

    async def confirm(self, batch_tx_hash: str, block_number: int, gas_used: int) -> bool:
        result = await self.session.execute(
            update(BatchMintRow)
            .where(
                BatchMintRow.batch_tx_hash == batch_tx_hash,
                BatchMintRow.status == BatchStatus.PENDING.value,
            )
            .values(
                status=BatchStatus.CONFIRMED.value,
                block_number=block_number,
                gas_used=gas_used,
                confirmed_at=utcnow(),
            )
        )
        return result.rowcount == 1

    async def list_recent(self, limit: int = 10) -> list[BatchMintRecord]:
        result = await self.session.execute(
            select(BatchMintRow).order_by(BatchMintRow.created_at.desc(), BatchMintRow.id.desc()).limit(limit)
        )
        return [BatchMintRecord.from_row(r) for r in result.scalars().all()]

    async def count_by_status(self) -> dict[str, int]:
        result = await self.session.execute(
            select(BatchMintRow.status, func.count()).group_by(BatchMintRow.status)
        )
        counts = {status.value: 0 for status in BatchStatus}
        for status, count in result.all():
            counts[status] = count
        return counts


class SettingsRepository:
    """Key/value settings operators can change while the service runs."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, key: str) -> str | None:
        row = await self.session.get(SystemSettingRow, key)
        return row.value if row else None

    async def get_many(self, keys: Sequence[str]) -> dict[str, str]:
        result = await self.session.execute(
            select(SystemSettingRow).where(SystemSettingRow.key.in_(list(keys)))
        )
        return {row.key: row.value for row in result.scalars().all()}

    async def set(self, key: str, value: Any) -> None:
        row = await self.session.get(SystemSettingRow, key)
        if row is None:
            self.session.add(SystemSettingRow(key=key, value=str(value), updated_at=utcnow()))
        else:
            row.value = str(value)
            row.updated_at = utcnow()
        await self.session.flush()

    async def get_ints(self, defaults: dict[str, int]) -> dict[str, int]:
        """
        Integer settings for ``defaults``' keys.

        Missing keys, unparsable and non-positive values fall back to the
        default.
        """
        stored = await self.get_many(list(defaults))
        values = dict(defaults)
        for key, raw in stored.items():
            try:
                parsed = int(raw)
            except (TypeError, ValueError):
                logger.warning("Ignoring non-integer setting %s=%r", key, raw)
                continue
            if parsed <= 0:
                logger.warning("Ignoring non-positive setting %s=%r", key, raw)
                continue
            values[key] = parsed
        return values
