"""SQLAlchemy models for the payment and mint queues."""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from tokenmint.db.session import Base
from tokenmint.db.time import utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class PaymentQueueRow(Base):
    """Stablecoin authorization waiting to be redeemed on-chain."""

    __tablename__ = "payment_queue"
    __table_args__ = (
        Index("ix_payment_queue_status_created", "status", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    payment_type: Mapped[str] = mapped_column(String(16), nullable=False)
    token_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    authorization: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    payer: Mapped[str] = mapped_column(String(42), nullable=False)
    # Base units; kept as text so uint256 values survive every backend.
    amount: Mapped[str] = mapped_column(String(78), nullable=False)
    payment_token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    # "metadata" is reserved on declarative classes.
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(24), nullable=False, default="pending")
    nonce: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[Any] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class MintQueueRow(Base):
    """Mint request waiting to be batched."""

    __tablename__ = "mint_queue"
    __table_args__ = (
        Index("ix_mint_queue_status_created", "status", "created_at"),
        Index("ix_mint_queue_payer_token", "payer_address", "token_address"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    payer_address: Mapped[str] = mapped_column(String(42), nullable=False)
    payment_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    authorization_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    # Idempotency key; uniqueness enforced here as well as in application code.
    tx_hash_bytes32: Mapped[str] = mapped_column(String(66), nullable=False, unique=True)
    token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    payment_type: Mapped[str] = mapped_column(String(24), nullable=False, default="x402")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    queue_position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    mint_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class MintHistoryRow(Base):
    """Immutable record of a completed mint."""

    __tablename__ = "mint_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payer_address: Mapped[str] = mapped_column(String(42), nullable=False)
    payment_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    tx_hash_bytes32: Mapped[str] = mapped_column(String(66), nullable=False, unique=True)
    token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    # Null when the mint was reconciled from the contract after a restart.
    mint_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    amount: Mapped[str | None] = mapped_column(String(78), nullable=True)
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    payment_type: Mapped[str] = mapped_column(String(24), nullable=False)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class BatchMintRow(Base):
    """Audit row, one per broadcast mint transaction."""

    __tablename__ = "batch_mints"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_tx_hash: Mapped[str] = mapped_column(String(66), nullable=False, unique=True)
    token_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    mint_count: Mapped[int] = mapped_column(Integer, nullable=False)
    nonce: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    gas_used: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SystemSettingRow(Base):
    """Operator-tunable key/value settings read at the start of each cycle."""

    __tablename__ = "system_settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
