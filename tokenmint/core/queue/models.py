"""
Queue models and types.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from tokenmint.db.time import as_utc

from .errors import AuthorizationFormatError


class PaymentType(str, Enum):
    """What a payment funds."""
    DEPLOY = "deploy"
    MINT = "mint"


class PaymentStatus(str, Enum):
    """Payment lifecycle status."""
    PENDING = "pending"                          # Enqueued, not yet picked up
    PROCESSING = "processing"                    # Nonce assigned, tx being built
    SENT = "sent"                                # Broadcast, awaiting receipt
    COMPLETED = "completed"                      # Receipt success, callback ran
    FAILED = "failed"                            # Broadcast error
    CONFIRMATION_FAILED = "confirmation_failed"  # Reverted or never confirmed

    @property
    def is_terminal(self) -> bool:
        return self in {
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
            PaymentStatus.CONFIRMATION_FAILED,
        }


class MintStatus(str, Enum):
    """Mint request lifecycle status."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {MintStatus.COMPLETED, MintStatus.FAILED}


class BatchStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


_HEX_CHARS = set("0123456789abcdefABCDEF")


def _strip_hex(value: str, length: Optional[int] = None, label: str = "value") -> str:
    body = value[2:] if value.startswith(("0x", "0X")) else value
    if not body or not set(body) <= _HEX_CHARS:
        raise AuthorizationFormatError(f"Invalid {label}: not hex")
    if length is not None and len(body) != length:
        raise AuthorizationFormatError(f"Invalid {label}: expected {length} hex chars, got {len(body)}")
    return body


def _normalize_v(v: int) -> int:
    # Legacy recovery ids 0/1 map onto 27/28
    if v in (0, 1):
        return v + 27
    if v not in (27, 28):
        raise AuthorizationFormatError(f"Invalid signature recovery id: {v}")
    return v


class TransferAuthorization(BaseModel):
    """
    EIP-3009 transfer authorization signed by the payer.

    Accepts either a packed 65-byte ``signature`` or separate ``v``/``r``/``s``.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    from_address: str = Field(alias="from")
    to: str
    value: int
    valid_after: int = Field(default=0, alias="validAfter")
    valid_before: int = Field(alias="validBefore")
    nonce: str
    signature: Optional[str] = None
    v: Optional[int] = None
    r: Optional[str] = None
    s: Optional[str] = None

    @model_validator(mode="after")
    def _require_signature(self) -> "TransferAuthorization":
        if not self.signature and (self.v is None or not self.r or not self.s):
            raise ValueError("Invalid authorization format: missing signature or v/r/s fields")
        return self

    @classmethod
    def parse(cls, raw: Any) -> "TransferAuthorization":
        """Validate a raw authorization payload, raising AuthorizationFormatError."""
        if isinstance(raw, TransferAuthorization):
            return raw
        if not isinstance(raw, dict):
            raise AuthorizationFormatError("Authorization must be an object")
        try:
            auth = cls.model_validate(raw)
        except ValidationError as e:
            raise AuthorizationFormatError(str(e)) from e
        _strip_hex(auth.nonce, 64, "authorization nonce")
        auth.split_signature()
        return auth

    def split_signature(self) -> Tuple[int, str, str]:
        """(v, r, s) with v normalized to 27/28."""
        if self.signature:
            sig = _strip_hex(self.signature, 130, "signature")
            r = "0x" + sig[0:64]
            s = "0x" + sig[64:128]
            v = int(sig[128:130], 16)
            return _normalize_v(v), r, s

        r = "0x" + _strip_hex(self.r or "", 64, "signature r")
        s = "0x" + _strip_hex(self.s or "", 64, "signature s")
        return _normalize_v(int(self.v)), r, s

    def to_payload(self) -> Dict[str, Any]:
        """JSON form stored with the queue row."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


@dataclass
class PaymentQueueItem:
    """A queued stablecoin payment."""
    id: str
    payment_type: PaymentType
    authorization: Dict[str, Any]
    payer: str
    amount: str
    payment_token_address: str
    status: PaymentStatus
    token_address: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    nonce: Optional[int] = None
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    result: Any = None
    created_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "PaymentQueueItem":
        return cls(
            id=row.id,
            payment_type=PaymentType(row.payment_type),
            authorization=row.authorization,
            payer=row.payer,
            amount=row.amount,
            payment_token_address=row.payment_token_address,
            status=PaymentStatus(row.status),
            token_address=row.token_address,
            metadata=row.metadata_,
            nonce=row.nonce,
            tx_hash=row.tx_hash,
            error=row.error,
            result=row.result,
            created_at=as_utc(row.created_at),
            sent_at=as_utc(row.sent_at),
            processed_at=as_utc(row.processed_at),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "paymentId": self.id,
            "paymentType": self.payment_type.value,
            "status": self.status.value,
            "payer": self.payer,
            "amount": self.amount,
            "paymentTokenAddress": self.payment_token_address,
            "tokenAddress": self.token_address,
            "nonce": self.nonce,
            "txHash": self.tx_hash,
            "error": self.error,
            "result": self.result,
            "createdAt": _iso(self.created_at),
            "sentAt": _iso(self.sent_at),
            "processedAt": _iso(self.processed_at),
        }


@dataclass
class MintQueueItem:
    """A queued mint request."""
    id: str
    payer_address: str
    tx_hash_bytes32: str
    token_address: str
    payment_type: str
    status: MintStatus
    queue_position: int = 0
    payment_tx_hash: Optional[str] = None
    authorization_data: Optional[Dict[str, Any]] = None
    mint_tx_hash: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "MintQueueItem":
        return cls(
            id=row.id,
            payer_address=row.payer_address,
            tx_hash_bytes32=row.tx_hash_bytes32,
            token_address=row.token_address,
            payment_type=row.payment_type,
            status=MintStatus(row.status),
            queue_position=row.queue_position,
            payment_tx_hash=row.payment_tx_hash,
            authorization_data=row.authorization_data,
            mint_tx_hash=row.mint_tx_hash,
            error_message=row.error_message,
            retry_count=row.retry_count,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
            processed_at=as_utc(row.processed_at),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "payerAddress": self.payer_address,
            "paymentTxHash": self.payment_tx_hash,
            "txHashBytes32": self.tx_hash_bytes32,
            "tokenAddress": self.token_address,
            "paymentType": self.payment_type,
            "status": self.status.value,
            "mintTxHash": self.mint_tx_hash,
            "errorMessage": self.error_message,
            "retryCount": self.retry_count,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "processedAt": _iso(self.processed_at),
        }


@dataclass
class MintQueueStatus:
    """Mint status with a position computed at read time."""
    item: MintQueueItem
    queue_position: Optional[int] = None
    estimated_wait_seconds: int = 0

    @property
    def status(self) -> MintStatus:
        return self.item.status

    def to_dict(self) -> Dict[str, Any]:
        data = self.item.to_dict()
        data["queuePosition"] = self.queue_position
        data["estimatedWaitSeconds"] = self.estimated_wait_seconds
        return data


@dataclass
class BatchMintRecord:
    """Audit view of one broadcast mint transaction."""
    batch_tx_hash: str
    mint_count: int
    status: BatchStatus
    token_address: Optional[str] = None
    nonce: Optional[int] = None
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    created_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "BatchMintRecord":
        return cls(
            batch_tx_hash=row.batch_tx_hash,
            mint_count=row.mint_count,
            status=BatchStatus(row.status),
            token_address=row.token_address,
            nonce=row.nonce,
            block_number=row.block_number,
            gas_used=row.gas_used,
            created_at=as_utc(row.created_at),
            confirmed_at=as_utc(row.confirmed_at),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batchTxHash": self.batch_tx_hash,
            "mintCount": self.mint_count,
            "status": self.status.value,
            "tokenAddress": self.token_address,
            "nonce": self.nonce,
            "blockNumber": self.block_number,
            "gasUsed": self.gas_used,
            "createdAt": _iso(self.created_at),
            "confirmedAt": _iso(self.confirmed_at),
        }
