"""
Queue primitives

- Models and error taxonomy shared by the payment and mint queues
- RecurringTask: interval scheduling with a busy guard
- await_terminal_state: bounded polling on queue rows

The queues themselves live in payment_processor and mint_processor.
"""

from .errors import (
    AlreadyMintedError,
    AuthorizationFormatError,
    InsufficientSupplyError,
    PollTimeoutError,
    QueueError,
)
from .idempotency import mint_idempotency_key
from .models import (
    BatchMintRecord,
    BatchStatus,
    MintQueueItem,
    MintQueueStatus,
    MintStatus,
    PaymentQueueItem,
    PaymentStatus,
    PaymentType,
    TransferAuthorization,
)
from .polling import await_terminal_state
from .scheduler import RecurringTask

__all__ = [
    "QueueError",
    "AuthorizationFormatError",
    "AlreadyMintedError",
    "InsufficientSupplyError",
    "PollTimeoutError",
    "mint_idempotency_key",
    "BatchMintRecord",
    "BatchStatus",
    "MintQueueItem",
    "MintQueueStatus",
    "MintStatus",
    "PaymentQueueItem",
    "PaymentStatus",
    "PaymentType",
    "TransferAuthorization",
    "await_terminal_state",
    "RecurringTask",
]
