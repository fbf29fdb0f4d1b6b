"""
Queue error taxonomy.

Validation errors are raised synchronously from enqueue; everything that
happens inside a background cycle is converted into a row state instead.
"""

from typing import Optional


class QueueError(Exception):
    """Base exception for queue errors."""
    pass


class AuthorizationFormatError(QueueError):
    """Transfer authorization is missing fields or carries a malformed signature."""
    pass


class AlreadyMintedError(QueueError):
    """Idempotency key was already minted."""

    def __init__(self, key: str):
        super().__init__(f"Already minted: {key}")
        self.key = key


class InsufficientSupplyError(QueueError):
    """Token contract cannot cover the group's requested amount."""

    def __init__(self, required: int, remaining: int, token_address: Optional[str] = None):
        super().__init__(f"Insufficient supply: need {required}, have {remaining}")
        self.required = required
        self.remaining = remaining
        self.token_address = token_address


class PollTimeoutError(QueueError, TimeoutError):
    """A watched item did not reach a terminal state before the deadline."""

    def __init__(self, message: str, last_value: object = None):
        super().__init__(message)
        self.last_value = last_value
