"""
Nonce allocation for one signing account.

Hands out transaction sequence numbers to concurrent callers without
repeats, and resynchronizes against the chain's pending transaction count
on initialization and after broadcast failures.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Protocol


logger = logging.getLogger(__name__)


class NonceSource(Protocol):
    async def get_transaction_count(self, address: str, tag: str = "pending") -> int: ...


class NonceStrategy(str, Enum):
    """How often the allocator consults the chain."""
    EAGER = "eager"      # Re-read the pending count before every issuance
    CACHED = "cached"    # Increment locally; read the chain only when uninitialized


@dataclass
class NonceState:
    """Tracks nonce state for one account."""
    address: str
    next_nonce: Optional[int] = None             # Next value to hand out
    last_issued: Optional[int] = None
    syncing: bool = False
    last_synced: Optional[datetime] = None
    issued_count: int = 0
    resync_count: int = 0
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class NonceAllocator:
    """
    Issues nonces for a single account.

    Features:
    - Two strategies: eager (chain read per issuance) and cached
    - At most one chain resync in flight; concurrent callers join it
    - Forced resync after broadcast failures (recover_from_failure)

    Issuance itself never suspends between reading and advancing the
    counter, so concurrent callers on one event loop cannot observe the
    same value.
    """

    def __init__(
        self,
        chain: NonceSource,
        address: str,
        strategy: NonceStrategy = NonceStrategy.CACHED,
        name: Optional[str] = None,
    ):
        self.chain = chain
        self.address = address
        self.strategy = NonceStrategy(strategy)
        self.name = name or address[:10]
        self._state = NonceState(address=address.lower())
        self._sync_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> NonceState:
        return self._state

    @property
    def is_initialized(self) -> bool:
        return self._state.next_nonce is not None

    async def initialize(self) -> None:
        """Load the pending-inclusive nonce from the chain; no-op once loaded."""
        if self.is_initialized:
            return
        await self._sync(reset=True)
        logger.info(
            "NonceAllocator[%s] initialized for %s, starting nonce: %s (%s)",
            self.name,
            self.address,
            self._state.next_nonce,
            self.strategy.value,
        )

    async def get_next(self) -> int:
        """
        Reserve and return the next nonce.

        Chain read errors during a resync propagate to the caller.
        """
        if self.strategy == NonceStrategy.EAGER:
            await self._sync(reset=False)
        elif self._state.next_nonce is None or self._state.syncing:
            await self._sync(reset=not self.is_initialized)

        state = self._state
        nonce = state.next_nonce
        state.next_nonce = nonce + 1
        state.last_issued = nonce
        state.issued_count += 1
        state.last_updated = datetime.now(timezone.utc)

        logger.debug("NonceAllocator[%s] issued nonce %d", self.name, nonce)
        return nonce

    def confirm_used(self, nonce: int) -> None:
        """Bookkeeping hook; state already advanced at issuance."""
        logger.debug("NonceAllocator[%s] nonce %d confirmed on-chain", self.name, nonce)

    async def recover_from_failure(self, nonce: Optional[int] = None) -> None:
        """
        Discard cached state and resync from the chain.

        Called after a broadcast failure so the next issuance neither reuses
        a consumed nonce nor skips one that never reached the network.
        """
        logger.warning(
            "NonceAllocator[%s] resyncing after failure (nonce=%s, cached next=%s)",
            self.name,
            nonce,
            self._state.next_nonce,
        )
        await self._sync(reset=True, force=True)

    async def _sync(self, *, reset: bool, force: bool = False) -> None:
        """
        Run or join a chain resync.

        ``reset`` replaces the cached value with the chain's; otherwise the
        cached value only moves forward, so numbers already handed out whose
        transactions have not reached the mempool are not issued twice.
        ``force`` starts a fresh read once any in-flight one finishes.
        """
        inflight = self._sync_task
        if inflight is not None and not inflight.done():
            await asyncio.shield(inflight)
            if not force:
                return

        task = asyncio.ensure_future(self._fetch_and_apply(reset))
        self._sync_task = task
        try:
            await asyncio.shield(task)
        finally:
            if self._sync_task is task and task.done():
                self._sync_task = None

    async def _fetch_and_apply(self, reset: bool) -> None:
        state = self._state
        state.syncing = True
        try:
            chain_nonce = await self.chain.get_transaction_count(self.address, "pending")
            if reset or state.next_nonce is None or chain_nonce > state.next_nonce:
                state.next_nonce = chain_nonce
            state.resync_count += 1
            state.last_synced = datetime.now(timezone.utc)
            state.last_updated = state.last_synced
        finally:
            state.syncing = False

    def get_state(self) -> Dict[str, Any]:
        """Current nonce state for observability."""
        state = self._state
        return {
            "address": self.address,
            "strategy": self.strategy.value,
            "currentNonce": state.next_nonce,
            "lastIssued": state.last_issued,
            "syncing": state.syncing,
            "issuedCount": state.issued_count,
            "resyncCount": state.resync_count,
            "lastSynced": state.last_synced.isoformat() if state.last_synced else None,
        }
