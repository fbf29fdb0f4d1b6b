"""
Mint batch queue tests.
"""

import pytest
from eth_utils import encode_hex, function_signature_to_4byte_selector
from sqlalchemy import select

from tokenmint.core.chain import TokenContract, abi
from tokenmint.core.chain.errors import RpcError
from tokenmint.core.execution import NonceAllocator, NonceStrategy
from tokenmint.core.queue.errors import AlreadyMintedError
from tokenmint.core.queue.mint_processor import MintBatchQueue
from tokenmint.core.queue.models import BatchStatus, MintStatus
from tokenmint.db.models import MintHistoryRow
from tokenmint.db.repositories import MintQueueRepository, SettingsRepository
from tokenmint.db.time import utcnow

from conftest import MINT_WALLET, PAYER_X, PAYER_Y, TOKEN_A, TOKEN_B


MINT_SELECTOR = encode_hex(function_signature_to_4byte_selector(abi.MINT))
BATCH_MINT_SELECTOR = encode_hex(function_signature_to_4byte_selector(abi.BATCH_MINT))


def key(n: int) -> str:
    return "0x" + format(n, "064x")


@pytest.fixture
def make_queue(session_factory, mint_wallet, chain, config):
    def _make(token_factory=None, **overrides):
        allocator = NonceAllocator(chain, MINT_WALLET, NonceStrategy.CACHED, name="mint")
        return MintBatchQueue(
            session_factory,
            mint_wallet,
            allocator,
            config=config.model_copy(update=overrides),
            token_factory=token_factory,
        )
    return _make


async def _statuses(queue, ids):
    await queue.clear_status_cache()
    return [(await queue.get_status(i)).status for i in ids]


# =============================================================================
# Enqueue and idempotency
# =============================================================================


@pytest.mark.asyncio
async def test_same_key_returns_existing_row(mint_queue):
    first = await mint_queue.enqueue(PAYER_X, key(1), TOKEN_A)
    second = await mint_queue.enqueue(PAYER_X, key(1), TOKEN_A)

    assert first == second
    stats = await mint_queue.get_stats()
    assert stats["pending"] == 1


@pytest.mark.asyncio
async def test_key_in_history_is_rejected(mint_queue, session_factory):
    async with session_factory() as session:
        async with session.begin():
            session.add(
                MintHistoryRow(
                    payer_address=PAYER_X,
                    tx_hash_bytes32=key(2),
                    token_address=TOKEN_A,
                    payment_type="x402",
                )
            )

    with pytest.raises(AlreadyMintedError) as exc_info:
        await mint_queue.enqueue(PAYER_X, key(2), TOKEN_A)

    assert exc_info.value.key == key(2)
    assert await mint_queue.get_payer_status(PAYER_X) == []


@pytest.mark.asyncio
async def test_failed_key_is_requeued_then_rejected_once_minted(mint_queue, chain):
    chain.token(TOKEN_A).remaining = 0
    mint_id = await mint_queue.enqueue(PAYER_X, key(3), TOKEN_A)
    await mint_queue.process_batch()

    failed = (await mint_queue.get_status(mint_id)).item
    assert failed.status == MintStatus.FAILED
    assert failed.retry_count == 1

    assert await mint_queue.enqueue(PAYER_X, key(3), TOKEN_A) == mint_id
    requeued = (await mint_queue.get_status(mint_id)).item
    assert requeued.status == MintStatus.PENDING
    assert requeued.retry_count == 1
    assert requeued.error_message is None

    chain.token(TOKEN_A).remaining = 10**30
    await mint_queue.process_batch()
    assert (await mint_queue.get_status(mint_id)).status == MintStatus.COMPLETED

    with pytest.raises(AlreadyMintedError):
        await mint_queue.enqueue(PAYER_X, key(3), TOKEN_A)


# =============================================================================
# Batch cycle
# =============================================================================


@pytest.mark.asyncio
async def test_empty_queue_sends_nothing(mint_queue, chain):
    assert await mint_queue.process_batch() is True

    assert chain.sent == []
    assert chain.count_calls == 0


@pytest.mark.asyncio
async def test_one_transaction_per_token(mint_queue, chain):
    a_ids = [await mint_queue.enqueue(PAYER_X, key(10 + i), TOKEN_A) for i in range(3)]
    b_id = await mint_queue.enqueue(PAYER_Y, key(20), TOKEN_B)

    await mint_queue.process_batch()

    assert [tx.to for tx in chain.sent] == [TOKEN_A, TOKEN_B]
    batch_tx, single_tx = chain.sent
    assert (batch_tx.nonce, single_tx.nonce) == (12, 13)
    assert batch_tx.data.startswith(BATCH_MINT_SELECTOR)
    assert batch_tx.gas == 100_000 + 50_000 * 3
    assert single_tx.data.startswith(MINT_SELECTOR)
    assert single_tx.gas == 150_000
    # 0.1 gwei x 110% + 0.001 gwei tip
    assert batch_tx.max_fee_per_gas == 111_000_000
    assert batch_tx.max_priority_fee_per_gas == 1_000_000

    for mint_id in a_ids:
        status = await mint_queue.get_status(mint_id)
        assert status.status == MintStatus.COMPLETED
        assert status.item.mint_tx_hash == batch_tx.tx_hash
        assert status.queue_position is None
    assert (await mint_queue.get_status(b_id)).item.mint_tx_hash == single_tx.tx_hash

    stats = await mint_queue.get_stats()
    assert stats["completed"] == 4
    assert stats["totalMinted"] == 4
    assert stats["batches"]["confirmed"] == 2

    batches = await mint_queue.get_recent_batches()
    assert {b.batch_tx_hash for b in batches} == {batch_tx.tx_hash, single_tx.tx_hash}
    assert all(b.status == BatchStatus.CONFIRMED for b in batches)


@pytest.mark.asyncio
async def test_payer_burst_is_kept_together(mint_queue, chain, session_factory):
    async with session_factory() as session:
        async with session.begin():
            await SettingsRepository(session).set("max_batch_size", 5)

    burst = [await mint_queue.enqueue(PAYER_X, key(100 + i), TOKEN_A) for i in range(8)]
    later = [await mint_queue.enqueue(PAYER_Y, key(200 + i), TOKEN_A) for i in range(2)]

    await mint_queue.process_batch()

    assert mint_queue.max_batch_size == 5
    assert len(chain.sent) == 1
    assert chain.sent[0].gas == 100_000 + 50_000 * 8
    assert await _statuses(mint_queue, burst) == [MintStatus.COMPLETED] * 8
    assert await _statuses(mint_queue, later) == [MintStatus.PENDING] * 2


@pytest.mark.asyncio
async def test_burst_is_capped_by_hard_limit(make_queue, chain):
    queue = make_queue(mint_max_batch_size=5, mint_batch_hard_limit=6)
    ids = [await queue.enqueue(PAYER_X, key(300 + i), TOKEN_A) for i in range(8)]

    await queue.process_batch()

    statuses = await _statuses(queue, ids)
    assert statuses == [MintStatus.COMPLETED] * 6 + [MintStatus.PENDING] * 2


async def _history_keys(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(MintHistoryRow.tx_hash_bytes32))
        return set(result.scalars().all())


async def _fail_payer_rows(session_factory, payer, token):
    async with session_factory() as session:
        async with session.begin():
            await MintQueueRepository(session).fail_linked(
                payer=payer,
                token_address=token,
                around=utcnow(),
                window_seconds=120,
                error="Payment failed: Transaction reverted",
            )


@pytest.mark.asyncio
async def test_row_failed_before_claim_is_not_minted(mint_queue, chain, session_factory):
    doomed = await mint_queue.enqueue(PAYER_X, key(60), TOKEN_A)
    kept = await mint_queue.enqueue(PAYER_Y, key(61), TOKEN_A)
    select_batch = mint_queue._select_batch

    async def select_then_fail():
        batch = await select_batch()
        await _fail_payer_rows(session_factory, PAYER_X, TOKEN_A)
        return batch

    mint_queue._select_batch = select_then_fail
    await mint_queue.process_batch()

    assert len(chain.sent) == 1
    assert chain.sent[0].data.startswith(MINT_SELECTOR)
    assert await _statuses(mint_queue, [doomed, kept]) == [MintStatus.FAILED, MintStatus.COMPLETED]
    assert await _history_keys(session_factory) == {key(61)}


@pytest.mark.asyncio
async def test_group_with_no_claimed_rows_sends_nothing(mint_queue, chain, session_factory):
    doomed = await mint_queue.enqueue(PAYER_X, key(62), TOKEN_A)
    select_batch = mint_queue._select_batch

    async def select_then_fail():
        batch = await select_batch()
        await _fail_payer_rows(session_factory, PAYER_X, TOKEN_A)
        return batch

    mint_queue._select_batch = select_then_fail
    await mint_queue.process_batch()

    assert chain.sent == []
    assert chain.count_calls == 0
    assert await _statuses(mint_queue, [doomed]) == [MintStatus.FAILED]


@pytest.mark.asyncio
async def test_row_failed_during_confirmation_gets_no_history(mint_queue, chain, session_factory):
    doomed = await mint_queue.enqueue(PAYER_X, key(63), TOKEN_A)
    kept = await mint_queue.enqueue(PAYER_Y, key(64), TOKEN_A)
    wait_for_receipt = chain.wait_for_receipt

    async def fail_then_wait(tx_hash, **kwargs):
        await _fail_payer_rows(session_factory, PAYER_X, TOKEN_A)
        return await wait_for_receipt(tx_hash, **kwargs)

    chain.wait_for_receipt = fail_then_wait
    await mint_queue.process_batch()

    assert await _statuses(mint_queue, [doomed, kept]) == [MintStatus.FAILED, MintStatus.COMPLETED]
    assert await _history_keys(session_factory) == {key(64)}
    assert (await mint_queue.get_stats())["totalMinted"] == 1


@pytest.mark.asyncio
async def test_insufficient_supply_fails_group_without_sending(mint_queue, chain):
    token = chain.token(TOKEN_A)
    token.remaining = token.mint_amount
    ids = [await mint_queue.enqueue(PAYER_X, key(400 + i), TOKEN_A) for i in range(2)]

    await mint_queue.process_batch()

    assert chain.sent == []
    for mint_id in ids:
        item = (await mint_queue.get_status(mint_id)).item
        assert item.status == MintStatus.FAILED
        assert item.error_message.startswith("Insufficient supply")
    # The reserved nonce was released by the resync
    assert mint_queue.allocator.state.next_nonce == 12


@pytest.mark.asyncio
async def test_failed_group_does_not_block_other_tokens(mint_queue, chain):
    chain.token(TOKEN_A).remaining = 0
    a_id = await mint_queue.enqueue(PAYER_X, key(500), TOKEN_A)
    b_id = await mint_queue.enqueue(PAYER_Y, key(501), TOKEN_B)

    await mint_queue.process_batch()

    assert await _statuses(mint_queue, [a_id, b_id]) == [MintStatus.FAILED, MintStatus.COMPLETED]
    assert chain.sent[0].nonce == 12


@pytest.mark.asyncio
async def test_reverted_mint_fails_rows(mint_queue, chain):
    chain.revert_next = True
    ids = [await mint_queue.enqueue(PAYER_X, key(600 + i), TOKEN_A) for i in range(2)]

    await mint_queue.process_batch()

    for mint_id in ids:
        item = (await mint_queue.get_status(mint_id)).item
        assert item.status == MintStatus.FAILED
        assert "reverted" in item.error_message
    batches = await mint_queue.get_recent_batches()
    assert batches[0].status == BatchStatus.PENDING
    assert mint_queue.allocator.state.next_nonce == 13
    assert (await mint_queue.get_stats())["totalMinted"] == 0


@pytest.mark.asyncio
async def test_receipt_timeout_fails_rows(mint_queue, chain):
    chain.auto_confirm = False
    mint_id = await mint_queue.enqueue(PAYER_X, key(700), TOKEN_A)

    await mint_queue.process_batch()

    item = (await mint_queue.get_status(mint_id)).item
    assert item.status == MintStatus.FAILED
    assert "timeout" in item.error_message


# =============================================================================
# Status
# =============================================================================


@pytest.mark.asyncio
async def test_position_is_computed_at_read_time(make_queue, session_factory):
    queue = make_queue(mint_max_batch_size=1)
    ids = [await queue.enqueue(PAYER_X, key(800 + i), TOKEN_A) for i in range(4)]

    status = await queue.get_status(ids[3])
    assert status.queue_position == 4
    assert status.estimated_wait_seconds == 40

    async with session_factory() as session:
        async with session.begin():
            repo = MintQueueRepository(session)
            for mint_id in ids[:2]:
                await repo.set_status(mint_id, MintStatus.PENDING, MintStatus.COMPLETED)

    # Served from the cache until it expires or a cycle clears it
    assert (await queue.get_status(ids[3])).queue_position == 4

    await queue.clear_status_cache()
    status = await queue.get_status(ids[3])
    assert status.queue_position == 2
    assert status.estimated_wait_seconds == 20
    assert status.to_dict()["queuePosition"] == 2


@pytest.mark.asyncio
async def test_unknown_mint_returns_none(mint_queue):
    assert await mint_queue.get_status("missing") is None


@pytest.mark.asyncio
async def test_payer_status_newest_first(mint_queue):
    ids = [await mint_queue.enqueue(PAYER_X, key(900 + i), TOKEN_A) for i in range(3)]
    await mint_queue.enqueue(PAYER_Y, key(950), TOKEN_A)

    items = await mint_queue.get_payer_status(PAYER_X, limit=2)

    assert [item.id for item in items] == [ids[2], ids[1]]


# =============================================================================
# Recovery and lifecycle
# =============================================================================


class UnreadableToken(TokenContract):
    async def has_minted(self, key: str) -> bool:
        raise RpcError("execution reverted", method="eth_call")


@pytest.mark.asyncio
async def test_recover_stuck_reconciles_with_contract(make_queue, chain, session_factory):
    queue = make_queue(
        token_factory=lambda address: (
            UnreadableToken(chain, address) if address == TOKEN_B else TokenContract(chain, address)
        )
    )
    minted_id = await queue.enqueue(PAYER_X, key(1000), TOKEN_A)
    unminted_id = await queue.enqueue(PAYER_X, key(1001), TOKEN_A)
    unknown_id = await queue.enqueue(PAYER_Y, key(1002), TOKEN_B)
    async with session_factory() as session:
        async with session.begin():
            await MintQueueRepository(session).mark_processing([minted_id, unminted_id, unknown_id])
    chain.token(TOKEN_A).minted.add(key(1000))

    summary = await queue.recover_stuck()

    assert summary == {"completed": 1, "requeued": 1, "skipped": 1}
    minted = (await queue.get_status(minted_id)).item
    assert minted.status == MintStatus.COMPLETED
    assert minted.mint_tx_hash is None
    assert (await queue.get_status(unminted_id)).status == MintStatus.PENDING
    assert (await queue.get_status(unknown_id)).status == MintStatus.PROCESSING
    assert (await queue.get_stats())["totalMinted"] == 1


@pytest.mark.asyncio
async def test_start_and_stop(mint_queue, chain):
    await mint_queue.start()
    try:
        assert mint_queue.is_running
        assert mint_queue.allocator.is_initialized
    finally:
        await mint_queue.stop()

    assert not mint_queue.is_running
    assert chain.count_calls == 1
