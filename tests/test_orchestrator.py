"""
Minting service: payment completion hand-off and validation.
"""

from unittest.mock import AsyncMock

import pytest
from eth_utils import encode_hex, function_signature_to_4byte_selector

from tokenmint.config import Settings
from tokenmint.core.chain import abi
from tokenmint.core.orchestrator import (
    MintingService,
    PaymentTimeoutError,
    PaymentValidationError,
    build_service,
)
from tokenmint.core.queue.errors import AuthorizationFormatError
from tokenmint.core.queue.idempotency import mint_idempotency_key
from tokenmint.core.queue.models import MintStatus, PaymentStatus, PaymentType

from conftest import PAYER_X, PAYER_Y, TOKEN_A, USDC, make_authorization


TIMESTAMP = 1700000000000


@pytest.fixture
def service(session_factory, payment_queue, mint_queue, config):
    return MintingService(session_factory, payment_queue, mint_queue, config=config)


async def _settle(service, **kwargs):
    kwargs.setdefault("token_address", TOKEN_A)
    payment_id = await service.enqueue_payment(
        kwargs.pop("payment_type", PaymentType.MINT),
        make_authorization(),
        USDC,
        expected_amount=1_000_000,
        **kwargs,
    )
    await service.payment_queue.process_batch()
    await service.payment_queue.check_confirmations()
    return await service.get_payment_status(payment_id)


@pytest.mark.asyncio
async def test_paid_mint_flows_through_both_queues(service, chain):
    payment = await _settle(service, metadata={"quantity": 1, "timestamp": TIMESTAMP})

    assert payment.status == PaymentStatus.COMPLETED
    assert payment.nonce == 7
    assert payment.result["success"] is True
    [mint_id] = payment.result["queueIds"]

    mint = await service.get_mint_status(mint_id)
    assert mint.status == MintStatus.PENDING
    assert mint.item.tx_hash_bytes32 == mint_idempotency_key(PAYER_X, TIMESTAMP, TOKEN_A)
    assert mint.item.payment_tx_hash == payment.tx_hash
    assert mint.item.payment_type == "traditional"

    await service.mint_queue.process_batch()

    mint_tx = chain.sent[-1]
    assert mint_tx.nonce == 12
    assert mint_tx.data.startswith(encode_hex(function_signature_to_4byte_selector(abi.MINT)))
    assert (await service.get_mint_status(mint_id)).status == MintStatus.COMPLETED
    assert (await service.get_mint_stats())["totalMinted"] == 1


@pytest.mark.asyncio
async def test_quantity_queues_one_mint_per_unit(service):
    payment = await _settle(service, metadata={"quantity": 3, "timestamp": TIMESTAMP})

    assert payment.result["quantity"] == 3
    ids = payment.result["queueIds"]
    assert len(set(ids)) == 3

    keys = {(await service.get_mint_status(i)).item.tx_hash_bytes32 for i in ids}
    assert keys == {mint_idempotency_key(PAYER_X, TIMESTAMP + i, TOKEN_A) for i in range(3)}


@pytest.mark.asyncio
async def test_replayed_completion_skips_minted_keys(service):
    payment = await _settle(service, metadata={"timestamp": TIMESTAMP})
    await service.mint_queue.process_batch()

    result = await service.on_payment_completed(payment, payment.tx_hash)

    assert result == {"success": True, "queueIds": [], "quantity": 1}


@pytest.mark.asyncio
async def test_x402_payment_does_not_queue_mints(service):
    payment = await _settle(service, metadata={"x402": True})

    assert payment.result["x402"] is True
    assert (await service.get_mint_stats())["pending"] == 0


@pytest.mark.asyncio
async def test_deploy_payment_calls_deployer(service):
    service.deployer = AsyncMock()
    service.deployer.deploy.return_value = {"success": True, "tokenAddress": TOKEN_A}

    payment = await _settle(
        service,
        payment_type=PaymentType.DEPLOY,
        token_address=None,
        metadata={"name": "Launch", "symbol": "LCH"},
    )

    assert payment.result == {"success": True, "tokenAddress": TOKEN_A}
    service.deployer.deploy.assert_awaited_once_with(
        {"name": "Launch", "symbol": "LCH"}, PAYER_X, payment.tx_hash
    )


@pytest.mark.asyncio
async def test_deploy_payment_without_deployer(service):
    payment = await _settle(service, payment_type=PaymentType.DEPLOY, token_address=None)

    assert payment.status == PaymentStatus.COMPLETED
    assert payment.result["success"] is False


@pytest.mark.asyncio
async def test_mint_payment_without_token(service):
    payment = await _settle(service, token_address=None)

    assert payment.result == {"success": False, "error": "Missing token address"}


@pytest.mark.asyncio
async def test_amount_mismatch_is_rejected(service):
    with pytest.raises(PaymentValidationError):
        await service.enqueue_payment(
            PaymentType.MINT,
            make_authorization(value=999_999),
            USDC,
            token_address=TOKEN_A,
            expected_amount=1_000_000,
        )


@pytest.mark.asyncio
async def test_wrong_recipient_is_rejected(service):
    with pytest.raises(PaymentValidationError):
        await service.enqueue_payment(
            PaymentType.MINT,
            make_authorization(to=PAYER_Y),
            USDC,
            token_address=TOKEN_A,
        )
    assert (await service.get_payment_stats())["total"] == 0


@pytest.mark.asyncio
async def test_malformed_authorization_is_rejected(service):
    raw = make_authorization()
    raw["signature"] = "0xdead"

    with pytest.raises(AuthorizationFormatError):
        await service.enqueue_payment(PaymentType.MINT, raw, USDC, token_address=TOKEN_A)


@pytest.mark.asyncio
async def test_wait_for_payment_returns_terminal_item(service):
    payment = await _settle(service, metadata={"timestamp": TIMESTAMP})

    waited = await service.wait_for_payment(payment.id, timeout=1, poll_interval=0.01)

    assert waited.status == PaymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_wait_for_unknown_payment_returns_none(service):
    assert await service.wait_for_payment("missing", timeout=1, poll_interval=0.01) is None


@pytest.mark.asyncio
async def test_wait_for_payment_times_out(service):
    payment_id = await service.enqueue_payment(
        PaymentType.MINT, make_authorization(), USDC, token_address=TOKEN_A
    )

    with pytest.raises(PaymentTimeoutError) as exc_info:
        await service.wait_for_payment(payment_id, timeout=0.05, poll_interval=0.01)

    assert isinstance(exc_info.value, TimeoutError)
    assert exc_info.value.last_value.status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_quote(service):
    assert service.quote("0.5", 3) == 1_500_000
    assert service.quote("1 USDC") == 1_000_000


@pytest.mark.asyncio
async def test_start_and_close(service, chain):
    await service.start()
    assert service.payment_queue.is_running
    assert service.mint_queue.is_running

    await service.close()

    assert not service.payment_queue.is_running
    assert not service.mint_queue.is_running


def test_build_service_requires_payment_key():
    with pytest.raises(ValueError):
        build_service(Settings(_env_file=None, payment_wallet_private_key=""))


PAYMENT_KEY = "0x" + "11" * 32
MINT_KEY = "0x" + "22" * 32


def _wallet_settings(tmp_path, **overrides):
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'service.db'}",
        payment_wallet_private_key=PAYMENT_KEY,
        **overrides,
    )


def test_build_service_refuses_shared_wallet(tmp_path):
    with pytest.raises(ValueError, match="same wallet"):
        build_service(_wallet_settings(tmp_path, mint_wallet_private_key=""))


@pytest.mark.asyncio
async def test_build_service_shares_allocator_when_allowed(tmp_path):
    service = build_service(_wallet_settings(tmp_path, mint_wallet_private_key="", allow_shared_wallet=True))
    try:
        assert service.payment_queue.wallet.address == service.mint_queue.wallet.address
        assert service.payment_queue.allocator is service.mint_queue.allocator
    finally:
        await service.close()


@pytest.mark.asyncio
async def test_build_service_separate_wallets_get_own_allocators(tmp_path):
    service = build_service(_wallet_settings(tmp_path, mint_wallet_private_key=MINT_KEY))
    try:
        assert service.payment_queue.wallet.address != service.mint_queue.wallet.address
        assert service.payment_queue.allocator is not service.mint_queue.allocator
    finally:
        await service.close()
