"""
Shared fixtures: temporary SQLite database, fake chain and fake signing wallets.
"""

import itertools
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

import pytest
import pytest_asyncio

from tokenmint.config import Settings
from tokenmint.core.chain.errors import RpcError, TransactionTimeoutError
from tokenmint.core.chain.models import Block, Receipt
from tokenmint.core.execution import NonceAllocator, NonceStrategy
from tokenmint.core.queue.mint_processor import MintBatchQueue
from tokenmint.core.queue.payment_processor import PaymentSettlementQueue
from tokenmint.db.session import build_engine, build_session_factory, create_tables


PAYMENT_WALLET = "0x1111111111111111111111111111111111111111"
MINT_WALLET = "0x2222222222222222222222222222222222222222"
RECIPIENT = "0x3333333333333333333333333333333333333333"
USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
TOKEN_A = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
TOKEN_B = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
PAYER_X = "0x4444444444444444444444444444444444444444"
PAYER_Y = "0x5555555555555555555555555555555555555555"

SIGNATURE = "0x" + "11" * 32 + "22" * 32 + "1b"


def make_authorization(payer: str = PAYER_X, value: int = 1_000_000, to: str = RECIPIENT, nonce_byte: str = "ab") -> dict:
    return {
        "from": payer,
        "to": to,
        "value": str(value),
        "validAfter": "0",
        "validBefore": "9999999999",
        "nonce": "0x" + nonce_byte * 32,
        "signature": SIGNATURE,
    }


@dataclass
class SentTx:
    sender: str
    to: str
    data: str
    nonce: int
    gas: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    tx_hash: str


@dataclass
class FakeToken:
    remaining: int = 1_000_000 * 10**18
    mint_amount: int = 1000 * 10**18
    minted: Set[str] = field(default_factory=set)


class FakeChain:
    """In-process stand-in for ChainClient."""

    def __init__(self, nonces: Optional[Dict[str, int]] = None, base_fee: Optional[int] = 100_000_000):
        self.nonces = {k.lower(): v for k, v in (nonces or {}).items()}
        self.base_fee = base_fee
        self.tokens: Dict[str, FakeToken] = {}
        self.receipts: Dict[str, Receipt] = {}
        self.sent: List[SentTx] = []
        self.count_calls = 0
        self.auto_confirm = True
        self.revert_next = False
        self.block_number = 1000
        self._hashes = itertools.count(1)

    def token(self, address: str) -> FakeToken:
        return self.tokens.setdefault(address.lower(), FakeToken())

    async def get_transaction_count(self, address: str, tag: str = "pending") -> int:
        self.count_calls += 1
        return self.nonces.get(address.lower(), 0)

    async def get_block(self, tag: str = "latest") -> Block:
        return Block(number=self.block_number, base_fee_per_gas=self.base_fee)

    async def read_contract(self, address, signature, args=(), returns=("uint256",)):
        token = self.token(address)
        name = signature.split("(")[0]
        if name == "mintAmount":
            return token.mint_amount
        if name == "remainingSupply":
            return token.remaining
        if name == "hasMinted":
            return args[0] in token.minted
        raise RpcError(f"Unsupported call {signature}", method="eth_call")

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Receipt]:
        return self.receipts.get(tx_hash)

    async def wait_for_receipt(self, tx_hash: str, confirmations: int = 1, timeout: float = 120.0) -> Receipt:
        receipt = self.receipts.get(tx_hash)
        if receipt is None:
            raise TransactionTimeoutError(f"Confirmation timeout after {timeout}s: {tx_hash}", tx_hash=tx_hash)
        return receipt

    def confirm(self, tx_hash: str, success: bool = True) -> Receipt:
        self.block_number += 1
        receipt = Receipt(
            tx_hash=tx_hash,
            success=success,
            block_number=self.block_number,
            gas_used=90_000,
            effective_gas_price=110_000_000,
        )
        self.receipts[tx_hash] = receipt
        return receipt

    def record_send(self, sender: str, **tx) -> str:
        tx_hash = "0x" + format(next(self._hashes), "064x")
        self.sent.append(SentTx(sender=sender, tx_hash=tx_hash, **tx))
        key = sender.lower()
        self.nonces[key] = max(self.nonces.get(key, 0), tx["nonce"] + 1)
        if self.auto_confirm:
            self.confirm(tx_hash, success=not self.revert_next)
        return tx_hash


class FakeWallet:
    """Signs nothing; records the transaction on the fake chain."""

    def __init__(self, chain: FakeChain, address: str):
        self.chain = chain
        self.address = address
        self.fail_nonces: Set[int] = set()

    async def send_transaction(self, *, to, data, nonce, gas, max_fee_per_gas, max_priority_fee_per_gas, value=0):
        if nonce in self.fail_nonces:
            raise RpcError("nonce too low", method="eth_sendRawTransaction")
        return self.chain.record_send(
            self.address,
            to=to,
            data=data,
            nonce=nonce,
            gas=gas,
            max_fee_per_gas=max_fee_per_gas,
            max_priority_fee_per_gas=max_priority_fee_per_gas,
        )


@pytest.fixture
def config():
    return Settings(
        _env_file=None,
        payment_recipient_address=RECIPIENT,
        payment_wallet_private_key="",
        mint_wallet_private_key="",
        payment_batch_size=10,
        mint_max_batch_size=10,
        mint_batch_hard_limit=200,
        status_cache_ttl_seconds=3,
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    # File-backed so concurrent sessions each get their own connection
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def chain():
    return FakeChain(nonces={PAYMENT_WALLET: 7, MINT_WALLET: 12})


@pytest.fixture
def payment_wallet(chain):
    return FakeWallet(chain, PAYMENT_WALLET)


@pytest.fixture
def mint_wallet(chain):
    return FakeWallet(chain, MINT_WALLET)


@pytest.fixture
def payment_queue(session_factory, payment_wallet, chain, config):
    allocator = NonceAllocator(chain, PAYMENT_WALLET, NonceStrategy.CACHED, name="payment")
    return PaymentSettlementQueue(session_factory, payment_wallet, allocator, config=config)


@pytest.fixture
def mint_queue(session_factory, mint_wallet, chain, config):
    allocator = NonceAllocator(chain, MINT_WALLET, NonceStrategy.CACHED, name="mint")
    return MintBatchQueue(session_factory, mint_wallet, allocator, config=config)
