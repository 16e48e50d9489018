"""
Shared fixtures and chain/oracle/reputation doubles for the TrustLedger tests.

Key components:
1. `db` - a fresh SQLite (aiosqlite) file database per test, schema created
2. FakeProvider - in-memory chain head, logs and receipts
3. FakeOracle / FakeEngine - ownership answers and recorded recomputes
4. Log builders for DepositReceived events
"""

import logging
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from trustledger.chain import DEPOSIT_TOPIC, ChainEvent, Receipt, TreasuryContract
from trustledger.config import get_settings
from trustledger.database import Database
from trustledger.errors import ChainRpcError
from trustledger.schemas import ScoreChange
from trustledger.wallets import credit_wallet, get_wallet

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

# EIP-55 reference vectors
ALICE = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
BOB = "0xfB6916095ca1df60bB79Ce92cE3Ea74c37c5d359"
TREASURY = "0xdbF03B407c01E7cD3CBea99509d93f8DDDC8C6FB"
INSTITUTION = "0xD1220A0cf47c7B9Be7A2E6BA89F429762e7b9aDb"

ONE_TOKEN = 10 ** 18


def tx_hash(n: int) -> str:
    return "0x" + format(n, "064x")


def deposit_log(user: str, amount_raw: int, tx: str, log_index: int, block_number: int, emitter: str = TREASURY) -> ChainEvent:
    return ChainEvent(
        address=emitter,
        topics=[DEPOSIT_TOPIC, "0x" + "0" * 24 + user[2:].lower()],
        data="0x" + format(amount_raw, "064x"),
        tx_hash=tx,
        log_index=log_index,
        block_number=block_number,
    )


class FakeProvider:
    """Chain double: head, logs for eth_getLogs, receipts by hash."""

    def __init__(self, head: int = 100):
        self.head = head
        self.logs: List[ChainEvent] = []
        self.receipts: Dict[str, Receipt] = {}
        self.queries: List[Tuple[int, int]] = []
        self.fail_times = 0

    def _maybe_fail(self):
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ChainRpcError("node unavailable")

    async def get_block_number(self) -> int:
        self._maybe_fail()
        return self.head

    async def query_filter(self, event_filter, from_block: int, to_block: int) -> List[ChainEvent]:
        self._maybe_fail()
        self.queries.append((from_block, to_block))
        out = [
            e for e in self.logs
            if from_block <= e.block_number <= to_block and e.address.lower() == event_filter.address.lower()
        ]
        return sorted(out, key=lambda e: (e.block_number, e.log_index))

    async def get_transaction_receipt(self, tx: str) -> Optional[Receipt]:
        return self.receipts.get(tx.lower())

    def add_receipt(self, tx: str, logs: List[ChainEvent], status: int = 1, block_number: int = 0) -> None:
        self.receipts[tx.lower()] = Receipt(tx_hash=tx, status=status, block_number=block_number, logs=logs)

    async def aclose(self) -> None:
        pass


class FakeOracle:
    """owners[(token_id, contract_kind)] = address"""

    def __init__(self):
        self.owners: Dict[Tuple[str, str], str] = {}
        self.calls: List[Tuple[str, str, str]] = []

    async def verify_ownership(self, user: str, token_id, contract_kind: str = "issuer_batch") -> bool:
        self.calls.append((user, str(token_id), contract_kind))
        owner = self.owners.get((str(token_id), contract_kind))
        return owner is not None and owner.lower() == user.lower()


class FakeEngine:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: List[str] = []

    async def recompute_score(self, wallet: str) -> ScoreChange:
        self.calls.append(wallet)
        if self.fail:
            raise RuntimeError("score engine down")
        return ScoreChange(changed=True, level="GOLD", total_score=Decimal("80"))


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
def provider():
    return FakeProvider(head=100)


@pytest.fixture
def contract():
    return TreasuryContract(TREASURY)


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def engine():
    return FakeEngine()


async def fund(database: Database, wallet: str, amount: str, role: str = "USER") -> Decimal:
    async with database.session_scope() as s:
        return await credit_wallet(s, wallet, role, amount, "BILL_CREDIT", "test-funding")


async def balance_of(database: Database, wallet: str) -> Decimal:
    async with database.session_scope() as s:
        return (await get_wallet(s, wallet, None)).balance
