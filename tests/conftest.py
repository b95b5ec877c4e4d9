"""
Shared Test Fixtures for the Launch Engine
Provides in-memory and file-backed sqlite databases, a deterministic custody
service, a scripted RPC double and the in-memory execution queue.

Key Components:
1. Database fixtures built from models.Base (StaticPool in-memory, file-backed for threads)
2. Key custody with a fixed master secret
3. Fake RPC client with per-address balances
4. Factories for keypairs, pool addresses and launched tokens
"""

import logging
from decimal import Decimal
from typing import Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import build_engine
from jobs.execution_queue import InMemoryExecutionQueue
from models import Base
from services.address_pool_service import AddressPoolService
from services.buy_distribution import BuyDistributionGenerator
from services.key_custody_service import KeyCustodyService, generate_keypair, secret_of
from services.launch_orchestrator import LaunchOrchestrator
from services.retry_data_service import RetryDataService
from services.transaction_ledger import TransactionLedger
from services.wallet_service import WalletService
from utils.exception_handler import TransientChainError

logger = logging.getLogger(__name__)

TEST_MASTER_SECRET = "test-master-secret-do-not-use"


class FakeSolanaRPC:
    """RPC double: balances in SOL per public key, optional scripted failure"""

    def __init__(self):
        self.balances: Dict[str, Decimal] = {}
        self.fail_with: Optional[Exception] = None
        self.parsed = None
        self.calls: List[str] = []

    def get_balance_sol(self, public_key: str) -> Decimal:
        self.calls.append(public_key)
        if self.fail_with is not None:
            raise self.fail_with
        return self.balances.get(public_key, Decimal("0"))

    def parse_transaction_amounts(self, signature, wallet, mint, is_sell):
        if self.parsed is None:
            raise TransientChainError("no scripted transaction")
        return self.parsed


@pytest.fixture
def engine():
    """Fresh in-memory database per test"""
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed database so concurrent threads get their own connections"""
    file_engine = build_engine(f"sqlite:///{tmp_path / 'launch_engine_test.db'}")
    Base.metadata.create_all(file_engine)
    yield sessionmaker(bind=file_engine, autocommit=False, autoflush=False)
    file_engine.dispose()


@pytest.fixture(scope="session")
def custody():
    """Custody service with a fixed master secret (scrypt derived once per session)"""
    return KeyCustodyService(secret=TEST_MASTER_SECRET)


@pytest.fixture
def make_secret():
    """Factory for fresh base58 keypair secrets"""
    def _make():
        return secret_of(generate_keypair())
    return _make


@pytest.fixture
def pool(session_factory, custody):
    return AddressPoolService(session_factory=session_factory, custody=custody)


@pytest.fixture
def ledger(session_factory):
    return TransactionLedger(session_factory=session_factory)


@pytest.fixture
def wallets(session_factory, custody):
    return WalletService(session_factory=session_factory, custody=custody)


@pytest.fixture
def retry_data(session_factory):
    return RetryDataService(session_factory=session_factory)


@pytest.fixture
def fake_rpc():
    return FakeSolanaRPC()


@pytest.fixture
def queue():
    return InMemoryExecutionQueue()


@pytest.fixture
def orchestrator(session_factory, custody, pool, fake_rpc, queue, wallets, retry_data):
    return LaunchOrchestrator(
        queue=queue,
        session_factory=session_factory,
        custody=custody,
        pool=pool,
        rpc=fake_rpc,
        distribution=BuyDistributionGenerator(),
        wallets=wallets,
        retry_data=retry_data,
    )
