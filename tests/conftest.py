import shutil
from pathlib import Path

import pytest
import pytest_asyncio

from nutclaim.claim import migrations as migrations_claim
from nutclaim.claim.cross_mint import CrossMintQuoteResolver
from nutclaim.claim.orchestrator import QuoteOrchestrator
from nutclaim.claim.receive_quote import ReceiveQuoteService
from nutclaim.claim.session import ClaimSession
from nutclaim.claim.store import SqliteClaimStore
from nutclaim.claim.token_swap import TokenSwapService
from nutclaim.core.db import Database
from nutclaim.core.migrations import migrate_databases
from nutclaim.core.settings import settings
from nutclaim.wallet.wallet import WalletProvider
from tests.mocks import FakeNetwork

MINT_A = "http://mint-a.test"
MINT_B = "http://mint-b.test"
TEST_MNEMONIC = (
    "half depart obvious quality work element tank gorilla view sugar picture"
    " humble"
)

settings.debug = True
settings.log_level = "TRACE"
settings.nutclaim_dir = "./test_data/"
settings.claim_poll_interval_seconds = 0.05
settings.claim_rate_limited_poll_interval_seconds = 0.2
settings.claim_transport_backoff_max_seconds = 0.2
settings.claim_degraded_after_failures = 3
settings.claim_cross_mint_max_attempts = 5
settings.claim_version_conflict_retries = 3
settings.claim_quote_description = None

assert "test" in settings.nutclaim_dir
shutil.rmtree(settings.nutclaim_dir, ignore_errors=True)
Path(settings.nutclaim_dir).mkdir(parents=True, exist_ok=True)


@pytest_asyncio.fixture(scope="function")
async def db(tmp_path):
    db = Database("claim", str(tmp_path))
    await migrate_databases(db, migrations_claim)
    yield db
    await db.close()


@pytest_asyncio.fixture(scope="function")
async def store(db):
    yield SqliteClaimStore(db)


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def mint_a(network):
    return network.add_mint(MINT_A)


@pytest.fixture
def mint_b(network):
    return network.add_mint(MINT_B)


@pytest.fixture
def session():
    session = ClaimSession.from_mnemonic(TEST_MNEMONIC)
    yield session
    session.close()


@pytest.fixture
def wallets(session, network):
    return WalletProvider(
        session,
        ledger_factory=network.ledger_factory,
        subscription_factory=network.subscription_factory,
    )


@pytest_asyncio.fixture(scope="function")
async def account(store, mint_a):
    yield await store.create_account("user1", MINT_A, "sat")


@pytest.fixture
def receive_quotes(session, store, wallets):
    return ReceiveQuoteService(
        session, store, wallets, resolver=CrossMintQuoteResolver()
    )


@pytest.fixture
def token_swaps(session, store, wallets):
    return TokenSwapService(session, store, wallets)


@pytest.fixture
def orchestrator(session, store, wallets, receive_quotes, token_swaps):
    return QuoteOrchestrator(session, store, wallets, receive_quotes, token_swaps)
