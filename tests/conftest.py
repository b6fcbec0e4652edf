"""
Shared Test Fixtures for the Escrow Release Client
Provides the fake backend server, a deterministic clock, an isolated local
store and pre-wired client/service objects.

Key Components:
1. FakeBackend served over real HTTP via aiohttp.test_utils.TestServer
2. FakeClock for polling and cache timing
3. Per-test in-memory SQLite local store
4. EscrowApiClient, SecureLinkIssuer and EscrowWorkflowService wired together
"""

import logging

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestServer
from sqlalchemy.orm import sessionmaker

from database import build_engine, create_tables
from caching.view_cache import ViewCache
from services.escrow_api_client import EscrowApiClient
from services.escrow_workflow_service import EscrowWorkflowService
from services.external_token_store import ExternalTokenStore
from services.idempotency_service import IdempotencyService
from services.poll_watcher import PollScheduler
from services.retry_service import RetryService
from services.secure_link_issuer import SecureLinkIssuer
from utils.network_health import NetworkHealth
from utils.session_context import SessionContext
from tests.fixtures import FakeBackend, FakeClock, no_sleep

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store_session_factory():
    """Fresh in-memory local store per test"""
    engine = build_engine("sqlite:///:memory:")
    create_tables(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def token_store(store_session_factory):
    return ExternalTokenStore(session_factory=store_session_factory)


@pytest.fixture
def idempotency(store_session_factory):
    return IdempotencyService(session_factory=store_session_factory)


@pytest.fixture
def fast_retry():
    return RetryService(max_attempts=3, initial_delay=0, max_delay=0, jitter=False, sleep=no_sleep)


@pytest.fixture
def view_cache(clock):
    return ViewCache(stale_after=300, clock=clock)


@pytest.fixture
def health(clock):
    return NetworkHealth(clock=clock)


@pytest_asyncio.fixture
async def backend():
    """Fake backend listening on a local port"""
    fake = FakeBackend()
    fake.seed_escrow("42", status="FUNDED")
    server = TestServer(fake.app)
    await server.start_server()
    fake.base_url = str(server.make_url("")).rstrip("/")
    yield fake
    await server.close()


@pytest.fixture
def session_context(backend):
    return SessionContext(auth_token=backend.auth_token, user_id="u-sender")


@pytest_asyncio.fixture
async def api_client(backend, session_context, view_cache, fast_retry, health):
    client = EscrowApiClient(
        session_context,
        base_url=backend.base_url,
        cache=view_cache,
        retry_service=fast_retry,
        health=health,
    )
    yield client
    await client.close()


@pytest_asyncio.fixture
async def scheduler(view_cache, clock):
    poller = PollScheduler(cache=view_cache, clock=clock, sleep=clock.sleep)
    yield poller
    await poller.shutdown()


@pytest.fixture
def issuer(api_client, view_cache):
    return SecureLinkIssuer(api_client, cache=view_cache)


@pytest.fixture
def workflow(api_client, view_cache, scheduler, idempotency):
    return EscrowWorkflowService(
        api_client,
        cache=view_cache,
        scheduler=scheduler,
        idempotency=idempotency,
    )
