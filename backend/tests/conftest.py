"""
Pytest configuration and shared fixtures for backend tests.

WHAT: Centralized test configuration, markers and negotiation fixtures
WHY: Every layer is tested against the same listings, clock and database
HOW: Point settings at a throwaway database before importing the app, then
     build an isolated in-memory repository and manager per test
"""

import os
import tempfile

_TEST_DIR = tempfile.mkdtemp(prefix="haggle-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TEST_DIR}/negotiations.db")
os.environ.setdefault("LOG_FILE", f"{_TEST_DIR}/app.log")
os.environ.setdefault("LISTING_SERVICE_URL", "")
os.environ.setdefault("EXPIRY_SWEEP_ENABLED", "false")
os.environ.setdefault("LLM_PROVIDER", "lm_studio")

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from haggle.agents.counter_offer_agent import LLMCounterOfferAgent
from haggle.core.database import Base, build_engine
from haggle.core.negotiation_manager import NegotiationManager, reset_negotiation_manager
from haggle.core.repository import NegotiationRepository
from haggle.llm.provider_factory import reset_provider
from haggle.services.listing_lookup import (
    InMemoryListingDirectory,
    ListingTerms,
    reset_listing_lookup,
)
from tests.fixtures.mock_llm import MockLLMProvider
from tests.fixtures.negotiations import RESPONDER, FakeClock, make_listing

import haggle.core.models  # noqa: F401  registers the negotiations table

MOCK_COUNTER_RESPONSE = (
    '```json\n{"action": "counter", "message": "I can do 120.", '
    '"amount": 120, "confidence": 0.8}\n```'
)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (isolated component tests)")
    config.addinivalue_line("markers", "integration: Integration tests (multiple components)")
    config.addinivalue_line("markers", "engine: Negotiation engine tests")
    config.addinivalue_line("markers", "persistence: Repository and database tests")
    config.addinivalue_line("markers", "api: HTTP endpoint tests")
    config.addinivalue_line("markers", "agent: Counter-offer agent and LLM provider tests")
    config.addinivalue_line("markers", "slow: Tests that take significant time to run")


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset process-wide singletons around each test.

    WHAT: Clear provider, listing lookup and manager caches
    WHY: Prevent test pollution through module-level state
    HOW: Call the reset helpers before and after each test
    """
    reset_provider()
    reset_listing_lookup()
    reset_negotiation_manager()
    yield
    reset_provider()
    reset_listing_lookup()
    reset_negotiation_manager()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def listing():
    """Plain listing: asking 150, floor 80, no agent."""
    return make_listing()


@pytest.fixture
def agent_listing():
    """Listing whose responder delegates replies to the agent."""
    return ListingTerms(
        listing_id="listing-agent",
        owner_id=RESPONDER,
        title="Espresso machine",
        base_price=200.0,
        min_price=100.0,
        agent_assisted=True,
    )


@pytest.fixture
def listings(listing, agent_listing):
    return InMemoryListingDirectory([listing, agent_listing])


@pytest.fixture
def db_engine():
    """
    Fresh in-memory database per test.

    WHAT: One shared SQLite connection with the schema created
    WHY: Ensure test isolation without touching disk
    HOW: StaticPool keeps the single in-memory connection alive
    """
    test_engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
def repository(session_factory):
    return NegotiationRepository(session_factory)


@pytest.fixture
def mock_provider():
    return MockLLMProvider(responses=[MOCK_COUNTER_RESPONSE])


@pytest.fixture
def agent(mock_provider):
    return LLMCounterOfferAgent(mock_provider)


@pytest.fixture
def manager(repository, listings, agent, clock):
    """Manager wired to the in-memory database, listings, mock agent and fake clock."""
    negotiation_manager = NegotiationManager(
        repository=repository,
        listing_lookup=listings,
        agent=agent,
        clock=clock,
    )
    yield negotiation_manager
    negotiation_manager.stop_expiry_sweeper()
