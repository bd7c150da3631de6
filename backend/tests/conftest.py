"""
Pytest configuration and shared fixtures for backend tests.

WHAT: Centralized test configuration with markers and a wired-up service
WHY: Enable test organization, filtering, and shared test utilities
HOW: Define pytest markers, a fresh SQLite database per test, fake collaborators
"""

import pytest
from decimal import Decimal

from blindtrade.collaborators.catalog import StaticCatalog
from blindtrade.collaborators.factory import reset_collaborators
from blindtrade.collaborators.payment_gateway import SandboxPaymentGateway
from blindtrade.collaborators.types import UserProfile
from blindtrade.collaborators.user_directory import StaticUserDirectory
from blindtrade.core.database import create_db_engine, create_session_factory, init_db
from blindtrade.core.repository import NegotiationRepository
from blindtrade.models.negotiation import EntityType, NegotiationRecord, QuoteInput
from blindtrade.services.negotiation_service import NegotiationService, reset_negotiation_service
from blindtrade.services.state_machine import NegotiationStateMachine

from tests.fixtures.fakes import RecordingRelay
from tests.fixtures.parties import ADMIN_ID, BUYER_ID, ENTITY_ID, SELLER_ID


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (isolated component tests)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (multiple components)"
    )
    config.addinivalue_line(
        "markers", "concurrency: Tests that run competing writers"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take significant time to run"
    )


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset collaborator and service singletons before each test.

    WHAT: Clear factory caches between tests
    WHY: Prevent test pollution and ensure clean state
    HOW: Call the reset helpers before and after each test
    """
    reset_collaborators()
    reset_negotiation_service()
    yield
    reset_collaborators()
    reset_negotiation_service()


@pytest.fixture
def db_engine(tmp_path):
    """
    Create a fresh database for each test.

    WHAT: Setup and teardown test database
    WHY: Ensure test isolation
    HOW: File-backed SQLite in tmp_path so worker threads share it
    """
    engine = create_db_engine(f"sqlite:///{tmp_path / 'negotiations.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def repository(session_factory):
    return NegotiationRepository(session_factory)


@pytest.fixture
def directory():
    """Directory knowing both parties; the outsider has no profile."""
    return StaticUserDirectory({
        BUYER_ID: UserProfile(
            user_id=BUYER_ID,
            name="Asha Verma",
            email="asha@verma-textiles.in",
            phone="+91-98100-00001",
            company_name="Verma Textiles",
        ),
        SELLER_ID: UserProfile(
            user_id=SELLER_ID,
            name="Rahul Mehta",
            email="rahul@mehta-fabrics.in",
            phone="+91-98100-00002",
            company_name="Mehta Fabrics",
            profile_image="https://cdn.example.com/u/seller-2002.png",
        ),
    })


@pytest.fixture
def payments():
    return SandboxPaymentGateway(currency="INR")


@pytest.fixture
def catalog():
    return StaticCatalog()


@pytest.fixture
def relay():
    return RecordingRelay()


@pytest.fixture
def state_machine():
    return NegotiationStateMachine(currency_decimals=2, admin_user_ids={ADMIN_ID})


@pytest.fixture
def service(repository, directory, payments, catalog, relay, state_machine):
    """NegotiationService wired to the test database and fake collaborators."""
    return NegotiationService(
        repository=repository,
        directory=directory,
        payments=payments,
        catalog=catalog,
        relay=relay,
        state_machine=state_machine,
        max_conflict_retries=3,
        governance_fee=Decimal("25.00"),
    )


@pytest.fixture
def started(service):
    """A freshly started negotiation on ENTITY_ID at 5000."""
    return service.start(ENTITY_ID, EntityType.LEAD, BUYER_ID, SELLER_ID, Decimal("5000"))


@pytest.fixture
def record():
    """In-memory STARTED record for state machine tests."""
    return NegotiationRecord(
        entity_id=ENTITY_ID,
        entity_type=EntityType.LEAD,
        buyer_id=BUYER_ID,
        seller_id=SELLER_ID,
        current_offer=Decimal("5000"),
        version=1,
    )


@pytest.fixture
def simple_quote():
    """4500 x 1 at 18% GST, no extras: final 5310.00."""
    return QuoteInput(price=Decimal("4500"), quantity=1, gst_percent=Decimal("18"), product_name="Cotton bales")
