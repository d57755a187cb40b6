"""Pytest configuration and fixtures."""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, get_db
from main import app
from api.authorizations import get_session_registry
from api.gocardless import get_aggregator_client, get_institution_directory
from services.authorization_sessions import AuthorizationSessionRegistry
from services.flow_service import FlowService
from services.institution_directory import InstitutionDirectory
# Pytest fixtures - imported to make them available to tests
from tests.fixtures import (  # noqa: F401
    bank_account,
    connection,
    linked_account,
    second_linked_account,
)
from tests.fixtures.mocks import (
    SAMPLE_ACCOUNTS,
    SAMPLE_INSTITUTIONS,
    MockGocardlessClient,
    expected_balance,
)


@pytest.fixture(name="db")
def db_fixture():
    """Create an in-memory SQLite database for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(name="mock_gocardless")
def mock_gocardless_fixture():
    """Create a mock GoCardless client with sample institutions and accounts."""
    return MockGocardlessClient(
        institutions=SAMPLE_INSTITUTIONS,
        accounts=SAMPLE_ACCOUNTS,
        balances={
            "acc-main": [expected_balance("1520.35")],
            "acc-savings": [expected_balance("8000.00")],
        },
    )


@pytest.fixture(name="session_registry")
def session_registry_fixture(mock_gocardless):
    """Authorization session registry with a fast watcher poll."""
    registry = AuthorizationSessionRegistry(
        FlowService(mock_gocardless), poll_interval=0.01, timeout=30.0
    )
    yield registry
    registry.close_all()


@pytest.fixture(name="client")
def client_fixture(db, mock_gocardless, session_registry):
    """Create a test client with the test database and mock GoCardless."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    directory = InstitutionDirectory(mock_gocardless)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_aggregator_client] = lambda: mock_gocardless
    app.dependency_overrides[get_institution_directory] = lambda: directory
    app.dependency_overrides[get_session_registry] = lambda: session_registry
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture(name="failing_gocardless")
def failing_gocardless_fixture():
    """A GoCardless client whose every call fails with a network error."""
    return MockGocardlessClient(
        should_fail=True,
        failure_type="connection",
        failure_message="GoCardless unreachable",
    )


@pytest.fixture(name="client_with_failing_gocardless")
def client_with_failing_gocardless_fixture(db, failing_gocardless):
    """Create a test client whose GoCardless calls all fail."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    directory = InstitutionDirectory(failing_gocardless)
    registry = AuthorizationSessionRegistry(FlowService(failing_gocardless), poll_interval=0.01)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_aggregator_client] = lambda: failing_gocardless
    app.dependency_overrides[get_institution_directory] = lambda: directory
    app.dependency_overrides[get_session_registry] = lambda: registry
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
    registry.close_all()
