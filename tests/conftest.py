"""Common test fixtures for the Realm PKM service."""

import pytest
from fastapi.testclient import TestClient

from realm_pkm.api.app import create_app
from realm_pkm.config import config
from realm_pkm.models.db_models import init_db
from realm_pkm.observability import metrics
from realm_pkm.security.tokens import JwtTokenProvider
from realm_pkm.services.auth_service import AuthService
from realm_pkm.services.graph_service import GraphService
from realm_pkm.services.note_service import NoteService
from realm_pkm.services.relationship_service import RelationshipService
from realm_pkm.services.search_service import SearchService
from realm_pkm.storage.note_repository import NoteRepository
from realm_pkm.storage.user_repository import UserRepository
from tests.helpers import TEST_SECRET, make_user, register


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep secrets and metrics files inside the test's temp dir."""
    monkeypatch.setattr(config, "jwt_secret", TEST_SECRET)
    monkeypatch.setattr(config, "jwt_expiration_ms", 3_600_000)
    monkeypatch.setattr(config, "bcrypt_rounds", 4)
    monkeypatch.setattr(metrics, "_metrics_file", tmp_path / "metrics.json")
    yield config


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    engine = init_db("sqlite://")
    yield engine
    engine.dispose()


@pytest.fixture
def note_repository(engine):
    return NoteRepository(engine=engine)


@pytest.fixture
def note_service(note_repository):
    return NoteService(repository=note_repository)


@pytest.fixture
def relationship_service(note_service):
    return RelationshipService(note_service)


@pytest.fixture
def graph_service(note_service, relationship_service):
    return GraphService(note_service, relationship_service)


@pytest.fixture
def search_service(note_service, relationship_service):
    return SearchService(note_service, relationship_service)


@pytest.fixture
def user_repository(note_repository):
    return UserRepository(note_repository.session_factory)


@pytest.fixture
def token_provider():
    return JwtTokenProvider(secret=TEST_SECRET, expiration_ms=3_600_000)


@pytest.fixture
def auth_service(user_repository, token_provider):
    return AuthService(user_repository, token_provider)


@pytest.fixture
def user(user_repository):
    return make_user(user_repository, "alice@example.com", "Alice")


@pytest.fixture
def other_user(user_repository):
    return make_user(user_repository, "bob@example.com", "Bob")


@pytest.fixture
def client(engine):
    """HTTP client over an app sharing the test database."""
    with TestClient(create_app(engine=engine)) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(client):
    return register(client)
