import pytest
from fastapi.testclient import TestClient

from friendfinder.api import app, get_identity_provider, get_settings, get_store
from friendfinder.auth import MemoryIdentityProvider
from friendfinder.config import Settings
from friendfinder.matching import ContactMatchingService
from friendfinder.store import MemoryDocumentStore

API_KEY = "test-api-key"


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def matching(store):
    return ContactMatchingService(store)


@pytest.fixture
def api(store):
    provider = MemoryIdentityProvider()
    app.dependency_overrides[get_settings] = lambda: Settings(api_key=API_KEY)
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_identity_provider] = lambda: provider
    client = TestClient(app)
    client.headers.update({"X-API-Key": API_KEY})
    yield client
    app.dependency_overrides.clear()
