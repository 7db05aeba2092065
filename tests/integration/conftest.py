"""
Integration test configuration and fixtures.

The gateway app is built with ``create_app`` around the in-memory record
store from the top-level conftest, so every HTTP route runs through the
real middleware, rate limiter, exception handlers and services.
"""
from typing import Any, Callable, Dict, Iterator

import pytest
from fastapi.testclient import TestClient

from config.settings import Settings
from ingestion.signature import compute_signature
from main import create_app
from middleware.rate_limiter import limiter

TEST_SIGNING_KEY = "integration-secret"


@pytest.fixture(autouse=True)
def reset_rate_limits() -> Iterator[None]:
    """The slowapi limiter is module-global; clear its counters around each test."""
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
def signed_settings(test_settings: Settings) -> Settings:
    """Development settings with signature verification enabled."""
    return test_settings.model_copy(update={"signing_key": TEST_SIGNING_KEY})


@pytest.fixture
def client(test_settings, memory_store) -> Iterator[TestClient]:
    """Client for a gateway with a store and no signing key."""
    app = create_app(settings=test_settings, store=memory_store)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def signed_client(signed_settings, memory_store) -> Iterator[TestClient]:
    """Client for a gateway that verifies device signatures."""
    app = create_app(settings=signed_settings, store=memory_store)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def storeless_client(test_settings) -> Iterator[TestClient]:
    """Client for a development gateway with no record store configured."""
    app = create_app(settings=test_settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def sign() -> Callable[[Dict[str, Any]], Dict[str, Any]]:
    """Return a function that adds a valid signature to a payload copy."""
    def _sign(payload: Dict[str, Any], key: str = TEST_SIGNING_KEY) -> Dict[str, Any]:
        signed = dict(payload)
        signed["signature"] = compute_signature(payload, key)
        return signed
    return _sign
