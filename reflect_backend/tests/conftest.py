# reflect_backend/tests/conftest.py
import time

import jwt
import pytest
from fastapi.testclient import TestClient

from reflect_backend.core.config import settings
from reflect_backend.core.database import init_engine, create_all_tables, dispose_engine
from reflect_backend.features.billing import service as billing_service
from reflect_backend.models.identity import IdentityClaim
from reflect_backend.tests.fakes import FakeProvider

TEST_ISSUER = "https://auth.reflect.test/auth/v1"
TEST_SECRET = "reflect-test-signing-secret-0123456789abcdef"


def make_token(sub: str = "user-1", email: str = "user1@example.com", iss: str = TEST_ISSUER, secret: str = TEST_SECRET, **extra) -> str:
    claims = {"sub": sub, "iss": iss, "email": email, "exp": int(time.time()) + 3600}
    claims.update(extra)
    return jwt.encode({k: v for k, v in claims.items() if v is not None}, secret, algorithm="HS256")


def auth_header(**kwargs) -> dict:
    return {"Authorization": f"Bearer {make_token(**kwargs)}"}


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    """No test talks to Stripe, Groq, the auth authority or the directory."""
    for key in (
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "GROQ_API_KEY",
        "AUTH_JWT_SECRET",
        "AUTH_USER_URL",
        "DIRECTORY_URL",
        "DIRECTORY_SERVICE_KEY",
        "ADMIN_KEY",
    ):
        monkeypatch.setattr(settings, key, None)
    monkeypatch.setattr(settings, "FREE_TIER_JOURNAL_LIMIT", 3)
    monkeypatch.setattr(settings, "STRIPE_PRICE_TIERS", "")
    monkeypatch.setattr(settings, "SYNC_DELAY_SECONDS", 0.0)
    yield


@pytest.fixture(autouse=True)
def db():
    """Fresh in-memory SQLite database per test."""
    engine = init_engine("sqlite://")
    create_all_tables()
    yield engine
    dispose_engine()


@pytest.fixture
def identity():
    return IdentityClaim(subject_id="user-1", issuer=TEST_ISSUER, email="user1@example.com")


@pytest.fixture
def fake_provider(monkeypatch):
    provider = FakeProvider()
    monkeypatch.setattr(billing_service, "get_provider", lambda: provider)
    return provider


@pytest.fixture
def client():
    from reflect_backend.main import app

    with TestClient(app) as test_client:
        yield test_client
