"""
Pytest configuration for identity_server. In-memory SQLite and a throwaway signing key,
so tests don't touch the working directory.
"""
import os
import tempfile
from datetime import datetime, timedelta, timezone

# Must be set before identity_server.config is imported
os.environ["AUTH_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["OAUTH_SIGNING_KEY_PATH"] = os.path.join(tempfile.mkdtemp(prefix="identity-keys-"), "signing_key.pem")
os.environ["IDENTITY_SESSION_SECRET"] = "test-session-secret-0123456789abcdef"
os.environ["IDENTITY_ENVIRONMENT"] = "Test"
os.environ["OAUTH_RATE_LIMIT_LOGIN_PER_MINUTE"] = "0"
os.environ["OAUTH_RATE_LIMIT_TOKEN_PER_MINUTE"] = "0"
for name in ("OAUTH_SEED_USER_EMAIL", "OAUTH_SEED_PASSWORD", "OAUTH_SEED_TENANT_ID", "OAUTH_SEED_DISPLAY_NAME"):
    os.environ.pop(name, None)

import pytest
from fastapi.testclient import TestClient

from identity_server.clients import CLIENTS, ClientRegistry
from identity_server.database import SessionLocal, engine, init_db
from identity_server.models import Base
from identity_server.scopes import API_SCOPES, IDENTITY_RESOURCES, ScopeCatalog
from identity_server.tokens import pkce_challenge
from identity_server.users import UserStore

PASSWORD = "Correct-Horse-Battery-Staple-9"


class FakeClock:
    """Injected 'now' for expiry and lockout tests."""

    def __init__(self, start):
        self.current = start

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime.now(timezone.utc).replace(microsecond=0))


@pytest.fixture
def db():
    """Fresh schema per test; the in-memory database is shared by every connection."""
    Base.metadata.drop_all(bind=engine)
    init_db()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clients():
    return ClientRegistry(CLIENTS)


@pytest.fixture
def scopes():
    return ScopeCatalog(IDENTITY_RESOURCES, API_SCOPES)


@pytest.fixture
def password():
    return PASSWORD


@pytest.fixture
def user(db):
    return UserStore(db).create_user("Ada@Example.com", PASSWORD, "tenant-a", display_name="Ada Lovelace")


@pytest.fixture
def client(db):
    """HTTPS base URL so the Secure session cookie is sent back."""
    from identity_server.main import app

    return TestClient(app, base_url="https://testserver")


@pytest.fixture
def pkce_pair():
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    return verifier, pkce_challenge(verifier)
