"""
Root test configuration and fixtures.

Provides database fixtures that can be used by all tests, plus:
- fake_clock / response_cache: cache with an explicitly advanced clock
- make_yaml_config: Factory for writing plan catalogs to a temp dir
- sign_stripe_payload: Stripe-Signature header builder
- make_session_token: HS256 session JWT builder
"""

import hashlib
import hmac
import os
import tempfile
import time
from pathlib import Path
from typing import Generator

import jwt
import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from creditgate.config.settings import reset_settings
from creditgate.db_base import Base
from creditgate.entitlements.cache import ResponseCache
from creditgate.entitlements.loader import get_plan_catalog, reset_plan_catalog
import creditgate.models  # noqa: F401 - registers tables

# Set test environment
os.environ.setdefault("ENV", "test")

TEST_WEBHOOK_SECRET = "whsec_test_secret"
TEST_SESSION_SECRET = "test-session-secret"


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Settings and the plan catalog are process-wide; rebuild them per test."""
    reset_settings()
    reset_plan_catalog()
    yield
    reset_settings()
    reset_plan_catalog()


@pytest.fixture
def db_engine():
    """
    SQLite in-memory engine with every table created.

    Function-scoped: services commit, so each test gets a fresh database
    instead of an outer transaction to roll back.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(
        autocommit=False, autoflush=False, expire_on_commit=False, bind=db_engine
    )
    session = SessionLocal()

    yield session

    session.close()


@pytest.fixture
def file_db_engine(tmp_path):
    """File-backed SQLite engine; each session gets its own connection."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'creditgate.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    engine.dispose()


@pytest.fixture
def catalog():
    """The bundled plan catalog."""
    return get_plan_catalog()


@pytest.fixture
def identity_factory(db_session):
    """Create (or fetch) an identity by email."""
    from creditgate.services.identity_service import IdentityService

    def _make(email: str = "owner@example.com"):
        return IdentityService(db_session).get_or_create(email)
    return _make


# =============================================================================
# Cache
# =============================================================================


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def response_cache(fake_clock):
    return ResponseCache(clock=fake_clock)


# =============================================================================
# Signing helpers
# =============================================================================


@pytest.fixture
def sign_stripe_payload():
    """
    Build a Stripe-Signature header for a payload.

    Usage:
        header = sign_stripe_payload(payload_bytes)
    """
    def _sign(payload: bytes, secret: str = TEST_WEBHOOK_SECRET, timestamp: int = None) -> str:
        timestamp = int(time.time()) if timestamp is None else timestamp
        signed = f"{timestamp}.".encode("utf-8") + payload
        signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={signature}"
    return _sign


@pytest.fixture
def make_session_token():
    """Build an HS256 session JWT for an email."""
    def _make(email: str, secret: str = TEST_SESSION_SECRET, expires_in: int = 3600, **extra) -> str:
        now = int(time.time())
        claims = {"sub": f"acct-{email}", "email": email, "iat": now, "exp": now + expires_in}
        claims.update(extra)
        return jwt.encode(claims, secret, algorithm="HS256")
    return _make


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "security: mark test as security-focused")
    config.addinivalue_line("markers", "slow: mark test as slow-running")


# =============================================================================
# Shared Config Fixtures
# =============================================================================


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("plans.yml", {"products": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
