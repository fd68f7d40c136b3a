"""
Root test configuration and fixtures.

Every test gets its own SQLite in-memory database: the reconciler commits
and rolls back its own transactions, so an outer test transaction cannot be
used for isolation.

Shared fixtures:
- db_engine / db_session: fresh schema per test
- plan_registry: free (default), basic (trial) and pro plans
- make_event: factory for NormalizedEvent instances
- link_customer: map a user to a provider customer id
- make_yaml_config: write YAML configs to a temp dir
"""

import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator

import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from paygate.billing.events import EventType, NormalizedEvent
from paygate.config.plans import Plan, PlanRegistry

os.environ.setdefault("ENV", "test")

WEBHOOK_SECRET = "whsec_test_secret"

BASE_TIME = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def build_test_engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    from paygate.db_base import Base
    import paygate.models  # noqa: F401 - register models on Base

    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture(scope="function")
def db_engine():
    """SQLite in-memory engine with all tables created."""
    engine = build_test_engine()
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    yield session
    session.close()


def build_plan_registry() -> PlanRegistry:
    return PlanRegistry([
        Plan(id="free", name="Free", free=True, default=True),
        Plan(id="basic", name="Basic", price_id="price_basic", trial=True, trial_days=14),
        Plan(id="pro", name="Pro", price_id="price_pro"),
    ])


@pytest.fixture
def plan_registry() -> PlanRegistry:
    return build_plan_registry()


@pytest.fixture
def make_event():
    """
    Factory for NormalizedEvent.

    Usage:
        event = make_event(EventType.PAYMENT_FAILED, offset=60, sequence=3)

    offset is seconds after BASE_TIME.
    """
    def _make(event_type: EventType, offset: int = 0, **fields) -> NormalizedEvent:
        fields.setdefault("event_id", f"evt_{uuid.uuid4().hex[:16]}")
        fields.setdefault("provider_customer_id", "cus_test")
        return NormalizedEvent(
            type=event_type,
            occurred_at=BASE_TIME + timedelta(seconds=offset),
            **fields
        )
    return _make


@pytest.fixture
def link_customer(db_session):
    """Persist a user <-> provider customer mapping."""
    from paygate.repositories.customer_repository import BillingCustomerRepository

    def _link(user_id: str = "user-1", provider_customer_id: str = "cus_test"):
        customer = BillingCustomerRepository(db_session).link(user_id, provider_customer_id)
        db_session.commit()
        return customer
    return _link


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "security: mark test as security-focused")
    config.addinivalue_line("markers", "slow: mark test as slow-running")


# =============================================================================
# Config fixtures
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
        config_path = make_yaml_config("plans.yml", {"plans": [...]})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
