"""Shared test fixtures."""
import asyncio
import os
from datetime import datetime, timedelta
from typing import Generator

# Keep get_engine() (used by the API lifespan) off the working directory
os.environ.setdefault("FIELDSYNC_DATABASE_URL", "sqlite://")

import pytest
from cryptography.fernet import Fernet
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from fieldsync.models.sync import SyncConfiguration, SyncCycleLease, SyncRecord  # noqa: F401
from fieldsync.adapters.base import DeliveryResult, TargetAdapter
from fieldsync.crypto import CredentialCipher
from fieldsync.store.leases import CycleLeaseStore
from fieldsync.store.records import RecordStore
from fieldsync.store.registry import TargetRegistry
from fieldsync.sync.retry import RetryPolicy

START = datetime(2025, 1, 15, 9, 0)


class FakeClock:
    """Deterministic replacement for utcnow()."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class Stall:
    """Scripted outcome: sleep this long, then succeed (used to force timeouts)."""

    def __init__(self, seconds: float):
        self.seconds = seconds


class ScriptedAdapter(TargetAdapter):
    """Adapter that plays back a list of outcomes, then succeeds forever."""

    name = "scripted"

    def __init__(self, outcomes=None, delay: float = 0.0):
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.calls = []
        self.credentials = []

    async def deliver(self, payload, config_options, credentials, *, idempotency_key, record_type):
        self.calls.append(idempotency_key)
        self.credentials.append(credentials)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if self.outcomes else DeliveryResult.success()
        if isinstance(outcome, Stall):
            await asyncio.sleep(outcome.seconds)
            return DeliveryResult.success()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher(Fernet.generate_key().decode())


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(
        base_delay=timedelta(seconds=60),
        max_delay=timedelta(hours=1),
        max_attempts=5,
        permanent_multiplier=4.0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(engine, policy) -> RecordStore:
    return RecordStore(engine, policy=policy, claim_lease=timedelta(minutes=5))


@pytest.fixture
def registry(engine, cipher) -> TargetRegistry:
    return TargetRegistry(engine, cipher=cipher)


@pytest.fixture
def leases(engine) -> CycleLeaseStore:
    return CycleLeaseStore(engine, ttl=timedelta(minutes=15))


@pytest.fixture
def scripted_adapter():
    """Factory for ScriptedAdapter instances."""
    return ScriptedAdapter


@pytest.fixture
def stall():
    """Factory for Stall outcomes."""
    return Stall


class SlowAdapter(TargetAdapter):
    """
    Adapter whose every delivery moves a FakeClock forward by `seconds`.

    `during(call_number)` is awaited inside each delivery, after the clock
    moved, to let a test act while the delivery is still in flight.
    """

    name = "slow"

    def __init__(self, clock: FakeClock, seconds: float, during=None):
        self.clock = clock
        self.seconds = seconds
        self.during = during
        self.calls = []

    async def deliver(self, payload, config_options, credentials, *, idempotency_key, record_type):
        self.calls.append(idempotency_key)
        self.clock.advance(seconds=self.seconds)
        if self.during is not None:
            await self.during(len(self.calls))
        return DeliveryResult.success()


@pytest.fixture
def slow_adapter():
    """Factory for SlowAdapter instances."""
    return SlowAdapter
