"""Shared fixtures: in-memory store, fresh key, and a clock tests can move."""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from datetime import datetime, timedelta, timezone

import pytest

from privacy_guard import (
    ComplianceCenter,
    FieldCipher,
    IdentityVault,
    MaskingEngine,
    MessageGuard,
    SqliteStore,
    generate_key,
)

START = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def cipher():
    return FieldCipher({"v1": generate_key()})


@pytest.fixture
def store():
    s = SqliteStore()
    yield s
    s.close()


@pytest.fixture
def engine(store, cipher, clock):
    return MaskingEngine(store, cipher, clock=clock)


@pytest.fixture
def vault(store, cipher, clock):
    return IdentityVault(store, cipher, clock=clock)


@pytest.fixture
def compliance(store, cipher, clock):
    return ComplianceCenter(store, cipher, clock=clock)


@pytest.fixture
def guard(engine, store):
    return MessageGuard(engine=engine, store=store)
