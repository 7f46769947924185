"""
tests/conftest.py -- Shared fixtures for the identity core test suite.

This module provides:
  - settings: a fully-resolved Settings snapshot (no environment needed)
  - clock: a controllable clock injected into TokenService and SessionStore
  - redis_server / redis_client: fakeredis, sharing one in-process server so
    separate connections see the same data (needed for WATCH/MULTI races)
  - tokens / sessions / validator / engine: the four components under test

Design: time never comes from the wall clock in these tests. Expiry paths are
exercised by advancing FrozenClock, which keeps them deterministic and fast.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import fakeredis
import pytest

from auth.models import DeviceContext
from auth.passwords import PasswordPolicyEngine
from auth.sessions import SessionStore
from auth.tokens import TokenService
from core.config import PasswordPolicy, Settings, load_settings
from phone.validator import PhoneNumberValidator

TEST_SECRET = "test-signing-secret-0123456789-abcdefghijklmnop"


class FrozenClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now = self.now + timedelta(**delta)


def make_settings(**overrides) -> Settings:
    values = {
        "jwt_secret": TEST_SECRET,
        "password_policy": PasswordPolicy(bcrypt_rounds=4),
    }
    values.update(overrides)
    return load_settings(**values)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def tokens(settings: Settings, clock: FrozenClock) -> TokenService:
    return TokenService(settings, clock=clock)


@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server: fakeredis.FakeServer) -> fakeredis.FakeRedis:
    return fakeredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def sessions(settings: Settings, redis_client, tokens: TokenService, clock: FrozenClock) -> SessionStore:
    return SessionStore(settings, redis_client, tokens, clock=clock)


@pytest.fixture
def device() -> DeviceContext:
    return DeviceContext(
        ip_address="203.0.113.10",
        user_agent="Mozilla/5.0 (Linux; Android 14) Chrome/126.0",
        accept_language="bn-BD,bn;q=0.9,en;q=0.8",
        accept_encoding="gzip, deflate, br",
    )


@pytest.fixture
def validator(settings: Settings) -> PhoneNumberValidator:
    return PhoneNumberValidator(settings.numbering_plan)


@pytest.fixture
def engine(settings: Settings) -> PasswordPolicyEngine:
    return PasswordPolicyEngine(settings.password_policy)
