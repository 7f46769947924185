"""Unit tests for auth/sessions.py.

Uses fakeredis with a shared FakeServer so WATCH/MULTI behaves like a real
server across connections.

Covers:
- create -> redeem rotates the token; the old token is then NOT_FOUND
- Only the HMAC of the token is stored, with a TTL
- Expiry, device mismatch and each device IP policy
- Exactly one winner when the same token is redeemed concurrently
- revoke / revoke_all idempotence and scope; revoke beats a concurrent rotation
- Redis outages map to STORE_UNAVAILABLE, never to an auth failure
- Listing is newest first and prunes dangling index entries
- Clients without decode_responses behave the same
"""

from __future__ import annotations

import json
import threading
from unittest.mock import MagicMock

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from auth.models import DeviceContext
from auth.redis_client import create_redis_client, redis_available
from auth.sessions import SessionStore
from auth.tokens import TokenService
from conftest import FrozenClock, make_settings
from core.config import DeviceIpPolicy
from core.errors import CorruptRecordError, ErrorKind, SessionError


def _moved(device: DeviceContext, ip_address: str) -> DeviceContext:
    return DeviceContext(
        ip_address=ip_address,
        user_agent=device.user_agent,
        accept_language=device.accept_language,
        accept_encoding=device.accept_encoding,
    )


def _store_with_policy(policy: DeviceIpPolicy, redis_client, clock: FrozenClock) -> SessionStore:
    settings = make_settings(device_ip_policy=policy)
    return SessionStore(settings, redis_client, TokenService(settings, clock=clock), clock=clock)


# ---------------------------------------------------------------------------
# Create / redeem
# ---------------------------------------------------------------------------


class TestCreateAndRedeem:
    def test_rotation_end_to_end(self, sessions: SessionStore, device: DeviceContext) -> None:
        created = sessions.create("user-1", device)
        assert created.ok
        assert created.record.generation == 1

        rotated = sessions.redeem(created.token, device)
        assert rotated.ok
        assert rotated.token != created.token
        assert rotated.record.generation == 2
        assert rotated.record.lineage_id == created.record.lineage_id
        assert rotated.record.user_id == "user-1"

        replay = sessions.redeem(created.token, device)
        assert replay.error is SessionError.NOT_FOUND
        assert replay.error.kind is ErrorKind.AUTH

        assert sessions.redeem(rotated.token, device).ok

    def test_only_hash_is_stored(
        self, sessions: SessionStore, tokens: TokenService, redis_client, device: DeviceContext
    ) -> None:
        created = sessions.create("user-1", device)
        key = f"remember_me:{tokens.hash_secret(created.token)}"
        stored = json.loads(redis_client.get(key))
        assert stored["user_id"] == "user-1"
        assert created.token not in redis_client.get(key)
        assert not any(created.token in k for k in redis_client.keys("*"))
        assert 0 < redis_client.ttl(key) <= 30 * 24 * 3600

    def test_create_indexes_record_for_user(
        self, sessions: SessionStore, tokens: TokenService, redis_client, device: DeviceContext
    ) -> None:
        created = sessions.create("user-1", device)
        assert redis_client.zrange("remember_me:user:user-1", 0, -1) == [tokens.hash_secret(created.token)]

    def test_expiry_matches_settings(self, sessions: SessionStore, clock: FrozenClock, device: DeviceContext) -> None:
        created = sessions.create("user-1", device)
        assert (created.expires_at - clock()).total_seconds() == 30 * 24 * 3600

    def test_create_requires_user_id(self, sessions: SessionStore, device: DeviceContext) -> None:
        with pytest.raises(ValueError):
            sessions.create("", device)

    def test_incomplete_device_is_invalid_context(self, sessions: SessionStore) -> None:
        result = sessions.create("user-1", DeviceContext(ip_address="203.0.113.10"))
        assert result.error is SessionError.INVALID_CONTEXT
        assert result.error.kind is ErrorKind.VALIDATION
        assert "user_agent" in result.detail

    def test_redeem_with_incomplete_device(self, sessions: SessionStore, device: DeviceContext) -> None:
        created = sessions.create("user-1", device)
        result = sessions.redeem(created.token, DeviceContext(user_agent=device.user_agent))
        assert result.error is SessionError.INVALID_CONTEXT
        assert sessions.redeem(created.token, device).ok

    @pytest.mark.parametrize("token", ["", "never-issued"])
    def test_unknown_token(self, sessions: SessionStore, device: DeviceContext, token: str) -> None:
        assert sessions.redeem(token, device).error is SessionError.NOT_FOUND


# ---------------------------------------------------------------------------
# Expiry and device binding
# ---------------------------------------------------------------------------


class TestExpiryAndDevice:
    def test_expired_token_is_deleted(
        self, sessions: SessionStore, clock: FrozenClock, tokens: TokenService, redis_client, device: DeviceContext
    ) -> None:
        created = sessions.create("user-1", device)
        clock.advance(days=30)
        result = sessions.redeem(created.token, device)
        assert result.error is SessionError.EXPIRED
        assert redis_client.get(f"remember_me:{tokens.hash_secret(created.token)}") is None
        assert sessions.redeem(created.token, device).error is SessionError.NOT_FOUND

    def test_valid_just_before_expiry(self, sessions: SessionStore, clock: FrozenClock, device: DeviceContext) -> None:
        created = sessions.create("user-1", device)
        clock.advance(days=29, hours=23)
        assert sessions.redeem(created.token, device).ok

    def test_rotation_extends_expiry(self, sessions: SessionStore, clock: FrozenClock, device: DeviceContext) -> None:
        created = sessions.create("user-1", device)
        clock.advance(days=20)
        rotated = sessions.redeem(created.token, device)
        assert rotated.expires_at > created.expires_at
        assert rotated.record.last_used_at == clock()

    def test_fingerprint_mismatch_keeps_record(self, sessions: SessionStore, device: DeviceContext) -> None:
        created = sessions.create("user-1", device)
        other = DeviceContext(ip_address=device.ip_address, user_agent="curl/8.5.0")
        assert sessions.redeem(created.token, other).error is SessionError.DEVICE_MISMATCH
        assert sessions.redeem(created.token, device).ok

    def test_subnet_policy_tolerates_nearby_address(
        self, redis_client, clock: FrozenClock, device: DeviceContext
    ) -> None:
        store = _store_with_policy(DeviceIpPolicy.subnet, redis_client, clock)
        created = store.create("user-1", device)
        rotated = store.redeem(created.token, _moved(device, "203.0.77.5"))
        assert rotated.ok
        assert rotated.record.ip_address == "203.0.77.5"

    def test_subnet_policy_rejects_other_network(
        self, redis_client, clock: FrozenClock, device: DeviceContext
    ) -> None:
        store = _store_with_policy(DeviceIpPolicy.subnet, redis_client, clock)
        created = store.create("user-1", device)
        assert store.redeem(created.token, _moved(device, "198.51.100.7")).error is SessionError.DEVICE_MISMATCH

    def test_subnet_policy_ipv6(self, redis_client, clock: FrozenClock, device: DeviceContext) -> None:
        store = _store_with_policy(DeviceIpPolicy.subnet, redis_client, clock)
        created = store.create("user-1", _moved(device, "2001:db8:1::10"))
        assert store.redeem(created.token, _moved(device, "2001:db8:1:ff::20")).ok

    def test_strict_policy(self, redis_client, clock: FrozenClock, device: DeviceContext) -> None:
        store = _store_with_policy(DeviceIpPolicy.strict, redis_client, clock)
        created = store.create("user-1", device)
        assert store.redeem(created.token, _moved(device, "203.0.113.11")).error is SessionError.DEVICE_MISMATCH
        assert store.redeem(created.token, device).ok

    def test_ignore_policy(self, redis_client, clock: FrozenClock, device: DeviceContext) -> None:
        store = _store_with_policy(DeviceIpPolicy.ignore, redis_client, clock)
        created = store.create("user-1", device)
        assert store.redeem(created.token, _moved(device, "192.0.2.1")).ok


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestConcurrentRedeem:
    def test_interleaved_redeem_has_one_winner(
        self, sessions: SessionStore, tokens: TokenService, device: DeviceContext, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A second redeem lands between the outer WATCH/GET and its EXEC."""
        created = sessions.create("user-1", device)
        original = TokenService.generate_secret
        state = {"raced": False, "inner": None}

        def racing_secret() -> str:
            if not state["raced"]:
                state["raced"] = True
                state["inner"] = sessions.redeem(created.token, device)
            return original()

        monkeypatch.setattr(tokens, "generate_secret", racing_secret)
        outer = sessions.redeem(created.token, device)

        assert state["inner"].ok
        assert outer.error is SessionError.NOT_FOUND
        assert sessions.redeem(state["inner"].token, device).ok

    def test_threads_produce_exactly_one_new_token(self, sessions: SessionStore, device: DeviceContext) -> None:
        created = sessions.create("user-1", device)
        workers = 8
        barrier = threading.Barrier(workers)
        results = []
        lock = threading.Lock()

        def worker() -> None:
            barrier.wait()
            result = sessions.redeem(created.token, device)
            with lock:
                results.append(result)

        threads = [threading.Thread(target=worker) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        winners = [r for r in results if r.ok]
        assert len(results) == workers
        assert len(winners) == 1
        assert all(r.error is SessionError.NOT_FOUND for r in results if not r.ok)


# ---------------------------------------------------------------------------
# Revocation
# ---------------------------------------------------------------------------


class TestRevoke:
    def test_revoke_is_idempotent(self, sessions: SessionStore, device: DeviceContext) -> None:
        created = sessions.create("user-1", device)
        assert sessions.revoke(created.token).count == 1
        second = sessions.revoke(created.token)
        assert second.ok
        assert second.count == 0
        assert sessions.redeem(created.token, device).error is SessionError.NOT_FOUND

    def test_revoke_removes_index_entry(self, sessions: SessionStore, redis_client, device: DeviceContext) -> None:
        created = sessions.create("user-1", device)
        sessions.revoke(created.token)
        assert redis_client.zrange("remember_me:user:user-1", 0, -1) == []

    def test_revoke_all_covers_rotated_tokens_only_for_that_user(
        self, sessions: SessionStore, device: DeviceContext
    ) -> None:
        first = sessions.create("user-1", device)
        rotated = sessions.redeem(first.token, device)
        second = sessions.create("user-1", device)
        bystander = sessions.create("user-2", device)

        result = sessions.revoke_all("user-1")
        assert result.ok
        assert result.count == 2
        assert sessions.redeem(rotated.token, device).error is SessionError.NOT_FOUND
        assert sessions.redeem(second.token, device).error is SessionError.NOT_FOUND
        assert sessions.redeem(bystander.token, device).ok

    def test_revoke_all_without_tokens(self, sessions: SessionStore) -> None:
        result = sessions.revoke_all("nobody")
        assert result.ok
        assert result.count == 0

    def test_revoke_deletes_corrupt_record(self, sessions: SessionStore, tokens: TokenService, redis_client) -> None:
        redis_client.set(f"remember_me:{tokens.hash_secret('garbled')}", "{not json")
        assert sessions.revoke("garbled").count == 1

    def test_revoking_an_already_rotated_token_spares_the_successor(
        self, sessions: SessionStore, device: DeviceContext
    ) -> None:
        created = sessions.create("user-1", device)
        rotated = sessions.redeem(created.token, device)
        assert sessions.revoke(created.token).count == 0
        assert sessions.redeem(rotated.token, device).ok

    def test_revoke_wins_against_concurrent_rotation(
        self, sessions: SessionStore, device: DeviceContext, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A redeem commits between revoke's read and its delete."""
        created = sessions.create("user-1", device)
        original = SessionStore._decode_or_none
        state = {"rotated": None}

        def rotate_then_decode(key, raw):
            if state["rotated"] is None:
                state["rotated"] = sessions.redeem(created.token, device)
            return original(key, raw)

        monkeypatch.setattr(sessions, "_decode_or_none", rotate_then_decode)
        result = sessions.revoke(created.token)

        assert state["rotated"].ok
        assert result.ok
        assert result.count == 1
        assert sessions.redeem(state["rotated"].token, device).error is SessionError.NOT_FOUND
        assert sessions.list_for_user("user-1").items == ()


# ---------------------------------------------------------------------------
# Store failures
# ---------------------------------------------------------------------------


def _broken_client(exc: Exception) -> MagicMock:
    client = MagicMock()
    for method in ("pipeline", "get", "zrange", "mget"):
        getattr(client, method).side_effect = exc
    return client


class TestStoreUnavailable:
    @pytest.mark.parametrize("exc", [RedisConnectionError("refused"), RedisTimeoutError("timed out")])
    def test_every_operation_reports_store_unavailable(
        self, settings, tokens: TokenService, clock: FrozenClock, device: DeviceContext, exc: Exception
    ) -> None:
        store = SessionStore(settings, _broken_client(exc), tokens, clock=clock)

        created = store.create("user-1", device)
        assert created.error is SessionError.STORE_UNAVAILABLE
        assert created.error.kind is ErrorKind.STORE_UNAVAILABLE
        assert created.token is None

        assert store.redeem("some-token", device).error is SessionError.STORE_UNAVAILABLE
        assert store.revoke("some-token").error is SessionError.STORE_UNAVAILABLE
        assert store.revoke_all("user-1").error is SessionError.STORE_UNAVAILABLE
        assert store.list_for_user("user-1").error is SessionError.STORE_UNAVAILABLE

    def test_corrupt_record_raises(
        self, sessions: SessionStore, tokens: TokenService, redis_client, device: DeviceContext
    ) -> None:
        key = f"remember_me:{tokens.hash_secret('garbled')}"
        redis_client.set(key, "{not json")
        with pytest.raises(CorruptRecordError) as excinfo:
            sessions.redeem("garbled", device)
        assert excinfo.value.key == key


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


class TestListForUser:
    def test_newest_first(self, sessions: SessionStore, clock: FrozenClock, device: DeviceContext) -> None:
        older = sessions.create("user-1", device)
        clock.advance(hours=1)
        newer = sessions.create("user-1", device)

        listing = sessions.list_for_user("user-1")
        assert listing.ok
        assert [item.lineage_id for item in listing.items] == [newer.record.lineage_id, older.record.lineage_id]
        assert all(len(item.token_hash_prefix) == 8 for item in listing.items)

    def test_prunes_dangling_index_entries(
        self, sessions: SessionStore, tokens: TokenService, redis_client, device: DeviceContext
    ) -> None:
        kept = sessions.create("user-1", device)
        gone = sessions.create("user-1", device)
        redis_client.delete(f"remember_me:{tokens.hash_secret(gone.token)}")

        listing = sessions.list_for_user("user-1")
        assert [item.lineage_id for item in listing.items] == [kept.record.lineage_id]
        assert redis_client.zrange("remember_me:user:user-1", 0, -1) == [tokens.hash_secret(kept.token)]

    def test_empty(self, sessions: SessionStore) -> None:
        listing = sessions.list_for_user("user-1")
        assert listing.ok
        assert listing.items == ()


# ---------------------------------------------------------------------------
# Client construction
# ---------------------------------------------------------------------------


class TestRedisClient:
    def test_client_carries_settings(self) -> None:
        settings = make_settings(redis_url="redis://cache.internal:6380/2", redis_socket_timeout=1.5)
        client = create_redis_client(settings)
        kwargs = client.connection_pool.connection_kwargs
        assert kwargs["host"] == "cache.internal"
        assert kwargs["port"] == 6380
        assert kwargs["db"] == 2
        assert kwargs["socket_timeout"] == 1.5
        assert kwargs["decode_responses"] is True

    def test_available(self, redis_client) -> None:
        assert redis_available(redis_client)

    def test_unavailable(self) -> None:
        client = MagicMock()
        client.ping.side_effect = RedisConnectionError("refused")
        assert not redis_available(client)


# ---------------------------------------------------------------------------
# Clients without decode_responses
# ---------------------------------------------------------------------------


@pytest.fixture
def bytes_sessions(settings, redis_server, tokens: TokenService, clock: FrozenClock) -> SessionStore:
    """A store whose client returns bytes, as redis.Redis() does by default."""
    return SessionStore(settings, fakeredis.FakeRedis(server=redis_server), tokens, clock=clock)


class TestBytesClient:
    def test_revoke_all_deletes_every_token(self, bytes_sessions: SessionStore, device: DeviceContext) -> None:
        first = bytes_sessions.create("user-1", device)
        second = bytes_sessions.create("user-1", device)

        result = bytes_sessions.revoke_all("user-1")
        assert result.ok
        assert result.count == 2
        assert bytes_sessions.redeem(first.token, device).error is SessionError.NOT_FOUND
        assert bytes_sessions.redeem(second.token, device).error is SessionError.NOT_FOUND

    def test_rotation_revoke_and_listing(
        self, bytes_sessions: SessionStore, tokens: TokenService, device: DeviceContext
    ) -> None:
        created = bytes_sessions.create("user-1", device)
        rotated = bytes_sessions.redeem(created.token, device)
        assert rotated.ok

        listing = bytes_sessions.list_for_user("user-1")
        assert [item.lineage_id for item in listing.items] == [created.record.lineage_id]
        assert listing.items[0].token_hash_prefix == tokens.hash_secret(rotated.token)[:8]

        assert bytes_sessions.revoke(rotated.token).count == 1
        assert bytes_sessions.list_for_user("user-1").items == ()
