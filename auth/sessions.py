"""
auth/sessions.py -- Rotating, revocable remember-me tokens backed by Redis.

Storage layout (prefix defaults to "remember_me"):
  <prefix>:<hash>          JSON RememberMeRecord, EX = seconds to expiry
  <prefix>:user:<user_id>  sorted set of record hashes, scored by creation time

Redis is the only source of truth. There is no in-process cache, and the key
TTL enforces expiry even if application-level checks are bypassed.

Rotation (redeem) is an optimistic compare-and-swap:
  WATCH <prefix>:<old hash>
  GET   -> validate expiry and device
  MULTI / DEL old / SET new EX ttl / ZREM + ZADD index / EXEC
If another client touched the old key between WATCH and EXEC, EXEC aborts with
WatchError and this caller reports NOT_FOUND. Two concurrent redemptions of
the same token therefore produce exactly one new token. A redeem retried after
a timeout sees NOT_FOUND too; the coordinator treats that as "ambiguous, log
in again".

Device tolerance policy:
  The fingerprint (User-Agent + Accept-Language + Accept-Encoding) must match
  exactly. The IP address is compared per settings.device_ip_policy:
    strict  identical address
    subnet  same IPv4 /16 or IPv6 /48 (mobile carriers hop addresses)
    ignore  not compared
  A mismatch is logged and reported as DEVICE_MISMATCH; the stored record is
  left untouched so the legitimate device can still redeem it.

Revocation WATCHes too. revoke() that loses a race against redeem() follows
the token's lineage and deletes the rotated successor. revoke_all() WATCHes
the user index and retries.

The client may or may not use decode_responses; index members are decoded
before they are turned back into keys.

Layer rule: no imports from phone/. Import from core/ is allowed.
"""

from __future__ import annotations

import ipaddress
import logging
import uuid
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from auth.models import (
    ActiveRememberMe,
    DeviceContext,
    RememberMeRecord,
    RememberMeResult,
    RevokeResult,
    SessionListing,
)
from auth.tokens import TokenService
from core.config import DeviceIpPolicy, Settings
from core.errors import CorruptRecordError, SessionError

logger = logging.getLogger("smartshop.auth.sessions")

_UNAVAILABLE = (RedisConnectionError, RedisTimeoutError)
# Revocations retry when a concurrent create/redeem touches a WATCHed key.
_REVOKE_ATTEMPTS = 5
_IPV4_PREFIX = 16
_IPV6_PREFIX = 48


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _short(token_hash: str) -> str:
    """Hash prefix safe to put in log lines."""
    return token_hash[:8]


def _text(value: str | bytes) -> str:
    """Index members arrive as bytes from a client without decode_responses."""
    return value.decode("utf-8") if isinstance(value, bytes) else value


def _same_network(a: str, b: str) -> bool:
    try:
        addr_a, addr_b = ipaddress.ip_address(a), ipaddress.ip_address(b)
    except ValueError:
        return a == b
    if addr_a.version != addr_b.version:
        return False
    prefix = _IPV4_PREFIX if addr_a.version == 4 else _IPV6_PREFIX
    return ipaddress.ip_network(f"{addr_a}/{prefix}", strict=False) == ipaddress.ip_network(
        f"{addr_b}/{prefix}", strict=False
    )


class SessionStore:
    """Create, redeem (rotate) and revoke remember-me tokens.

    Usage:
        store = SessionStore(settings, create_redis_client(settings), TokenService(settings))
        created = store.create("u1", device)          # created.token -> cookie
        result = store.redeem(cookie_value, device)   # result.token -> new cookie
        if result.error is SessionError.STORE_UNAVAILABLE:
            ...                                       # retry later, do not log out
    """

    def __init__(
        self,
        settings: Settings,
        client: redis.Redis,
        tokens: TokenService,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._client = client
        self._tokens = tokens
        self._ttl = settings.remember_me_ttl_seconds
        self._prefix = settings.remember_me_key_prefix
        self._ip_policy = settings.device_ip_policy
        self._clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def _record_key(self, token_hash: str) -> str:
        return f"{self._prefix}:{token_hash}"

    def _index_key(self, user_id: str) -> str:
        return f"{self._prefix}:user:{user_id}"

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self, user_id: str, device: DeviceContext) -> RememberMeResult:
        """Issue a new remember-me token for user_id on device.

        The raw token is only ever present in the returned result.
        """
        if not user_id:
            raise ValueError("user_id is required")
        missing = device.missing_fields()
        if missing:
            return RememberMeResult(error=SessionError.INVALID_CONTEXT, detail=", ".join(missing))

        secret = self._tokens.generate_secret()
        token_hash = self._tokens.hash_secret(secret)
        now = self._clock()
        record = RememberMeRecord(
            user_id=user_id,
            token_hash=token_hash,
            lineage_id=uuid.uuid4().hex,
            fingerprint=device.fingerprint(),
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            created_at=now,
            expires_at=now + timedelta(seconds=self._ttl),
        )
        try:
            pipe = self._client.pipeline(transaction=True)
            pipe.set(self._record_key(token_hash), record.to_json(), ex=self._ttl)
            pipe.zadd(self._index_key(user_id), {token_hash: now.timestamp()})
            pipe.expire(self._index_key(user_id), self._ttl)
            pipe.execute()
        except _UNAVAILABLE as exc:
            logger.warning("Remember-me create failed, store unavailable: %s", exc)
            return RememberMeResult(error=SessionError.STORE_UNAVAILABLE)

        logger.info(
            "Remember-me token created user=%s lineage=%s hash=%s",
            user_id,
            record.lineage_id,
            _short(token_hash),
        )
        return RememberMeResult(token=secret, record=record)

    # ------------------------------------------------------------------
    # Redeem (rotate)
    # ------------------------------------------------------------------

    def redeem(self, token: str, device: DeviceContext) -> RememberMeResult:
        """Validate token and atomically replace it with a fresh one."""
        if not token:
            return RememberMeResult(error=SessionError.NOT_FOUND)
        missing = device.missing_fields()
        if missing:
            return RememberMeResult(error=SessionError.INVALID_CONTEXT, detail=", ".join(missing))

        old_hash = self._tokens.hash_secret(token)
        old_key = self._record_key(old_hash)
        try:
            with self._client.pipeline() as pipe:
                pipe.watch(old_key)
                raw = pipe.get(old_key)
                if raw is None:
                    logger.info("Remember-me redeem for unknown hash=%s", _short(old_hash))
                    return RememberMeResult(error=SessionError.NOT_FOUND)
                record = self._decode(old_key, raw)
                now = self._clock()

                if now >= record.expires_at:
                    pipe.multi()
                    pipe.delete(old_key)
                    pipe.zrem(self._index_key(record.user_id), old_hash)
                    pipe.execute()
                    logger.info("Remember-me token expired user=%s lineage=%s", record.user_id, record.lineage_id)
                    return RememberMeResult(error=SessionError.EXPIRED)

                if not self._device_matches(record, device):
                    pipe.unwatch()
                    logger.warning(
                        "Remember-me device mismatch user=%s lineage=%s ip=%s",
                        record.user_id,
                        record.lineage_id,
                        device.ip_address,
                    )
                    return RememberMeResult(error=SessionError.DEVICE_MISMATCH)

                secret = self._tokens.generate_secret()
                new_hash = self._tokens.hash_secret(secret)
                rotated = replace(
                    record,
                    token_hash=new_hash,
                    generation=record.generation + 1,
                    expires_at=now + timedelta(seconds=self._ttl),
                    last_used_at=now,
                    ip_address=device.ip_address,
                )
                index_key = self._index_key(record.user_id)
                pipe.multi()
                pipe.delete(old_key)
                pipe.set(self._record_key(new_hash), rotated.to_json(), ex=self._ttl)
                pipe.zrem(index_key, old_hash)
                pipe.zadd(index_key, {new_hash: rotated.created_at.timestamp()})
                pipe.expire(index_key, self._ttl)
                pipe.execute()
        except WatchError:
            logger.info("Remember-me rotation lost a concurrent race hash=%s", _short(old_hash))
            return RememberMeResult(error=SessionError.NOT_FOUND)
        except _UNAVAILABLE as exc:
            logger.warning("Remember-me redeem failed, store unavailable: %s", exc)
            return RememberMeResult(error=SessionError.STORE_UNAVAILABLE)

        logger.info(
            "Remember-me token rotated user=%s lineage=%s generation=%d",
            rotated.user_id,
            rotated.lineage_id,
            rotated.generation,
        )
        return RememberMeResult(token=secret, record=rotated)

    def _device_matches(self, record: RememberMeRecord, device: DeviceContext) -> bool:
        if record.fingerprint != device.fingerprint():
            return False
        if self._ip_policy is DeviceIpPolicy.ignore:
            return True
        if self._ip_policy is DeviceIpPolicy.strict:
            return record.ip_address == device.ip_address
        return _same_network(record.ip_address, device.ip_address)

    @staticmethod
    def _decode(key: str, raw: str | bytes) -> RememberMeRecord:
        try:
            return RememberMeRecord.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("Corrupt remember-me record at %s: %s", key, exc)
            raise CorruptRecordError(key, str(exc)) from exc

    @staticmethod
    def _decode_or_none(key: str, raw: str | bytes) -> RememberMeRecord | None:
        """Decode for deletion paths, where an unreadable record is still removed."""
        try:
            return RememberMeRecord.from_json(raw)
        except (ValueError, KeyError, TypeError):
            logger.error("Revoking corrupt remember-me record at %s", key)
            return None

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    def revoke(self, token: str) -> RevokeResult:
        """Delete the record for token. Revoking an absent token is not an error.

        The record key is WATCHed. If a concurrent redeem rotates the token
        between the read and the delete, the successor generation of the same
        lineage is revoked instead, so revocation always wins the race.
        """
        if not token:
            return RevokeResult()
        token_hash = self._tokens.hash_secret(token)
        key = self._record_key(token_hash)
        raced: RememberMeRecord | None = None
        try:
            for _ in range(_REVOKE_ATTEMPTS):
                record = None
                try:
                    with self._client.pipeline() as pipe:
                        pipe.watch(key)
                        raw = pipe.get(key)
                        if raw is None:
                            break
                        record = self._decode_or_none(key, raw)
                        pipe.multi()
                        pipe.delete(key)
                        if record is not None:
                            pipe.zrem(self._index_key(record.user_id), token_hash)
                        deleted = pipe.execute()[0]
                except WatchError:
                    if record is not None:
                        raced = record
                    continue
                if record is not None:
                    logger.info("Remember-me token revoked user=%s lineage=%s", record.user_id, record.lineage_id)
                return RevokeResult(count=int(deleted))
            else:
                logger.error("revoke of hash=%s kept losing races; giving up", _short(token_hash))
                return RevokeResult(error=SessionError.STORE_UNAVAILABLE)

            if raced is None:
                return RevokeResult()
            # Rotated between our read and delete: follow the lineage.
            return self._revoke_lineage(raced.user_id, raced.lineage_id)
        except _UNAVAILABLE as exc:
            logger.warning("Remember-me revoke failed, store unavailable: %s", exc)
            return RevokeResult(error=SessionError.STORE_UNAVAILABLE)

    def _revoke_lineage(self, user_id: str, lineage_id: str) -> RevokeResult:
        """Delete every record of user_id that belongs to lineage_id."""
        index_key = self._index_key(user_id)
        for _ in range(_REVOKE_ATTEMPTS):
            try:
                with self._client.pipeline() as pipe:
                    pipe.watch(index_key)
                    hashes = [_text(h) for h in pipe.zrange(index_key, 0, -1)]
                    values = pipe.mget([self._record_key(h) for h in hashes]) if hashes else []
                    doomed = []
                    for token_hash, raw in zip(hashes, values):
                        if raw is None:
                            continue
                        record = self._decode_or_none(self._record_key(token_hash), raw)
                        if record is not None and record.lineage_id == lineage_id:
                            doomed.append(token_hash)
                    if not doomed:
                        return RevokeResult()
                    pipe.multi()
                    for token_hash in doomed:
                        pipe.delete(self._record_key(token_hash))
                    pipe.zrem(index_key, *doomed)
                    results = pipe.execute()
            except WatchError:
                continue
            count = sum(int(n) for n in results[:-1])
            logger.info("Remember-me lineage revoked user=%s lineage=%s count=%d", user_id, lineage_id, count)
            return RevokeResult(count=count)

        logger.error("revoke of lineage=%s kept losing races; giving up", lineage_id)
        return RevokeResult(error=SessionError.STORE_UNAVAILABLE)

    def revoke_all(self, user_id: str) -> RevokeResult:
        """Delete every remember-me record of user_id (logout everywhere, password change).

        The user index is WATCHed, so a token created or rotated while this
        runs forces a retry instead of surviving the revocation.
        """
        index_key = self._index_key(user_id)
        try:
            for _ in range(_REVOKE_ATTEMPTS):
                try:
                    with self._client.pipeline() as pipe:
                        pipe.watch(index_key)
                        hashes = [_text(h) for h in pipe.zrange(index_key, 0, -1)]
                        pipe.multi()
                        for token_hash in hashes:
                            pipe.delete(self._record_key(token_hash))
                        pipe.delete(index_key)
                        results = pipe.execute()
                except WatchError:
                    continue
                count = sum(int(n) for n in results[:-1])
                logger.info("Revoked %d remember-me token(s) for user=%s", count, user_id)
                return RevokeResult(count=count)
        except _UNAVAILABLE as exc:
            logger.warning("Remember-me revoke_all failed, store unavailable: %s", exc)
            return RevokeResult(error=SessionError.STORE_UNAVAILABLE)

        logger.error("revoke_all for user=%s kept losing races; giving up", user_id)
        return RevokeResult(error=SessionError.STORE_UNAVAILABLE)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_for_user(self, user_id: str) -> SessionListing:
        """Return the user's live remember-me tokens, newest first.

        Index members whose record has expired out of Redis are pruned as a
        side effect.
        """
        index_key = self._index_key(user_id)
        try:
            hashes = [_text(h) for h in self._client.zrange(index_key, 0, -1)]
            if not hashes:
                return SessionListing()
            values = self._client.mget([self._record_key(h) for h in hashes])
            dangling = [h for h, raw in zip(hashes, values) if raw is None]
            if dangling:
                self._client.zrem(index_key, *dangling)
        except _UNAVAILABLE as exc:
            logger.warning("Remember-me listing failed, store unavailable: %s", exc)
            return SessionListing(error=SessionError.STORE_UNAVAILABLE)

        items = []
        for token_hash, raw in zip(hashes, values):
            if raw is None:
                continue
            record = self._decode(self._record_key(token_hash), raw)
            items.append(
                ActiveRememberMe(
                    token_hash_prefix=_short(token_hash),
                    lineage_id=record.lineage_id,
                    generation=record.generation,
                    ip_address=record.ip_address,
                    user_agent=record.user_agent,
                    created_at=record.created_at,
                    expires_at=record.expires_at,
                    last_used_at=record.last_used_at,
                )
            )
        items.sort(key=lambda item: item.created_at, reverse=True)
        return SessionListing(items=tuple(items))
