"""
auth/redis_client.py -- Redis client construction for the session store.

Usage:
    from auth.redis_client import create_redis_client, redis_available

    client = create_redis_client(settings)
    if not redis_available(client):
        logger.warning("remember-me logins will report STORE_UNAVAILABLE")

Every command carries the socket timeouts from settings, so a hung Redis
surfaces as redis.TimeoutError (mapped to STORE_UNAVAILABLE by SessionStore)
instead of blocking a request thread indefinitely.
"""

from __future__ import annotations

import logging

import redis
from redis.exceptions import RedisError

from core.config import Settings

logger = logging.getLogger("smartshop.auth.redis")


def create_redis_client(settings: Settings) -> redis.Redis:
    """Build a pooled client for settings.redis_url. Connects lazily."""
    return redis.Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout,
        socket_connect_timeout=settings.redis_connect_timeout,
        health_check_interval=30,
    )


def redis_available(client: redis.Redis) -> bool:
    """Return True if Redis answers PING. Used by startup checks only."""
    try:
        client.ping()
    except RedisError as exc:
        logger.warning("Redis not available: %s", exc)
        return False
    return True
