"""Redis client for idempotency records, entitlement locks and the retry queue"""
import asyncio
import logging
import secrets
import time
from typing import Optional

import redis
import redis.asyncio as aioredis

from lnking.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None
_async_client = None

# Key prefixes
PROCESSED_EVENT_KEY_PREFIX = "lnking_sale_events:invoiceId:"
ENTITLEMENT_LOCK_KEY_PREFIX = "entitlement_lock:"

# Lock polling interval while waiting for a held lock
LOCK_POLL_INTERVAL = 0.05  # seconds


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def get_async_redis_client():
    """Get or create async Redis client (lazy initialization)

    Recreates the client if it is tied to a different event loop.
    """
    global _async_client

    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None

    if _async_client is not None:
        client_loop = getattr(_async_client.connection_pool, '_loop', None)
        if client_loop is not current_loop:
            _async_client = None

    if _async_client is None:
        _async_client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            max_connections=20
        )
        _async_client.connection_pool._loop = current_loop

    return _async_client


def set_if_absent(key: str, ttl: int, value: str = "1") -> bool:
    """Atomically create a key with a TTL.

    Returns:
        True if the key was created, False if it already existed
    """
    # SET key value NX EX ttl
    result = get_redis_client().set(key, value, nx=True, ex=ttl)
    return bool(result)


def acquire_lock(lock_key: str, timeout: int = 30, wait: float = 0) -> Optional[str]:
    """Acquire a distributed lock using Redis SET with NX and EX.

    Args:
        lock_key: The lock key to acquire
        timeout: Lock expiry in seconds
        wait: How long to keep retrying while the lock is held elsewhere

    Returns:
        The lock token if acquired, None otherwise
    """
    token = secrets.token_hex(16)
    deadline = time.monotonic() + wait
    client = get_redis_client()

    while True:
        if client.set(lock_key, token, nx=True, ex=timeout):
            return token
        if time.monotonic() >= deadline:
            return None
        time.sleep(LOCK_POLL_INTERVAL)


def release_lock(lock_key: str, token: str) -> bool:
    """Release a lock previously acquired with ``acquire_lock``.

    A lock that already expired and was taken by someone else is left alone.
    """
    client = get_redis_client()
    if client.get(lock_key) == token:
        client.delete(lock_key)
        return True
    return False


def processed_event_key(invoice_id: str) -> str:
    return f"{PROCESSED_EVENT_KEY_PREFIX}{invoice_id}"


def entitlement_lock_key(workspace_id: str) -> str:
    return f"{ENTITLEMENT_LOCK_KEY_PREFIX}{workspace_id}"
