# upestate_billing/utils/locks.py
"""
Per-subscription exclusive locks guarding the read-decide-write step.

Two backends:
- "redis": a Redis lock shared by every worker process (production)
- "local": a process-local lock registry (development, tests)

Locks are held only around local database work, never across provider calls.
"""

import logging
import threading
from contextlib import contextmanager

import redis
from flask import current_app

from upestate_billing.errors import LockTimeout

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "upestate:subscription-lock"


class LocalLockRegistry:
    """Hands out one threading.Lock per key, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    def get(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock


_local_registry = LocalLockRegistry()
_redis_clients = {}


def _redis_client(url: str) -> redis.Redis:
    client = _redis_clients.get(url)
    if client is None:
        client = _redis_clients[url] = redis.Redis.from_url(url)
    return client


@contextmanager
def local_lock(key: str, timeout: int = 30):
    lock = _local_registry.get(key)
    if not lock.acquire(timeout=timeout):
        raise LockTimeout(f"Timed out waiting for lock {key}")
    try:
        yield
    finally:
        lock.release()


@contextmanager
def redis_lock(key: str, timeout: int = 30, url: str = None):
    client = _redis_client(url or current_app.config["REDIS_URL"])
    lock = client.lock(key, timeout=timeout, blocking_timeout=timeout)
    if not lock.acquire(blocking=True):
        raise LockTimeout(f"Timed out waiting for lock {key}")
    try:
        yield
    finally:
        try:
            lock.release()
        except redis.exceptions.LockError:
            # The lock expired while held; the versioned write still protects the row.
            logger.warning("Subscription lock expired before release", extra={"lock_key": key})


@contextmanager
def subscription_lock(subscription_id):
    """Serialize processing for one subscription using the configured backend."""
    key = f"{LOCK_KEY_PREFIX}:{subscription_id}"
    backend = current_app.config.get("SUBSCRIPTION_LOCK_BACKEND", "local")
    timeout = current_app.config.get("SUBSCRIPTION_LOCK_TIMEOUT", 30)

    if backend == "redis":
        with redis_lock(key, timeout=timeout):
            yield
    else:
        with local_lock(key, timeout=timeout):
            yield
