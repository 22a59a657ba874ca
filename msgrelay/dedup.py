"""
Inbound event idempotency.

Two layers:
- An ``EventKeyCache`` answering "seen recently?" cheaply (in-process TTL
  map, or Redis when REDIS_URL is configured). It is an optimization only.
- The ``processed_event_keys`` table, unique on event_key. Inserting the key
  in the same transaction as the state change is what makes a concurrent
  duplicate lose.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Protocol

import redis
from sqlalchemy.orm import Session

from msgrelay.clock import Clock, SystemClock
from msgrelay.models import ProcessedEventKey

logger = logging.getLogger(__name__)

CACHE_PREFIX = "msgrelay:event:"


def event_key(provider_name: str, provider_message_id: str, event_type: str, event_id: Optional[str] = None) -> str:
    """
    Provider-native event id when present, else message id + event type.

    >>> event_key("meta", "wamid.1", "delivered")
    'meta:wamid.1:delivered'
    >>> event_key("gupshup", "gs-1", "read", event_id="evt-9")
    'gupshup:evt-9'
    """
    raw = event_id if event_id else f"{provider_message_id}:{event_type}"
    return f"{provider_name}:{raw}"


class EventKeyCache(Protocol):
    def seen(self, key: str) -> bool:
        ...

    def mark(self, key: str) -> None:
        ...


class InMemoryEventKeyCache:
    """Per-process TTL cache; entries expire against the injected clock."""

    def __init__(self, ttl_seconds: int = 3600, clock: Optional[Clock] = None, max_entries: int = 100_000):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_entries = max_entries
        self._clock = clock or SystemClock()
        self._entries: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def seen(self, key: str) -> bool:
        with self._lock:
            expires_at = self._entries.get(key)
            if expires_at is None:
                return False
            if expires_at <= self._clock.now():
                del self._entries[key]
                return False
            return True

    def mark(self, key: str) -> None:
        now = self._clock.now()
        with self._lock:
            if len(self._entries) >= self.max_entries:
                self._entries = {k: v for k, v in self._entries.items() if v > now}
            self._entries[key] = now + self.ttl

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class RedisEventKeyCache:
    """
    Redis-backed cache shared by all workers.

    Falls back to "not seen" when Redis is unavailable; the database guard
    still catches the duplicate.
    """

    def __init__(self, url: Optional[str] = None, ttl_seconds: int = 3600, client: Any = None):
        self.ttl_seconds = ttl_seconds
        self.redis_client = client
        if self.redis_client is None and url:
            self._connect(url)

    def _connect(self, url: str) -> None:
        try:
            self.redis_client = redis.from_url(
                url,
                decode_responses=True,
                socket_timeout=2,
                socket_connect_timeout=2,
                health_check_interval=30,
            )
            self.redis_client.ping()
            logger.info("Redis event cache connected")
        except Exception as e:
            logger.warning(f"Redis connection failed, event cache disabled: {e}")
            self.redis_client = None

    def seen(self, key: str) -> bool:
        if self.redis_client is None:
            return False
        try:
            return bool(self.redis_client.exists(CACHE_PREFIX + key))
        except redis.RedisError as e:
            logger.debug(f"Redis lookup failed for {key}: {e}")
            return False

    def mark(self, key: str) -> None:
        if self.redis_client is None:
            return
        try:
            self.redis_client.setex(CACHE_PREFIX + key, self.ttl_seconds, "1")
        except redis.RedisError as e:
            logger.debug(f"Redis write failed for {key}: {e}")


def build_event_cache(settings, clock: Optional[Clock] = None) -> EventKeyCache:
    if settings.REDIS_URL:
        return RedisEventKeyCache(settings.REDIS_URL, ttl_seconds=settings.EVENT_CACHE_TTL_SECONDS)
    return InMemoryEventKeyCache(ttl_seconds=settings.EVENT_CACHE_TTL_SECONDS, clock=clock)


# =============================================================================
# Authoritative guard
# =============================================================================

def is_processed(db: Session, key: str) -> bool:
    return db.get(ProcessedEventKey, key) is not None


def mark_processed(db: Session, key: str, now: datetime) -> None:
    """
    Stage the processed marker. The caller's commit raises IntegrityError
    if another worker committed the same key first.
    """
    db.add(ProcessedEventKey(event_key=key, created_at=now))
