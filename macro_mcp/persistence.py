from abc import ABC, abstractmethod
from typing import Iterable, Optional, Type, TypeVar, Generic
from pydantic import BaseModel
import heapq
import threading
import redis
import time
import asyncio
from macro_mcp.config import Settings
from macro_mcp.logging_util import get_logger, redact

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)


class PersistenceProvider(ABC, Generic[T]):
    """
    Expiring key-value store for one record type.

    `take` is the only way the OAuth flow consumes single-use records. It must be
    atomic per key: of two concurrent callers, at most one gets the value.
    """

    def __init__(self, model_class: Type[T]):
        self.model_class = model_class

    @abstractmethod
    def set(self, key: str, value: T, ttl_in_sec: Optional[int] = None) -> None:
        """Store the model instance with an optional TTL."""
        pass

    @abstractmethod
    def get(self, key: str) -> Optional[T]:
        """Retrieve and validate the model instance. Expired entries are absent."""
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove the key from storage."""
        pass

    @abstractmethod
    def take(self, key: str) -> Optional[T]:
        """Atomically fetch and remove the key. Expired entries are absent."""
        pass

    def cleanup_expired(self) -> int:
        """Eagerly drop expired entries. Returns the number removed."""
        return 0


class InMemoryProvider(PersistenceProvider[T]):
    """
    Process-local store. Flows that hop between processes need the Redis provider.
    """

    def __init__(self, model_class: Type[T]):
        super().__init__(model_class)
        self._data: dict[str, tuple[str, Optional[float]]] = {}
        self._expiry_queue: list[tuple[float, str]] = []
        self._lock = threading.Lock()

    @staticmethod
    def _is_expired(expires_at: Optional[float], now: float) -> bool:
        return expires_at is not None and expires_at <= now

    def set(self, key: str, value: T, ttl_in_sec: Optional[int] = None) -> None:
        raw = value.model_dump_json()
        with self._lock:
            expires_at = None
            if ttl_in_sec:
                expires_at = time.time() + ttl_in_sec
                heapq.heappush(self._expiry_queue, (expires_at, key))
            self._data[key] = (raw, expires_at)

    def _read(self, key: str, remove: bool) -> Optional[str]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            raw, expires_at = entry
            if self._is_expired(expires_at, time.time()):
                del self._data[key]
                return None
            if remove:
                del self._data[key]
            return raw

    def get(self, key: str) -> Optional[T]:
        raw = self._read(key, remove=False)
        return self.model_class.model_validate_json(raw) if raw else None

    def take(self, key: str) -> Optional[T]:
        raw = self._read(key, remove=True)
        return self.model_class.model_validate_json(raw) if raw else None

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def cleanup_expired(self) -> int:
        now = time.time()
        count = 0
        with self._lock:
            while self._expiry_queue and self._expiry_queue[0][0] <= now:
                queued_expiry, key = heapq.heappop(self._expiry_queue)
                entry = self._data.get(key)
                # The key may have been re-set with a later expiry since this entry was queued
                if entry is not None and entry[1] == queued_expiry:
                    logger.debug(f"Cleaning up expired key: {redact(key)}")
                    del self._data[key]
                    count += 1
        return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class RedisProvider(PersistenceProvider[T]):
    def __init__(
        self,
        model_class: Type[T],
        prefix: str,
        host: str = "localhost",
        port: int = 6379,
        password: Optional[str] = None,
        db: int = 0,
        client: Optional[redis.Redis] = None,
    ):
        super().__init__(model_class)
        self.client = client or redis.Redis(host=host, port=port, password=password, db=db, decode_responses=True)
        self.prefix = prefix

    def _get_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def set(self, key: str, value: T, ttl_in_sec: Optional[int] = None) -> None:
        self.client.set(self._get_key(key), value.model_dump_json(), ex=ttl_in_sec)

    def get(self, key: str) -> Optional[T]:
        raw = self.client.get(self._get_key(key))
        return self.model_class.model_validate_json(raw) if raw else None

    def take(self, key: str) -> Optional[T]:
        # GETDEL is a single command, so Redis serializes concurrent takes of the same key
        raw = self.client.getdel(self._get_key(key))
        return self.model_class.model_validate_json(raw) if raw else None

    def delete(self, key: str) -> None:
        self.client.delete(self._get_key(key))


class PersistenceFactory:
    @staticmethod
    def create(model_class: Type[T], scope: str) -> PersistenceProvider[T]:
        if Settings.STORAGE_BACKEND == "redis":
            return RedisProvider(
                model_class=model_class,
                prefix=scope,
                host=Settings.REDIS_HOST,
                port=Settings.REDIS_PORT,
                password=Settings.REDIS_PASSWORD,
                db=Settings.REDIS_DB,
            )
        return InMemoryProvider(model_class=model_class)


async def ttl_cleanup_task(providers: Iterable[PersistenceProvider], interval_seconds: int = 60):
    providers = list(providers)
    logger.info(f"Starting TTL cleanup task for {len(providers)} store(s), interval {interval_seconds}s")
    try:
        while True:
            for provider in providers:
                try:
                    removed = provider.cleanup_expired()
                    if removed:
                        logger.debug(f"TTL cleanup removed {removed} expired record(s) from {provider.model_class.__name__}")
                except Exception:
                    logger.error("TTL cleanup failed", exc_info=True)
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("TTL cleanup task cancelled.")
        raise
