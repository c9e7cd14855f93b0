import json
import time
import uuid
import logging
from typing import Callable, Dict, List, Optional, Sequence

import redis
from redis.exceptions import LockError

from recorder_dispatch.errors import StoreError, StoreTransactionError
from recorder_dispatch.store.intents import (
    Intent,
    WrongTypeError,
    SetValue,
    CreateIfAbsent,
    DeleteKeys,
    DeleteIfEquals,
    live_entry,
)
from recorder_dispatch.store.storage import LocalCASKeyspace, ConflictError

logger = logging.getLogger(__name__)


class StoreLock:
    """A named lock with a TTL. acquire() never blocks; retrying is up to the caller."""
    def acquire(self) -> bool:
        raise NotImplementedError

    def release(self) -> bool:
        raise NotImplementedError


class LeaseStore:
    """
    The shared store every service instance coordinates through.

    Single-key writes and transactions take Intents (see intents.py);
    reads are plain methods. Expired keys are never returned.
    """
    def transaction(self, intents: Sequence[Intent]) -> list:
        raise NotImplementedError

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def scan(self, prefix: str) -> List[str]:
        raise NotImplementedError

    def list_range(self, key: str) -> List[str]:
        raise NotImplementedError

    def list_head(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def get_hash(self, key: str) -> Dict[str, str]:
        raise NotImplementedError

    def lock(self, name: str, ttl_sec: float) -> StoreLock:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError

    def now(self) -> float:
        """Current time on the store's clock, in epoch seconds."""
        raise NotImplementedError

    def set(self, key: str, value: str, ttl_sec: Optional[float] = None) -> bool:
        return self.transaction([SetValue(key, value, ttl_sec)])[0]

    def create_if_absent(self, key: str, value: str, ttl_sec: float) -> bool:
        return self.transaction([CreateIfAbsent(key, value, ttl_sec)])[0]

    def delete(self, *keys: str) -> int:
        return self.transaction([DeleteKeys(*keys)])[0]


class LocalLock(StoreLock):
    def __init__(self, store: "LocalLeaseStore", name: str, ttl_sec: float):
        self.store = store
        self.name = name
        self.ttl_sec = ttl_sec
        self.token = uuid.uuid4().hex

    def acquire(self) -> bool:
        return self.store.create_if_absent(self.name, self.token, self.ttl_sec)

    def release(self) -> bool:
        return self.store.transaction([DeleteIfEquals(self.name, self.token)])[0]


class LocalLeaseStore(LeaseStore):
    """LeaseStore over a LocalCASKeyspace. Transactions are all-or-nothing."""
    def __init__(self, filename_base: str = "dispatch", clock: Callable[[], float] = time.time):
        self.keyspace = LocalCASKeyspace(filename_base, clock=clock)

    def transaction(self, intents):
        def apply_all(entries, now):
            results = []
            for index, intent in enumerate(intents):
                try:
                    results.append(intent.apply(entries, now))
                except WrongTypeError as e:
                    raise StoreTransactionError(
                        f"Transaction aborted at {intent!r}: {e}",
                        failures=[(index, str(e))],
                    ) from e
            return results

        try:
            return self.keyspace.update_with_retry(apply_all)
        except ConflictError as e:
            raise StoreError(str(e)) from e

    def _entry(self, key: str, kind: str) -> Optional[dict]:
        entries, _ = self.keyspace.read()
        entry = live_entry(entries, key, self.keyspace.clock())
        if entry is None or entry["type"] != kind:
            return None
        return entry

    def get(self, key):
        entry = self._entry(key, "string")
        return entry["value"] if entry else None

    def scan(self, prefix):
        entries, _ = self.keyspace.read()
        return [key for key in entries if key.startswith(prefix)]

    def list_range(self, key):
        entry = self._entry(key, "list")
        return list(entry["value"]) if entry else []

    def list_head(self, key):
        values = self.list_range(key)
        return values[0] if values else None

    def get_hash(self, key):
        entry = self._entry(key, "hash")
        return dict(entry["value"]) if entry else {}

    def lock(self, name, ttl_sec):
        return LocalLock(self, name, ttl_sec)

    def ping(self):
        try:
            self.keyspace.read()
        except OSError as e:
            raise StoreError(f"local store unreadable: {e}") from e
        return True

    def now(self):
        return self.keyspace.clock()


class RedisLock(StoreLock):
    def __init__(self, client: redis.Redis, name: str, ttl_sec: float):
        self.name = name
        self._lock = client.lock(name, timeout=ttl_sec)

    def acquire(self) -> bool:
        try:
            return self._lock.acquire(blocking=False)
        except LockError:
            return False
        except redis.RedisError as e:
            raise StoreError(f"acquiring {self.name}: {e}") from e

    def release(self) -> bool:
        try:
            self._lock.release()
            return True
        except LockError as e:
            # The TTL ran out before release, so another holder may exist.
            logger.error(json.dumps({"event": "lock_release_failed", "lock": self.name, "error": str(e)}))
            return False
        except redis.RedisError as e:
            raise StoreError(f"releasing {self.name}: {e}") from e


class RedisLeaseStore(LeaseStore):
    """
    LeaseStore over Redis. Transactions use MULTI/EXEC, which does not roll
    back commands that already ran when a later one fails; such partial
    failures are logged and raised as StoreTransactionError.
    """
    def __init__(self, redis_url: str = "redis://localhost:6379/0", client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.client = client or redis.from_url(redis_url, decode_responses=True)

    def transaction(self, intents):
        pipe = self.client.pipeline(transaction=True)
        spans = []
        for intent in intents:
            commands = intent.pipeline_commands()
            for method, args, kwargs in commands:
                getattr(pipe, method)(*args, **kwargs)
            spans.append(len(commands))

        try:
            raw = pipe.execute(raise_on_error=False)
        except redis.RedisError as e:
            raise StoreTransactionError(f"Transaction rejected: {e}", failures=[(-1, str(e))]) from e

        results = []
        failures = []
        offset = 0
        for index, (intent, span) in enumerate(zip(intents, spans)):
            chunk = raw[offset:offset + span]
            offset += span
            errors = [r for r in chunk if isinstance(r, Exception)]
            if errors:
                failures.append((index, f"{intent!r}: {errors[0]}"))
                results.append(None)
            else:
                results.append(intent.pipeline_result(chunk))

        if failures:
            logger.error(json.dumps({
                "event": "transaction_partial_failure",
                "failed": [desc for _, desc in failures],
                "applied": len(intents) - len(failures),
            }))
            raise StoreTransactionError(f"{len(failures)} of {len(intents)} operations failed", failures=failures)
        return results

    def _call(self, method: str, *args, **kwargs):
        try:
            return getattr(self.client, method)(*args, **kwargs)
        except redis.RedisError as e:
            raise StoreError(f"redis {method} failed: {e}") from e

    def get(self, key):
        return self._call("get", key)

    def scan(self, prefix):
        try:
            return list(self.client.scan_iter(match=f"{prefix}*"))
        except redis.RedisError as e:
            raise StoreError(f"redis scan failed: {e}") from e

    def list_range(self, key):
        return self._call("lrange", key, 0, -1)

    def list_head(self, key):
        return self._call("lindex", key, 0)

    def get_hash(self, key):
        return self._call("hgetall", key) or {}

    def lock(self, name, ttl_sec):
        return RedisLock(self.client, name, ttl_sec)

    def ping(self):
        return bool(self._call("ping"))

    def now(self):
        # Server time, so every instance stamps and ages requests with one clock.
        seconds, micros = self._call("time")
        return seconds + micros / 1_000_000


def build_store(settings) -> LeaseStore:
    if settings.store_backend == "redis":
        logger.info(json.dumps({"event": "store_backend", "backend": "redis", "url": settings.redis_url}))
        return RedisLeaseStore(settings.redis_url)
    if settings.store_backend == "local":
        logger.info(json.dumps({"event": "store_backend", "backend": "local", "file": settings.local_store_filename}))
        return LocalLeaseStore(settings.local_store_filename)
    raise ValueError(f"Unknown store backend {settings.store_backend!r}")
