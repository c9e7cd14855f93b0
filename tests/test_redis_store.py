import os
import uuid

import fakeredis
import pytest
import redis

from recorder_dispatch.errors import StoreTransactionError
from recorder_dispatch.queue.service import RequestQueue
from recorder_dispatch.store.backends import RedisLeaseStore
from recorder_dispatch.store.intents import AppendToList, CreateIfAbsent, RemoveFromList, WriteHash

# Runs against a real server when REDIS_URL is set, otherwise against fakeredis.
REDIS_URL = os.environ.get("REDIS_URL")


@pytest.fixture
def redis_store():
    if REDIS_URL:
        client = redis.from_url(REDIS_URL, decode_responses=True)
    else:
        client = fakeredis.FakeRedis(decode_responses=True)
    store = RedisLeaseStore(client=client)
    yield store
    for pattern in ("test:*", "recorder:request:*"):
        for key in store.client.scan_iter(match=pattern):
            store.client.delete(key)


@pytest.fixture
def prefix():
    return f"test:{uuid.uuid4().hex}:"


def test_create_if_absent(redis_store, prefix):
    key = f"{prefix}pending"
    assert redis_store.transaction([CreateIfAbsent(key, "1", 10)]) == [True]
    assert redis_store.create_if_absent(key, "2", 10) is False
    assert 0 < redis_store.client.pttl(key) <= 10000


def test_list_hash_and_scan(redis_store, prefix):
    redis_store.transaction([
        AppendToList(f"{prefix}q", "a"),
        AppendToList(f"{prefix}q", "b"),
        WriteHash(f"{prefix}meta:a", {"request_id": "a"}, 60),
    ])
    assert redis_store.list_range(f"{prefix}q") == ["a", "b"]
    assert redis_store.list_head(f"{prefix}q") == "a"
    assert redis_store.get_hash(f"{prefix}meta:a") == {"request_id": "a"}
    assert redis_store.scan(f"{prefix}meta:") == [f"{prefix}meta:a"]

    assert redis_store.transaction([RemoveFromList(f"{prefix}q", "a")]) == [1]
    assert redis_store.list_range(f"{prefix}q") == ["b"]


def test_wrong_type_is_reported(redis_store, prefix):
    redis_store.set(f"{prefix}plain", "x")
    with pytest.raises(StoreTransactionError):
        redis_store.transaction([AppendToList(f"{prefix}plain", "a")])


def test_lock(redis_store, prefix):
    holder = redis_store.lock(f"{prefix}lock", 5)
    contender = redis_store.lock(f"{prefix}lock", 5)
    assert holder.acquire() is True
    assert contender.acquire() is False
    assert holder.release() is True
    assert contender.acquire() is True
    contender.release()


def test_queue_over_redis(redis_store, make_request):
    queue = RequestQueue(redis_store, lock_retry_count=1, lock_retry_delay_sec=0, lock_retry_jitter_sec=0)
    queue.enqueue(make_request("r1"))
    queue.enqueue(make_request("r2"))

    class Accept:
        def assign(self, meta):
            return True

    assert queue.dequeue_if_assignable(Accept()) is True
    assert queue.pending() == ["r2"]
    assert queue.cancel("r2") is True
    assert queue.cancel("r2") is False


def test_transaction_maps_results_per_operation(redis_store, prefix):
    results = redis_store.transaction([
        AppendToList(f"{prefix}q", "a"),
        WriteHash(f"{prefix}meta:a", {"request_id": "a", "conference": "c"}, 60),
        CreateIfAbsent(f"{prefix}pending", "1", 10),
        CreateIfAbsent(f"{prefix}pending", "2", 10),
    ])
    assert results == [1, 2, True, False]


def test_fractional_hash_ttl_is_kept(redis_store, prefix):
    redis_store.transaction([WriteHash(f"{prefix}meta:a", {"request_id": "a"}, 0.5)])
    assert redis_store.get_hash(f"{prefix}meta:a") == {"request_id": "a"}
    assert 0 < redis_store.client.pttl(f"{prefix}meta:a") <= 500


def test_now_uses_server_time(redis_store):
    seconds, micros = redis_store.client.time()
    assert abs(redis_store.now() - (seconds + micros / 1_000_000)) < 5


def test_ping(redis_store):
    assert redis_store.ping() is True


def test_partial_enqueue_failure_is_raised_and_found_by_reconcile(redis_store, make_request, caplog):
    queue = RequestQueue(redis_store, lock_retry_count=1, lock_retry_delay_sec=0, lock_retry_jitter_sec=0)
    redis_store.set(RequestQueue.LIST_KEY, "not a list")

    with caplog.at_level("ERROR"):
        with pytest.raises(StoreTransactionError) as excinfo:
            queue.enqueue(make_request("r1"))

    assert [index for index, _ in excinfo.value.failures] == [0]
    assert "transaction_partial_failure" in caplog.text
    assert queue.metrics["transaction_errors"] == 1

    # The metadata write in the same transaction went through.
    redis_store.delete(RequestQueue.LIST_KEY)
    assert queue.reconcile() == {"orphaned": [], "stray": ["r1"]}
    queue.reconcile(evict=True)
    assert redis_store.get_hash(queue.meta_key("r1")) == {}
