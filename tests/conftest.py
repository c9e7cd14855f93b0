import pytest

from recorder_dispatch.errors import StoreTransactionError
from recorder_dispatch.pool.tracker import RecorderTracker
from recorder_dispatch.queue.models import RecorderRequest
from recorder_dispatch.queue.service import RequestQueue
from recorder_dispatch.store.backends import LocalLeaseStore
from recorder_dispatch.store.intents import RemoveFromList


class FakeClock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock):
    return LocalLeaseStore(str(tmp_path / "dispatch"), clock=clock)


@pytest.fixture
def tracker(store):
    return RecorderTracker(store, idle_ttl_sec=90, pending_ttl_sec=10)


@pytest.fixture
def queue(store, clock):
    return RequestQueue(
        store,
        grace_sec=2,
        lock_ttl_sec=10,
        lock_retry_count=1,
        lock_retry_delay_sec=0,
        lock_retry_jitter_sec=0,
        orphan_evict_after=0,
        clock=clock,
    )


@pytest.fixture
def make_request():
    def _make(request_id, room="room1"):
        return RecorderRequest(
            request_id=request_id,
            conference=f"{room}@conference.meet.test",
            room_param=room,
            external_api_url="http://signal.test/api/recorder",
            participant="alice",
        )
    return _make


class RecordingAssigner:
    """Assigner that records every request it sees and answers with `result`."""
    def __init__(self, result=True):
        self.result = result
        self.seen = []

    def assign(self, meta):
        self.seen.append(meta.request_id)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


@pytest.fixture
def recording_assigner():
    return RecordingAssigner


class FailingRemovalStore(LocalLeaseStore):
    """Local store whose list removals fail the way a Redis WRONGTYPE would."""
    def transaction(self, intents):
        for index, intent in enumerate(intents):
            if isinstance(intent, RemoveFromList):
                raise StoreTransactionError("1 of 2 operations failed", failures=[(index, "WRONGTYPE")])
        return super().transaction(intents)


@pytest.fixture
def failing_removal_queue(tmp_path, clock):
    store = FailingRemovalStore(str(tmp_path / "failing"), clock=clock)
    return RequestQueue(
        store,
        lock_ttl_sec=10,
        lock_retry_count=1,
        lock_retry_delay_sec=0,
        lock_retry_jitter_sec=0,
        clock=clock,
    )
