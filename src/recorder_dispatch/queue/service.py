import time
import json
import random
import logging
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from recorder_dispatch.errors import (
    LockAcquisitionFailed,
    MissingMetadata,
    RequestCanceled,
    StoreError,
    StoreTransactionError,
)
from recorder_dispatch.queue.models import QueuePosition, RecorderRequest, RequestMeta
from recorder_dispatch.store.backends import LeaseStore, StoreLock
from recorder_dispatch.store.intents import AppendToList, DeleteKeys, RemoveFromList, WriteHash

logger = logging.getLogger(__name__)


class RequestQueue:
    """
    FIFO queue of recorder requests shared by every service instance.

    Each request is two store records written and removed together: its id in
    the ordered list and a metadata hash. The metadata hash also carries its
    own expiry so a request whose removal never ran cannot leak forever.

    Only dequeue_if_assignable needs exclusivity across instances, and it gets
    it from a short-lived processing lock in the store.
    """

    LIST_KEY = "recorder:request:pending"
    META_PREFIX = "recorder:request:meta:"
    LOCK_KEY = "recorder:request:lock"

    def __init__(
        self,
        store: LeaseStore,
        request_ttl_sec: float = 86400.0,
        grace_sec: float = 2.0,
        lock_ttl_sec: float = 10.0,
        lock_retry_count: int = 3,
        lock_retry_delay_sec: float = 0.2,
        lock_retry_jitter_sec: float = 0.2,
        orphan_evict_after: int = 5,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.store = store
        self.request_ttl_sec = request_ttl_sec
        self.grace_sec = grace_sec
        self.lock_ttl_sec = lock_ttl_sec
        self.lock_retry_count = max(1, lock_retry_count)
        self.lock_retry_delay_sec = lock_retry_delay_sec
        self.lock_retry_jitter_sec = lock_retry_jitter_sec
        self.orphan_evict_after = orphan_evict_after
        self.clock = clock or store.now

        # (request_id, consecutive ticks it was found at the head without metadata)
        self._orphan_head = (None, 0)

        self.metrics = {
            "enqueued": 0,
            "canceled": 0,
            "assigned": 0,
            "withdrawn": 0,
            "lock_failures": 0,
            "missing_metadata": 0,
            "orphans_evicted": 0,
            "transaction_errors": 0,
        }

    def meta_key(self, request_id: str) -> str:
        return f"{self.META_PREFIX}{request_id}"

    def enqueue(self, request: RecorderRequest) -> RequestMeta:
        """Append a request to the tail. Raises StoreTransactionError if the write failed."""
        meta = RequestMeta(**request.model_dump(), created=self.clock())
        meta_key = self.meta_key(meta.request_id)
        logger.debug(f"setting request data {meta_key} and {self.LIST_KEY}")
        try:
            self.store.transaction([
                AppendToList(self.LIST_KEY, meta.request_id),
                WriteHash(meta_key, meta.to_hash(), self.request_ttl_sec),
            ])
        except StoreTransactionError as e:
            self.metrics["transaction_errors"] += 1
            logger.error(json.dumps({"event": "enqueue_failed", "request_id": meta.request_id, "error": str(e)}))
            raise

        self.metrics["enqueued"] += 1
        logger.info(json.dumps({"event": "request_enqueued", "request_id": meta.request_id}))
        return meta

    def cancel(self, request_id: str) -> bool:
        """
        Withdraw a request. Removing an id that is not queued is a no-op.
        Returns True if anything was removed.
        """
        removed = self._remove(request_id)
        if removed:
            self.metrics["canceled"] += 1
            logger.info(json.dumps({"event": "request_canceled", "request_id": request_id}))
        return removed

    def _remove(self, request_id: str) -> bool:
        # Removal is by value, so a cancel racing an assignment of the same
        # request cannot take a different request off the list.
        try:
            occurrences, deleted = self.store.transaction([
                RemoveFromList(self.LIST_KEY, request_id),
                DeleteKeys(self.meta_key(request_id)),
            ])
        except StoreTransactionError as e:
            self.metrics["transaction_errors"] += 1
            logger.error(json.dumps({"event": "remove_failed", "request_id": request_id, "error": str(e)}))
            raise
        return bool(occurrences or deleted)

    def load_meta(self, request_id: str) -> Optional[RequestMeta]:
        fields = self.store.get_hash(self.meta_key(request_id))
        if not fields:
            return None
        try:
            return RequestMeta.from_hash(fields)
        except ValidationError as e:
            logger.error(json.dumps({"event": "corrupt_metadata", "request_id": request_id, "error": str(e)}))
            return None

    def pending(self) -> List[str]:
        return self.store.list_range(self.LIST_KEY)

    def size(self) -> int:
        return len(self.pending())

    def _acquire_processing_lock(self) -> StoreLock:
        lock = self.store.lock(self.LOCK_KEY, self.lock_ttl_sec)
        for attempt in range(self.lock_retry_count):
            if lock.acquire():
                return lock
            if attempt + 1 < self.lock_retry_count:
                delay = self.lock_retry_delay_sec * (2 ** attempt) + random.uniform(0, self.lock_retry_jitter_sec)
                time.sleep(delay)
        raise LockAcquisitionFailed(self.LOCK_KEY, self.lock_retry_count)

    def dequeue_if_assignable(self, assigner) -> bool:
        """
        Offer the head request to assigner.assign(meta) under the processing lock.

        The request is removed only when assign returns True, or when it raises
        RequestCanceled. Any other outcome leaves the queue as it was for the
        next tick. Returns True only for a successful assignment.
        """
        try:
            lock = self._acquire_processing_lock()
        except LockAcquisitionFailed as e:
            self.metrics["lock_failures"] += 1
            logger.warning(f"skipping tick: {e}")
            return False

        try:
            request_id = self.store.list_head(self.LIST_KEY)
            if request_id is None:
                logger.debug("no requests pending")
                return False

            meta = self.load_meta(request_id)
            if meta is None:
                self._skip_orphan_head(request_id)
                return False
            self._orphan_head = (None, 0)

            logger.debug(f"servicing request {request_id}")
            try:
                assigned = assigner.assign(meta)
            except RequestCanceled:
                self._remove(request_id)
                self.metrics["withdrawn"] += 1
                logger.info(json.dumps({"event": "request_withdrawn", "request_id": request_id}))
                return False
            except Exception as e:
                logger.error(json.dumps({"event": "assign_failed", "request_id": request_id, "error": repr(e)}))
                return False

            if not assigned:
                return False

            self._remove(request_id)
            self.metrics["assigned"] += 1
            logger.info(json.dumps({"event": "request_assigned", "request_id": request_id}))
            return True
        finally:
            try:
                lock.release()
            except StoreError as e:
                logger.error(json.dumps({"event": "lock_release_failed", "lock": self.LOCK_KEY, "error": str(e)}))

    def _skip_orphan_head(self, request_id: str):
        orphan_id, skips = self._orphan_head
        skips = skips + 1 if orphan_id == request_id else 1
        self._orphan_head = (request_id, skips)
        self.metrics["missing_metadata"] += 1

        err = MissingMetadata(request_id)
        logger.error(json.dumps({"event": "missing_metadata", "request_id": request_id, "skips": skips, "error": str(err)}))

        if self.orphan_evict_after and skips >= self.orphan_evict_after:
            self._remove(request_id)
            self._orphan_head = (None, 0)
            self.metrics["orphans_evicted"] += 1
            logger.error(json.dumps({"event": "orphan_evicted", "request_id": request_id, "skips": skips}))

    def snapshot_positions(self) -> List[QueuePosition]:
        """
        Position and wait time of every queued request older than the grace period.

        This is a plain read with no lock: the list is read once, and each
        metadata lookup after that may already be stale.
        """
        request_ids = self.store.list_range(self.LIST_KEY)
        if not request_ids:
            logger.debug("no updates to process")
            return []

        now = self.clock()
        snapshot = []
        for position, request_id in enumerate(request_ids):
            meta = self.load_meta(request_id)
            if meta is None:
                logger.warning(f"no meta for {request_id} - update skipped")
                continue
            waited = now - meta.created
            if waited < self.grace_sec:
                continue
            snapshot.append(QueuePosition(meta, position, int(waited)))
        return snapshot

    def reconcile(self, evict: bool = False) -> Dict[str, List[str]]:
        """
        Look for list entries without metadata and metadata without a list entry.
        With evict=True both kinds are removed.
        """
        # Metadata is scanned before the list is read so a request enqueued in
        # between is never reported as stray.
        meta_ids = [key[len(self.META_PREFIX):] for key in self.store.scan(self.META_PREFIX)]
        queued = self.pending()
        queued_set = set(queued)

        orphaned = [request_id for request_id in queued if not self.store.get_hash(self.meta_key(request_id))]
        stray = [request_id for request_id in meta_ids if request_id not in queued_set]

        if orphaned or stray:
            logger.error(json.dumps({"event": "queue_divergence", "orphaned": orphaned, "stray": stray}))
            if evict:
                for request_id in orphaned + stray:
                    self._remove(request_id)
                self.metrics["orphans_evicted"] += len(orphaned)

        return {"orphaned": orphaned, "stray": stray}
