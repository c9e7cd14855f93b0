import json
import logging
from typing import List

from recorder_dispatch.errors import ResourceUnavailable
from recorder_dispatch.store.backends import LeaseStore

logger = logging.getLogger(__name__)


class RecorderTracker:
    """
    Tracks which recorders can take a new request, using two leases per recorder.

    recorder:idle:<id> exists while the recorder last reported idle and healthy.
    It is refreshed by every such report and simply expires if reports stop.

    recorder:pending:<id> is created when a recorder is claimed and is never
    deleted; it expires after pending_ttl_sec. Until then no other instance can
    claim that recorder, even though it has not yet reported busy.
    """

    IDLE_PREFIX = "recorder:idle:"
    PENDING_PREFIX = "recorder:pending:"

    def __init__(self, store: LeaseStore, idle_ttl_sec: float = 90.0, pending_ttl_sec: float = 10.0):
        self.store = store
        self.idle_ttl_sec = idle_ttl_sec
        self.pending_ttl_sec = pending_ttl_sec

        self.metrics = {
            "reports": 0,
            "claims": 0,
            "claim_misses": 0,
        }

    def idle_key(self, recorder_id: str) -> str:
        return f"{self.IDLE_PREFIX}{recorder_id}"

    def pending_key(self, recorder_id: str) -> str:
        return f"{self.PENDING_PREFIX}{recorder_id}"

    def report(self, recorder_id: str, busy: bool, healthy: bool) -> bool:
        """
        Record one state report. Returns True if the recorder is now available.
        Store failures propagate as StoreError.
        """
        self.metrics["reports"] += 1
        key = self.idle_key(recorder_id)
        if not busy and healthy:
            self.store.set(key, "1", self.idle_ttl_sec)
            logger.debug(f"setting {key}")
            return True

        self.store.delete(key)
        logger.debug(f"deleting {key}")
        return False

    def idle(self) -> List[str]:
        return [key[len(self.IDLE_PREFIX):] for key in self.store.scan(self.IDLE_PREFIX)]

    def available(self) -> List[str]:
        """Idle recorders that are not currently reserved by a claim."""
        pending = {key[len(self.PENDING_PREFIX):] for key in self.store.scan(self.PENDING_PREFIX)}
        return [recorder_id for recorder_id in self.idle() if recorder_id not in pending]

    def claim_available(self) -> str:
        """
        Reserve one idle recorder and return its id.

        Candidates come back in whatever order the store enumerates them.
        Two instances racing for the same recorder are separated only by the
        create-if-absent on its pending lease.
        """
        candidates = self.idle()
        logger.debug(f"idle recorders: {candidates}")

        for recorder_id in candidates:
            if self.store.create_if_absent(self.pending_key(recorder_id), "1", self.pending_ttl_sec):
                self.metrics["claims"] += 1
                logger.info(json.dumps({"event": "recorder_claimed", "recorder_id": recorder_id}))
                return recorder_id
            logger.debug(f"{recorder_id} is already pending")

        self.metrics["claim_misses"] += 1
        raise ResourceUnavailable("no recorders available")
