import logging
from abc import ABC, abstractmethod

from recorder_dispatch.errors import ResourceUnavailable
from recorder_dispatch.pool.tracker import RecorderTracker
from recorder_dispatch.queue.models import RequestMeta

logger = logging.getLogger(__name__)


class Assigner(ABC):
    @abstractmethod
    def assign(self, meta: RequestMeta) -> bool:
        """
        Try to grant a recorder to the request at the head of the queue.

        Return True once the requester has been told, False to leave the
        request queued. Raise RequestCanceled if the requester is gone.
        """


class StatusReporter(ABC):
    @abstractmethod
    def report_status(self, meta: RequestMeta, position: int, wait_seconds: int) -> bool:
        """Tell the requester where it stands in the queue."""


class RecorderAssigner(Assigner):
    def __init__(self, tracker: RecorderTracker, notifier):
        self.tracker = tracker
        self.notifier = notifier

    def assign(self, meta):
        try:
            recorder_id = self.tracker.claim_available()
        except ResourceUnavailable:
            logger.debug("no recorders")
            return False
        return self.notifier.grant(meta, recorder_id)


class QueueStatusReporter(StatusReporter):
    def __init__(self, notifier):
        self.notifier = notifier

    def report_status(self, meta, position, wait_seconds):
        logger.debug(f"request update {meta.request_id} position: {position} time: {wait_seconds}")
        return self.notifier.queue_update(meta, position, wait_seconds)
