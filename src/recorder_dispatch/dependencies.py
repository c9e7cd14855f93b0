from recorder_dispatch.pool.tracker import RecorderTracker
from recorder_dispatch.queue.service import RequestQueue

# Populated during app lifespan
_tracker_instance: RecorderTracker = None
_queue_instance: RequestQueue = None


def get_tracker() -> RecorderTracker:
    """FastAPI dependency for the recorder pool tracker."""
    if not _tracker_instance:
        raise RuntimeError("Recorder tracker is not initialized.")
    return _tracker_instance


def get_request_queue() -> RequestQueue:
    """FastAPI dependency for the shared request queue."""
    if not _queue_instance:
        raise RuntimeError("Request queue is not initialized.")
    return _queue_instance


def set_services(tracker: RecorderTracker, queue: RequestQueue):
    global _tracker_instance, _queue_instance
    _tracker_instance = tracker
    _queue_instance = queue
