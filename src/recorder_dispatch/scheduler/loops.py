import json
import time
import logging
import threading
from typing import Optional

from recorder_dispatch.errors import RequestCanceled
from recorder_dispatch.queue.service import RequestQueue
from recorder_dispatch.scheduler.callbacks import Assigner, StatusReporter

logger = logging.getLogger(__name__)


class PeriodicLoop:
    """
    Runs tick() on a background thread every interval_sec until shutdown().

    A tick always finishes before the next one starts. Exceptions from a tick
    are logged and the loop carries on.
    """
    name = "loop"

    def __init__(self, interval_sec: float):
        self.interval_sec = interval_sec
        self.ticks = 0
        self.errors = 0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def tick(self):
        raise NotImplementedError

    def start(self):
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.info(json.dumps({"event": "loop_started", "loop": self.name, "interval_sec": self.interval_sec}))

    def _run(self):
        while not self._stop_event.is_set():
            start_t = time.perf_counter()
            try:
                self.tick()
            except Exception as e:
                self.errors += 1
                logger.error(json.dumps({"event": "tick_failed", "loop": self.name, "error": repr(e)}))
            finally:
                self.ticks += 1
                elapsed_ms = (time.perf_counter() - start_t) * 1000
                logger.debug(f"{self.name} tick took {elapsed_ms:.2f}ms")
            self._stop_event.wait(self.interval_sec)

    def shutdown(self):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        logger.info(json.dumps({"event": "loop_stopped", "loop": self.name, "ticks": self.ticks}))


class SchedulerLoop(PeriodicLoop):
    """Offers the head of the queue to the assigner once per tick."""
    name = "scheduler"

    def __init__(self, queue: RequestQueue, assigner: Assigner, interval_sec: float = 1.0):
        super().__init__(interval_sec)
        self.queue = queue
        self.assigner = assigner

    def tick(self) -> bool:
        return self.queue.dequeue_if_assignable(self.assigner)


class UpdateLoop(PeriodicLoop):
    """Reports position and wait time to every queued requester once per tick."""
    name = "updater"

    def __init__(self, queue: RequestQueue, reporter: StatusReporter, interval_sec: float = 3.0):
        super().__init__(interval_sec)
        self.queue = queue
        self.reporter = reporter

    def tick(self) -> int:
        """Returns how many updates were delivered."""
        delivered = 0
        for entry in self.queue.snapshot_positions():
            request_id = entry.meta.request_id
            try:
                if self.reporter.report_status(entry.meta, entry.position, entry.wait_seconds):
                    delivered += 1
            except RequestCanceled:
                logger.info(json.dumps({"event": "requester_gone", "request_id": request_id}))
                try:
                    self.queue.cancel(request_id)
                except Exception as e:
                    logger.error(json.dumps({"event": "cancel_failed", "request_id": request_id, "error": repr(e)}))
            except Exception as e:
                logger.error(json.dumps({"event": "update_failed", "request_id": request_id, "error": repr(e)}))
        return delivered
