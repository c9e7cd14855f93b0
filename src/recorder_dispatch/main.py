import argparse
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException

from recorder_dispatch.config import AppConfig, settings
from recorder_dispatch.dependencies import get_request_queue, set_services
from recorder_dispatch.errors import StoreError
from recorder_dispatch.pool.router import router as pool_router
from recorder_dispatch.pool.tracker import RecorderTracker
from recorder_dispatch.queue.router import router as queue_router
from recorder_dispatch.queue.service import RequestQueue
from recorder_dispatch.scheduler.callbacks import QueueStatusReporter, RecorderAssigner
from recorder_dispatch.scheduler.loops import SchedulerLoop, UpdateLoop
from recorder_dispatch.scheduler.notifier import SignalNotifier
from recorder_dispatch.store.backends import LeaseStore, build_store

logging.basicConfig(level=settings.log_level, format='[%(process)d] %(message)s')
logger = logging.getLogger("dispatch")


def create_app(config: AppConfig = settings, store: Optional[LeaseStore] = None,
               notifier: Optional[SignalNotifier] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        lease_store = store or build_store(config)
        tracker = RecorderTracker(
            lease_store,
            idle_ttl_sec=config.idle_ttl_sec,
            pending_ttl_sec=config.pending_ttl_sec,
        )
        queue = RequestQueue(
            lease_store,
            request_ttl_sec=config.request_ttl_sec,
            grace_sec=config.update_grace_sec,
            lock_ttl_sec=config.processing_lock_ttl_sec,
            lock_retry_count=config.lock_retry_count,
            lock_retry_delay_sec=config.lock_retry_delay_sec,
            lock_retry_jitter_sec=config.lock_retry_jitter_sec,
            orphan_evict_after=config.orphan_evict_after,
        )
        set_services(tracker, queue)

        signal = notifier or SignalNotifier(
            auth_token=config.signal_api_token,
            timeout_sec=config.signal_api_timeout_sec,
        )
        loops = [
            SchedulerLoop(queue, RecorderAssigner(tracker, signal), interval_sec=config.scheduler_interval_sec),
            UpdateLoop(queue, QueueStatusReporter(signal), interval_sec=config.update_interval_sec),
        ]
        app.state.loops = loops
        if config.run_loops:
            for loop in loops:
                loop.start()

        logger.info({"event": "dispatch_startup", "port": config.port, "store": config.store_backend})

        yield

        if config.run_loops:
            for loop in loops:
                loop.shutdown()
        logger.info({"event": "dispatch_shutdown"})

    app = FastAPI(lifespan=lifespan, title="Recorder Dispatch")
    app.include_router(queue_router)
    app.include_router(pool_router)

    @app.get("/health")
    def health():
        try:
            get_request_queue().store.ping()
        except StoreError as e:
            raise HTTPException(status_code=503, detail=f"store unavailable: {e}")
        return {"status": "healthy"}

    return app


app = create_app()


def run():
    parser = argparse.ArgumentParser(description="Recorder dispatch service")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=settings.port)
    args = parser.parse_args()
    uvicorn.run("recorder_dispatch.main:app", host=args.host, port=args.port)
