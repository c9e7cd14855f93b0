from fastapi import APIRouter, HTTPException, Depends

from recorder_dispatch.dependencies import get_request_queue, get_tracker
from recorder_dispatch.errors import StoreError
from recorder_dispatch.pool.tracker import RecorderTracker
from recorder_dispatch.queue.models import RecorderRequest
from recorder_dispatch.queue.schemas import CancelRequest, QueueEntry
from recorder_dispatch.queue.service import RequestQueue

router = APIRouter(tags=["Queue"])


@router.post("/request")
def request_recorder(req: RecorderRequest, queue: RequestQueue = Depends(get_request_queue)):
    try:
        meta = queue.enqueue(req)
        return {"status": "ok", "request_id": meta.request_id, "created": meta.created}
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/cancel")
def cancel_request(req: CancelRequest, queue: RequestQueue = Depends(get_request_queue)):
    try:
        removed = queue.cancel(req.request_id)
        return {"status": "ok", "removed": removed}
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/queue")
def queue_status(queue: RequestQueue = Depends(get_request_queue)):
    try:
        entries = [
            QueueEntry(request_id=e.meta.request_id, position=e.position, wait_seconds=e.wait_seconds)
            for e in queue.snapshot_positions()
        ]
        return {"status": "ok", "entries": entries}
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/queue/reconcile")
def reconcile_queue(evict: bool = False, queue: RequestQueue = Depends(get_request_queue)):
    try:
        return {"status": "ok", **queue.reconcile(evict=evict)}
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/metrics")
def get_metrics(
    queue: RequestQueue = Depends(get_request_queue),
    tracker: RecorderTracker = Depends(get_tracker),
):
    try:
        return {
            "status": "ok",
            "metrics": {
                "queue": queue.metrics,
                "recorders": tracker.metrics,
                "queue_length": queue.size(),
                "available_recorders": len(tracker.available()),
            },
        }
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e))
