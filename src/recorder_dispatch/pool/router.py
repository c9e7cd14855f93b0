from fastapi import APIRouter, HTTPException, Depends

from recorder_dispatch.dependencies import get_tracker
from recorder_dispatch.errors import StoreError
from recorder_dispatch.pool.schemas import RecorderReport
from recorder_dispatch.pool.tracker import RecorderTracker

router = APIRouter(tags=["Recorders"])

# Plain `def` routes: the store calls block, so FastAPI runs these in its threadpool.


@router.post("/report")
def report_state(report: RecorderReport, tracker: RecorderTracker = Depends(get_tracker)):
    try:
        available = tracker.report(report.recorder_id, busy=report.busy, healthy=report.healthy)
        return {"status": "ok", "available": available}
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/recorders")
def list_recorders(tracker: RecorderTracker = Depends(get_tracker)):
    try:
        return {"status": "ok", "idle": tracker.idle(), "available": tracker.available()}
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e))
