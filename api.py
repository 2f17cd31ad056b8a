from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query
from pydantic import BaseModel

from task_engine import TaskState


class TrackedSet(BaseModel):
    set_id: str
    pair: List[str]
    assets: List[str]


class StatusResponse(BaseModel):
    engine: Dict[str, int]
    paused_until: Optional[float] = None
    min_timeframe: Optional[int] = None
    last_reconcile_at: Optional[float] = None
    sets: List[TrackedSet]


class ActionResponse(BaseModel):
    status: str
    detail: Optional[Any] = None


def create_app(archiver) -> FastAPI:
    """HTTP view over a running Archiver (engine counters, tasks, pause and cancel)."""
    app = FastAPI(title="Binance Archiver API")
    app.state.archiver = archiver
    logger = archiver.logger

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/status", response_model=StatusResponse)
    async def status():
        sets = [
            TrackedSet(set_id=set_id, pair=list(s.pair), assets=[a.asset_id for a in s.assets])
            for set_id, s in sorted(archiver.sets().items())
        ]
        return StatusResponse(
            engine=archiver.engine.counts(),
            paused_until=archiver.engine.paused_until,
            min_timeframe=archiver.min_timeframe,
            last_reconcile_at=archiver.last_reconcile_at,
            sets=sets,
        )

    @app.get("/tasks")
    async def tasks(state: Optional[str] = Query(None, description="queued | running | completed | failed | interrupted")):
        if state is not None:
            try:
                TaskState(state)
            except ValueError:
                raise HTTPException(status_code=400, detail=f"Unknown task state {state!r}")
        snapshot = archiver.engine.snapshot()
        if state is not None:
            snapshot = [t for t in snapshot if t["state"] == state]
        return {"tasks": snapshot}

    @app.post("/pause", response_model=ActionResponse)
    async def pause(seconds: float = Query(..., gt=0, le=24 * 3600)):
        archiver.engine.pause(seconds)
        return ActionResponse(status="paused", detail={"paused_until": archiver.engine.paused_until})

    @app.post("/reconcile", response_model=ActionResponse)
    async def reconcile(background_tasks: BackgroundTasks):
        def task():
            try:
                archiver.reconcile()
            except Exception as e:
                logger.exception(f"Reconciliation requested through the API failed: {e}")

        background_tasks.add_task(task)
        return ActionResponse(status="scheduled")

    @app.delete("/sets/{set_id}/tasks", response_model=ActionResponse)
    async def cancel_set(set_id: str):
        if archiver.find_set(set_id) is None:
            raise HTTPException(status_code=404, detail=f"Set {set_id.upper()} is not tracked")
        canceled = archiver.cancel_set(set_id)
        return ActionResponse(status="canceled", detail={"tasks": canceled})

    return app
