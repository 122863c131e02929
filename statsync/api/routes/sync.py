"""Sync API routes for running sync jobs and managing cursors.

Provides endpoints for:
- Starting a sync job (one entity type, a per-game backfill, the derived
  recompute or a full season run)
- Streaming a job's progress as server-sent events
- Listing jobs
- Inspecting and resetting cursors
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from statsync.core.database import get_db
from statsync.core.exceptions import UnknownEntityError
from statsync.services.jobs.job_manager import JobRegistry, format_sse
from statsync.services.sync.cursor_store import CursorStore
from statsync.services.sync.entities import get_spec
from statsync.services.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])

# Job kinds that are not a single entity type
PIPELINE_JOBS = ("derived", "full_season")


class SyncJobRequest(BaseModel):
    """Request body for starting a sync job."""
    entity_type: str = Field(..., description="Entity type, or 'derived' / 'full_season'")
    filters: Dict[str, Any] = Field(default_factory=dict, description="Provider filters (season, week, team_ids, ...)")
    max_pages: Optional[int] = Field(None, ge=1, description="Page cap for this run")
    resume: bool = Field(True, description="Continue from the stored cursor")


def get_registry(request: Request) -> JobRegistry:
    """Dependency to get the application's job registry."""
    return request.app.state.jobs


def get_orchestrator_factory(request: Request):
    """Dependency returning a builder for per-job orchestrators."""
    state = request.app.state

    def build(on_progress=None) -> SyncOrchestrator:
        return SyncOrchestrator(
            state.sync_engine, state.session_factory, state.sync_concurrency, on_progress=on_progress
        )

    return build


def _runner(body: SyncJobRequest, build_orchestrator):
    filters = dict(body.filters)

    async def run(emit):
        orchestrator = build_orchestrator(on_progress=emit)
        if body.entity_type == "derived":
            return orchestrator.compute_derived(int(filters["season"]), filters.get("week"))
        if body.entity_type == "full_season":
            return await orchestrator.run_full_season(
                int(filters["season"]),
                include_extras=bool(filters.get("include_extras")),
                include_injuries=bool(filters.get("include_injuries")),
            )

        spec = get_spec(body.entity_type)
        if spec.game_param and spec.game_param not in filters:
            # No game given: backfill every stored game of the season/week
            backfiller = orchestrator.backfiller
            game_ids = backfiller.game_ids_for(int(filters["season"]), filters.get("week"))
            extra = {k: v for k, v in filters.items() if k not in ("season", "week")}
            result = await backfiller.sync_per_game(
                body.entity_type, game_ids, extra_filters=extra, max_pages=body.max_pages, on_unit=emit
            )
            return result.to_dict()

        result = await orchestrator.engine.sync_entity(
            body.entity_type, filters, max_pages=body.max_pages, resume=body.resume, on_page=emit
        )
        return result.to_dict()

    return run


@router.post("/jobs", status_code=202)
async def start_sync_job(
    body: SyncJobRequest,
    registry: JobRegistry = Depends(get_registry),
    build_orchestrator=Depends(get_orchestrator_factory),
) -> Dict:
    """
    Start a sync job in the background.

    Returns:
        The job id; progress is available from /sync/jobs/{job_id}/events
    """
    if body.entity_type in PIPELINE_JOBS:
        if "season" not in body.filters:
            raise HTTPException(status_code=400, detail=f"'{body.entity_type}' requires filters.season")
    else:
        try:
            spec = get_spec(body.entity_type)
        except UnknownEntityError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if spec.game_param and spec.game_param not in body.filters and "season" not in body.filters:
            raise HTTPException(
                status_code=400,
                detail=f"'{body.entity_type}' requires filters.{spec.game_param} or filters.season",
            )

    job = registry.start(body.entity_type, _runner(body, build_orchestrator))
    logger.info(f"Sync job {job.id} requested: {body.entity_type} filters={body.filters}")
    return {"job_id": job.id, "status": job.status}


@router.get("/jobs")
async def list_sync_jobs(registry: JobRegistry = Depends(get_registry)) -> Dict:
    jobs = [job.to_dict() for job in registry.list()]
    return {"count": len(jobs), "jobs": jobs}


@router.get("/jobs/{job_id}")
async def get_sync_job(job_id: str, registry: JobRegistry = Depends(get_registry)) -> Dict:
    job = registry.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found")
    return job.to_dict()


@router.get("/jobs/{job_id}/events")
async def stream_sync_job(job_id: str, registry: JobRegistry = Depends(get_registry)):
    """
    Stream a job's events (progress, complete, error, done) as text/event-stream.

    Events emitted before the client attached are replayed first.
    """
    try:
        subscription = registry.subscribe(job_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found")

    async def event_stream():
        try:
            async for event in subscription:
                yield format_sse(event)
        finally:
            registry.unsubscribe(subscription)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/cursors")
async def list_cursors(
    prefix: Optional[str] = Query(None, description="Only keys starting with this prefix"),
    db: Session = Depends(get_db),
) -> Dict:
    records = CursorStore(db).list_records(prefix)
    cursors: List[Dict] = [
        {
            "key": r.key,
            "cursor": r.cursor,
            "meta": r.meta or {},
            "updated_at": r.updated_at.isoformat() if r.updated_at else None,
        }
        for r in records
    ]
    return {"count": len(cursors), "cursors": cursors}


@router.delete("/cursors/{key}")
async def reset_cursor(key: str, db: Session = Depends(get_db)) -> Dict:
    """Delete one cursor so the next run of that job starts from the beginning."""
    store = CursorStore(db)
    if not store.reset(key):
        raise HTTPException(status_code=404, detail=f"Cursor '{key}' not found")
    db.commit()
    return {"key": key, "reset": True}


@router.delete("/cursors")
async def reset_cursors(
    prefix: str = Query(..., min_length=1, description="Reset every key starting with this prefix"),
    db: Session = Depends(get_db),
) -> Dict:
    deleted = CursorStore(db).reset_prefix(prefix)
    db.commit()
    return {"prefix": prefix, "reset": deleted}
