import logging
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from agents.procedure_agent.dates import parse_run_date
from agents.procedure_agent.service import ProcedureAgentService
from routers.auth import ensure_request_authorized

logger = logging.getLogger("procedure_runner.procedure_router")


class RunRequest(BaseModel):
    """Payload to start a procedure batch."""

    run_id: Optional[str] = None
    run_date: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


def create_procedure_router(
    service: ProcedureAgentService,
    job_secret: str,
    missing_config_fn: Callable[[], List[str]],
) -> APIRouter:
    """Create the HTTP router that starts batches and exposes their progress."""
    router = APIRouter(tags=["procedure-agent"])
    runners = service.list_jobs()

    def ensure_auth(request: Request, body_secret: Optional[str] = None) -> None:
        ensure_request_authorized(request, job_secret, logger, body_secret=body_secret)

    @router.post("/run/{job_name}")
    def run_job(job_name: str, req: RunRequest, request: Request, background_tasks: BackgroundTasks):
        """Start a registered job in the background; progress is polled via /procedures/status."""
        missing = missing_config_fn()
        if missing:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid procedure config. Missing: {', '.join(sorted(missing))}",
            )
        ensure_auth(request, body_secret=(req.payload or {}).get("secret"))

        runner = runners.get(job_name)
        if not runner:
            raise HTTPException(status_code=404, detail=f"Unknown job: {job_name}")
        if service.has_active_run():
            raise HTTPException(status_code=409, detail="A procedure run is already active")

        run_date = (req.run_date or "").strip()
        if run_date:
            try:
                parse_run_date(run_date)
            except RuntimeError as err:
                raise HTTPException(status_code=400, detail=str(err)) from err

        run_id = req.run_id or service.now_id()
        logger.info("Run requested job=%s run_id=%s run_date=%s", job_name, run_id, run_date or "today")
        background_tasks.add_task(runner, run_id=run_id, run_date=run_date)
        return {"ok": True, "started": True, "job": job_name, "run_id": run_id}

    @router.get("/jobs")
    def list_jobs(request: Request):
        ensure_auth(request)
        return {"jobs": sorted(runners.keys())}

    @router.get("/procedures/status")
    def status(request: Request):
        """Current progress snapshot (buckets, unit in flight)."""
        ensure_auth(request)
        return service.get_status()

    @router.get("/procedures/summary", response_class=PlainTextResponse)
    def summary(request: Request):
        ensure_auth(request)
        return PlainTextResponse(service.get_summary_markdown(), media_type="text/markdown")

    @router.get("/procedures/events")
    def events(request: Request, limit: int = 200):
        ensure_auth(request)
        return service.get_runtime_events(limit=limit)

    return router
