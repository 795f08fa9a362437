"""FastAPI application entry point"""

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
import logging

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from starshelf import __version__
from starshelf.config.database import get_db, init_db
from starshelf.config.settings import settings
from starshelf.durable import DurableRuntime, InvocationNotFoundError, TerminalError
from starshelf.jobs import create_runtime
from starshelf.jobs.cron import CRON_JOB_SERVICE
from starshelf.jobs.github_jobs import GITHUB_JOBS_SERVICE
from starshelf.sanitize import sanitize_log_extra
from starshelf.services.repo_store import SORT_FIELDS, SORT_ORDERS, RepoStore

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    yield


app = FastAPI(
    title=settings.APP_NAME,
    description="Starred GitHub repository browser backend",
    version=__version__,
    lifespan=lifespan,
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global runtime instance; the worker process drives its delayed invocations
runtime = create_runtime()


def get_runtime() -> DurableRuntime:
    return runtime


@app.exception_handler(TerminalError)
async def terminal_error_handler(request: Request, exc: TerminalError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(InvocationNotFoundError)
async def invocation_not_found_handler(request: Request, exc: InvocationNotFoundError):
    return JSONResponse(status_code=404, content={"detail": f"Invocation not found: {exc}"})


async def _invoke(
    durable: DurableRuntime,
    service: str,
    handler: str,
    payload: Any = None,
    *,
    key: Optional[str] = None,
) -> Any:
    try:
        return await durable.invoke(service, handler, payload, key=key)
    except TerminalError:
        raise
    except Exception as exc:
        logger.exception(
            "Invocation failed after retries",
            extra=sanitize_log_extra(service=service, handler=handler, key=key),
        )
        raise HTTPException(status_code=502, detail=f"{service}.{handler} failed: {exc}") from exc


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": settings.APP_NAME,
        "version": __version__,
        "status": "running",
        "endpoints": {
            "health": "/api/health",
            "setup_initialize": "POST /api/setup/initialize",
            "setup_status": "/api/setup/status",
            "setup_teardown": "POST /api/setup/teardown",
            "starred_sync": "POST /api/jobs/starred-sync?force=false",
            "invocation": "/api/invocations/{invocation_id}",
            "cron_jobs": "POST /api/cron-jobs",
            "repos": "/api/repos?limit=30&offset=0&sort_by=starred_at&sort_order=desc",
            "search": "/api/repos/search?q=",
        },
    }


@app.get("/api/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "starshelf",
        "version": __version__,
        "environment": settings.ENVIRONMENT,
    }


@app.post("/api/setup/initialize")
async def setup_initialize(durable: DurableRuntime = Depends(get_runtime)):
    """Create the daily starred-repository sync job unless it already exists"""
    logger.info("Setup initialize triggered")
    return await _invoke(durable, "SetupService", "initialize")


@app.get("/api/setup/status")
async def setup_status(durable: DurableRuntime = Depends(get_runtime)):
    return await _invoke(durable, "SetupService", "get_status")


@app.post("/api/setup/teardown")
async def setup_teardown(durable: DurableRuntime = Depends(get_runtime)):
    logger.info("Setup teardown triggered")
    return await _invoke(durable, "SetupService", "teardown")


@app.post("/api/jobs/starred-sync")
async def trigger_starred_sync(force: bool = False, durable: DurableRuntime = Depends(get_runtime)):
    """
    Queue a starred-repository sync

    The worker picks the invocation up on its next poll.

    Query params:
        force: Run even outside the production environment (default: false)
    """
    invocation_id = durable.enqueue(GITHUB_JOBS_SERVICE, "update_user_starred_repos", {"force": force})
    logger.info("Starred sync queued", extra=sanitize_log_extra(invocation_id=invocation_id, force=force))
    return {
        "status": "queued",
        "invocation_id": invocation_id,
        "message": "Starred sync queued for the worker",
    }


@app.get("/api/invocations/{invocation_id}")
async def get_invocation(invocation_id: str, durable: DurableRuntime = Depends(get_runtime)):
    return durable.get_invocation(invocation_id)


@app.post("/api/cron-jobs")
async def create_cron_job(
    request: Dict[str, Any] = Body(...),
    durable: DurableRuntime = Depends(get_runtime),
):
    """
    Create a cron job

    Body:
        cron_expression, service, method (required); id, key, payload (optional)
    """
    message = await _invoke(durable, "CronJobInitiator", "create", request)
    return {"status": "created", "message": message}


@app.get("/api/cron-jobs/{job_id}")
async def get_cron_job(job_id: str, durable: DurableRuntime = Depends(get_runtime)):
    job = await _invoke(durable, CRON_JOB_SERVICE, "get_info", key=job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Cron job not found: {job_id}")
    return job


@app.delete("/api/cron-jobs/{job_id}")
async def cancel_cron_job(job_id: str, durable: DurableRuntime = Depends(get_runtime)):
    await _invoke(durable, CRON_JOB_SERVICE, "cancel", key=job_id)
    return {"status": "cancelled", "job_id": job_id}


@app.get("/api/repos")
def list_repos(
    limit: int = Query(30, ge=1, le=100),
    offset: int = Query(0, ge=0),
    sort_by: str = "starred_at",
    sort_order: str = "desc",
    db: Session = Depends(get_db),
):
    _validate_sort(sort_by, sort_order)
    return RepoStore(db).list_repos(limit=limit, offset=offset, sort_by=sort_by, sort_order=sort_order).to_dict()


@app.get("/api/repos/search")
def search_repos(
    q: str = "",
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    sort_by: str = "starred_at",
    sort_order: str = "desc",
    db: Session = Depends(get_db),
):
    _validate_sort(sort_by, sort_order)
    page = RepoStore(db).search_repos(q, limit=limit, offset=offset, sort_by=sort_by, sort_order=sort_order)
    return page.to_dict()


@app.get("/api/repos/count")
def count_repos(db: Session = Depends(get_db)):
    return {"count": RepoStore(db).count_repos()}


@app.get("/api/repos/by-name/{owner}/{name}")
def get_repo_by_name(owner: str, name: str, db: Session = Depends(get_db)):
    repo = RepoStore(db).get_repo_by_name(f"{owner}/{name}")
    if repo is None:
        raise HTTPException(status_code=404, detail=f"Repository not found: {owner}/{name}")
    return repo.to_dict()


@app.get("/api/repos/{repo_pk}")
def get_repo(repo_pk: int, db: Session = Depends(get_db)):
    repo = RepoStore(db).get_repo_by_id(repo_pk)
    if repo is None:
        raise HTTPException(status_code=404, detail=f"Repository not found: {repo_pk}")
    return repo.to_dict()


def _validate_sort(sort_by: str, sort_order: str) -> None:
    if sort_by not in SORT_FIELDS:
        raise HTTPException(status_code=400, detail=f"Unsupported sort field: {sort_by}")
    if sort_order not in SORT_ORDERS:
        raise HTTPException(status_code=400, detail=f"Unsupported sort order: {sort_order}")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "starshelf.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=settings.DEBUG
    )
