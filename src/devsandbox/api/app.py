"""
FastAPI application for the sandbox control plane.
"""

import contextlib
import logging

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from devsandbox.api import containers, projects, proxy, sessions, terminal, worktrees
from devsandbox.api.deps import get_database
from devsandbox.common import settings
from devsandbox.common.db import Database
from devsandbox.common.db.store import SandboxStore
from devsandbox.sandbox.containers import ContainerRuntime
from devsandbox.sandbox.errors import GitError, NotFoundError, SandboxError, ValidationError
from devsandbox.sandbox.images import ImageCache
from devsandbox.sandbox.inventory import WorktreeInventory
from devsandbox.sandbox.orchestrator import SessionOrchestrator
from devsandbox.sandbox.privileges import PrivilegeBridge
from devsandbox.sandbox.projects import ProjectService
from devsandbox.sandbox.worktrees import WorktreeManager, trust_all_directories

logger = logging.getLogger(__name__)


def build_components(app: FastAPI, database: Database, runtime: ContainerRuntime | None = None) -> None:
    """Wire every component onto ``app.state``."""
    store = SandboxStore(database)
    runtime = runtime or ContainerRuntime()
    worktree_manager = WorktreeManager()
    images = ImageCache(store, runtime)

    app.state.database = database
    app.state.store = store
    app.state.runtime = runtime
    app.state.images = images
    app.state.projects = ProjectService(store)
    app.state.orchestrator = SessionOrchestrator(
        store=store,
        runtime=runtime,
        worktrees=worktree_manager,
        images=images,
        privileges=PrivilegeBridge(),
    )
    app.state.inventory = WorktreeInventory(store, worktree_manager)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    for path in settings.storage_dirs:
        path.mkdir(parents=True, exist_ok=True)

    database = Database(settings.DB_URL).open()
    database.create_all()
    build_components(app, database)

    if settings.CONFIGURE_GIT_SAFE_DIRECTORY:
        try:
            trust_all_directories()
        except GitError as e:
            logger.warning(f"Could not configure git safe.directory: {e}")

    try:
        app.state.orchestrator.sync_with_containers()
    except SandboxError as e:
        logger.error(f"Container sync failed, continuing with stored state: {e}")

    timeout = httpx.Timeout(settings.PROXY_TIMEOUT, connect=settings.PROXY_CONNECT_TIMEOUT)
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=False, trust_env=False) as client:
        app.state.http_client = client
        logger.info(f"Sandbox control plane ready on {settings.SERVER_HOST}:{settings.SERVER_PORT}")
        try:
            yield
        finally:
            app.state.runtime.close()
            database.close()


app = FastAPI(title="Dev Sandbox API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.SERVER_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse({"error": str(exc)}, status_code=404)


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError):
    return JSONResponse({"error": str(exc)}, status_code=400)


@app.exception_handler(SandboxError)
async def sandbox_error_handler(request: Request, exc: SandboxError):
    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse({"error": str(exc)}, status_code=500)


@app.get("/health")
def health_check(request: Request, database: Database = Depends(get_database)):
    """Health check endpoint that verifies all dependencies are accessible."""
    checks = {}
    all_healthy = True

    try:
        with database.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        checks["database"] = f"unhealthy: {str(e)[:100]}"
        all_healthy = False

    if request.app.state.runtime.ping():
        checks["container_engine"] = "healthy"
    else:
        checks["container_engine"] = "unhealthy"
        all_healthy = False

    checks["status"] = "healthy" if all_healthy else "degraded"
    return JSONResponse(checks, status_code=200 if all_healthy else 503)


app.include_router(projects.router)
app.include_router(sessions.router)
app.include_router(containers.router)
app.include_router(worktrees.router)
app.include_router(proxy.router)
app.include_router(terminal.router)


def main(reload: bool = False):
    """Run the API server."""
    import uvicorn

    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "devsandbox.api.app:app",
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        reload=reload,
        log_level=settings.LOG_LEVEL,
    )


if __name__ == "__main__":
    main()
