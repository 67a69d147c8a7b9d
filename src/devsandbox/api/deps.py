"""Request-scoped access to the component graph built in the app lifespan."""

from fastapi import Request
from starlette.requests import HTTPConnection

from devsandbox.common.db import Database
from devsandbox.common.db.store import SandboxStore
from devsandbox.sandbox.containers import ContainerRuntime
from devsandbox.sandbox.images import ImageCache
from devsandbox.sandbox.inventory import WorktreeInventory
from devsandbox.sandbox.orchestrator import SessionOrchestrator
from devsandbox.sandbox.projects import ProjectService


def get_database(conn: HTTPConnection) -> Database:
    return conn.app.state.database


def get_store(conn: HTTPConnection) -> SandboxStore:
    return conn.app.state.store


def get_runtime(conn: HTTPConnection) -> ContainerRuntime:
    return conn.app.state.runtime


def get_orchestrator(conn: HTTPConnection) -> SessionOrchestrator:
    return conn.app.state.orchestrator


def get_projects(request: Request) -> ProjectService:
    return request.app.state.projects


def get_images(request: Request) -> ImageCache:
    return request.app.state.images


def get_inventory(request: Request) -> WorktreeInventory:
    return request.app.state.inventory


def get_created_by(request: Request) -> str | None:
    """Identity of the caller, supplied by the fronting auth layer."""
    return request.headers.get("X-Created-By") or None
