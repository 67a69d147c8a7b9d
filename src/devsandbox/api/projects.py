"""API endpoints for projects and their cached images."""

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends

from devsandbox.api.deps import get_images, get_orchestrator, get_projects
from devsandbox.sandbox.images import ImageCache
from devsandbox.sandbox.orchestrator import SessionOrchestrator
from devsandbox.sandbox.projects import ProjectService
from devsandbox.sandbox.schemas import ProjectCreate, ProjectUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/projects", tags=["projects"])


@router.get("")
def list_projects(projects: ProjectService = Depends(get_projects)) -> list[dict]:
    return [p.as_payload() for p in projects.list()]


@router.post("", status_code=201)
def create_project(data: ProjectCreate, projects: ProjectService = Depends(get_projects)) -> dict:
    return projects.create(data).as_payload()


@router.post("/validate")
def validate_project(
    data: dict[str, Any] = Body(...),
    projects: ProjectService = Depends(get_projects),
) -> dict[str, Any]:
    return projects.validate(data)


@router.get("/by-name/{name}")
def get_project_by_name(name: str, projects: ProjectService = Depends(get_projects)) -> dict:
    return projects.get_by_name(name).as_payload()


@router.get("/{project_id}")
def get_project(project_id: str, projects: ProjectService = Depends(get_projects)) -> dict:
    return projects.get(project_id).as_payload()


@router.patch("/{project_id}")
def update_project(
    project_id: str,
    data: ProjectUpdate,
    projects: ProjectService = Depends(get_projects),
) -> dict:
    return projects.update(project_id, data).as_payload()


@router.delete("/{project_id}", status_code=204)
def delete_project(project_id: str, projects: ProjectService = Depends(get_projects)) -> None:
    projects.delete(project_id)


@router.get("/{project_id}/sessions")
def project_sessions(
    project_id: str,
    projects: ProjectService = Depends(get_projects),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> list[dict]:
    project = projects.get(project_id)
    return [s.as_payload() for s in orchestrator.list_by_project(project.id)]


@router.get("/{project_id}/image")
def image_status(
    project_id: str,
    projects: ProjectService = Depends(get_projects),
    images: ImageCache = Depends(get_images),
) -> dict | None:
    project = projects.get(project_id)
    record = images.status(project.id)
    return record.as_payload() if record else None


@router.post("/{project_id}/image/rebuild")
def rebuild_image(
    project_id: str,
    projects: ProjectService = Depends(get_projects),
    images: ImageCache = Depends(get_images),
) -> dict:
    project = projects.get(project_id)
    logger.info(f"Rebuilding image for project {project.name}")
    tag = images.rebuild(project)
    record = images.status(project.id)
    return {"image_tag": tag, "status": record.status if record else None}
