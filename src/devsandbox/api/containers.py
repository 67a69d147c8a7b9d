"""API endpoints for engine resources belonging to projects."""

import logging
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from devsandbox.api.deps import get_projects, get_runtime, get_store
from devsandbox.common.db.store import SandboxStore
from devsandbox.sandbox.containers import BatchResult, ContainerRuntime, ContainerStats, ProjectResourceSummary
from devsandbox.sandbox.projects import ProjectService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/containers", tags=["containers"])


class BatchRequest(BaseModel):
    ids: list[str]


def session_ids(store: SandboxStore, project_id: str) -> set[str]:
    return {s.id for s in store.list_sessions_by_project(project_id)}


@router.get("/projects/{project_id}")
def project_resources(
    project_id: str,
    projects: ProjectService = Depends(get_projects),
    runtime: ContainerRuntime = Depends(get_runtime),
) -> dict[str, list[dict[str, Any]]]:
    project = projects.get(project_id)
    return {
        "containers": runtime.list_containers(project.id),
        "images": runtime.list_images(project.name),
        "networks": runtime.list_networks(project.id),
        "volumes": runtime.list_volumes(project.id),
    }


@router.get("/projects/{project_id}/summary")
def project_summary(
    project_id: str,
    projects: ProjectService = Depends(get_projects),
    runtime: ContainerRuntime = Depends(get_runtime),
    store: SandboxStore = Depends(get_store),
) -> ProjectResourceSummary:
    project = projects.get(project_id)
    return runtime.get_project_summary(project.id, project.name, session_ids(store, project.id))


@router.get("/projects/{project_id}/orphans")
def orphaned_containers(
    project_id: str,
    projects: ProjectService = Depends(get_projects),
    runtime: ContainerRuntime = Depends(get_runtime),
    store: SandboxStore = Depends(get_store),
) -> list[dict[str, Any]]:
    project = projects.get(project_id)
    return runtime.find_orphaned_containers(project.id, session_ids(store, project.id))


@router.post("/projects/{project_id}/orphans/cleanup")
def cleanup_orphans(
    project_id: str,
    projects: ProjectService = Depends(get_projects),
    runtime: ContainerRuntime = Depends(get_runtime),
    store: SandboxStore = Depends(get_store),
) -> BatchResult:
    project = projects.get(project_id)
    result = runtime.cleanup_orphaned_containers(project.id, session_ids(store, project.id))
    logger.info(f"Orphan cleanup for {project.name}: {len(result.succeeded)} removed, {len(result.failed)} failed")
    return result


@router.get("/{container_id}/stats")
def container_stats(container_id: str, runtime: ContainerRuntime = Depends(get_runtime)) -> ContainerStats:
    return runtime.get_stats(container_id)


@router.post("/batch/stop")
def stop_batch(data: BatchRequest, runtime: ContainerRuntime = Depends(get_runtime)) -> BatchResult:
    return runtime.stop_containers_batch(data.ids)


@router.post("/batch/remove")
def remove_batch(data: BatchRequest, runtime: ContainerRuntime = Depends(get_runtime)) -> BatchResult:
    return runtime.remove_containers_batch(data.ids)
