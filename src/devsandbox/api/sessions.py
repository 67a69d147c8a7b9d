"""
API endpoints for sandbox sessions.

Lifecycle calls block until the engine is done, so they are plain ``def``
handlers and run in the threadpool.
"""

import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from devsandbox.api.deps import get_created_by, get_orchestrator
from devsandbox.sandbox.containers import ContainerLogs
from devsandbox.sandbox.orchestrator import SessionOrchestrator
from devsandbox.sandbox.worktrees import CommitInfo, GitStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


class SessionCreate(BaseModel):
    project_id: str
    name: str
    branch: str | None = Field(None, description="Branch to work on, defaults to session/<short id>")
    claude_source_user: str | None = Field(None, description="Host user whose identity the container runs as")
    git_user_name: str | None = None
    git_user_email: str | None = None


class CommitRequest(BaseModel):
    message: str
    files: list[str] | None = None


class CommitResponse(BaseModel):
    commit: str


@router.get("")
def list_sessions(
    project_id: str | None = None,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> list[dict]:
    sessions = orchestrator.list_by_project(project_id) if project_id else orchestrator.list_sessions()
    return [s.as_payload() for s in sessions]


@router.post("", status_code=201)
def create_session(
    data: SessionCreate,
    created_by: str | None = Depends(get_created_by),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> dict:
    session = orchestrator.create(
        project_id=data.project_id,
        name=data.name,
        branch=data.branch,
        claude_source_user=data.claude_source_user,
        git_user_name=data.git_user_name,
        git_user_email=data.git_user_email,
        created_by=created_by,
    )
    return session.as_payload()


@router.get("/{session_id}")
def get_session(session_id: str, orchestrator: SessionOrchestrator = Depends(get_orchestrator)) -> dict:
    return orchestrator.get(session_id).as_payload()


@router.post("/{session_id}/start")
def start_session(session_id: str, orchestrator: SessionOrchestrator = Depends(get_orchestrator)) -> dict:
    return orchestrator.start(session_id).as_payload()


@router.post("/{session_id}/stop")
def stop_session(session_id: str, orchestrator: SessionOrchestrator = Depends(get_orchestrator)) -> dict:
    return orchestrator.stop(session_id).as_payload()


@router.post("/{session_id}/restart")
def restart_session(session_id: str, orchestrator: SessionOrchestrator = Depends(get_orchestrator)) -> dict:
    return orchestrator.restart(session_id).as_payload()


@router.delete("/{session_id}", status_code=204)
def delete_session(session_id: str, orchestrator: SessionOrchestrator = Depends(get_orchestrator)) -> None:
    orchestrator.remove(session_id)


@router.get("/{session_id}/logs")
def session_logs(
    session_id: str,
    tail: int = Query(500, ge=1, le=10000),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> ContainerLogs:
    return orchestrator.get_logs(session_id, tail=tail)


@router.get("/{session_id}/git/status")
def git_status(session_id: str, orchestrator: SessionOrchestrator = Depends(get_orchestrator)) -> GitStatus:
    return orchestrator.git_status(session_id)


@router.get("/{session_id}/git/diff")
def git_diff(
    session_id: str,
    staged: bool = False,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> dict[str, str]:
    return {"diff": orchestrator.git_diff(session_id, staged=staged)}


@router.get("/{session_id}/git/log")
def git_log(
    session_id: str,
    limit: int = Query(20, ge=1, le=500),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> list[CommitInfo]:
    return orchestrator.git_log(session_id, limit=limit)


@router.post("/{session_id}/git/commit")
def git_commit(
    session_id: str,
    data: CommitRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> CommitResponse:
    return CommitResponse(commit=orchestrator.git_commit(session_id, data.message, data.files))


@router.post("/{session_id}/git/push")
def git_push(session_id: str, orchestrator: SessionOrchestrator = Depends(get_orchestrator)) -> dict[str, bool]:
    orchestrator.git_push(session_id)
    return {"success": True}


@router.post("/{session_id}/git/pull")
def git_pull(session_id: str, orchestrator: SessionOrchestrator = Depends(get_orchestrator)) -> dict[str, bool]:
    orchestrator.git_pull(session_id)
    return {"success": True}
