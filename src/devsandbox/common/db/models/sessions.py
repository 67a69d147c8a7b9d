"""
Database model for sandbox sessions.

The worktree and container descriptions are flattened into nullable columns;
``worktree`` and ``container`` expose them as optional dicts.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Annotated, TypedDict

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from devsandbox.common import settings
from devsandbox.common.db.models.base import Base


class SessionStatus(str, enum.Enum):
    PENDING = "pending"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


ACTIVE_STATUSES = (SessionStatus.RUNNING.value, SessionStatus.STARTING.value)


class WorktreePayload(TypedDict):
    path: str
    branch: str
    base_branch: str | None
    commit: str | None


class ContainerPayload(TypedDict):
    id: str
    ports: dict[str, int]
    service_container_ids: list[str]
    network_id: str | None


class SessionPayload(TypedDict):
    id: Annotated[str, "Session ID"]
    project_id: Annotated[str, "Owning project"]
    name: Annotated[str, "Display name"]
    status: Annotated[str, "State machine status"]
    branch: Annotated[str | None, "Requested branch"]
    worktree: Annotated[WorktreePayload | None, "Worktree on the host"]
    container: Annotated[ContainerPayload | None, "Main container, sidecars and network"]
    error: Annotated[str | None, "Last error message, when in error state"]
    claude_source_user: Annotated[str | None, "Host user whose credentials are mounted"]
    git_user_name: Annotated[str | None, "git user.name inside the container"]
    git_user_email: Annotated[str | None, "git user.email inside the container"]
    created_by: Annotated[str | None, "Identity of the creator"]
    created_at: Annotated[str | None, "ISO timestamp of creation"]
    updated_at: Annotated[str | None, "ISO timestamp of last update"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Session(Base):
    """One sandbox: a branch worktree plus the containers serving it."""

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    project_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=SessionStatus.PENDING.value)
    branch: Mapped[str | None] = mapped_column(Text, nullable=True)

    worktree_path: Mapped[str | None] = mapped_column(Text, nullable=True, unique=True)
    worktree_branch: Mapped[str | None] = mapped_column(Text, nullable=True)
    worktree_base_branch: Mapped[str | None] = mapped_column(Text, nullable=True)
    worktree_commit: Mapped[str | None] = mapped_column(String(64), nullable=True)

    container_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # JSON object keys are strings, so container ports are stored as "5173": 49153
    container_ports: Mapped[dict[str, int] | None] = mapped_column(JSON, nullable=True)
    service_container_ids: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    network_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    claude_source_user: Mapped[str | None] = mapped_column(String(255), nullable=True)
    git_user_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    git_user_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, onupdate=_now, nullable=False)

    __table_args__ = (
        Index("idx_sessions_project", "project_id"),
        Index("idx_sessions_status", "status"),
    )

    @property
    def short_id(self) -> str:
        return self.id[: settings.SESSION_SHORT_ID_LENGTH]

    @property
    def worktree(self) -> WorktreePayload | None:
        if not self.worktree_path:
            return None
        return WorktreePayload(
            path=self.worktree_path,
            branch=self.worktree_branch or "",
            base_branch=self.worktree_base_branch,
            commit=self.worktree_commit,
        )

    @property
    def container(self) -> ContainerPayload | None:
        if not self.container_id:
            return None
        return ContainerPayload(
            id=self.container_id,
            ports=dict(self.container_ports or {}),
            service_container_ids=list(self.service_container_ids or []),
            network_id=self.network_id,
        )

    def host_port(self, container_port: int) -> int | None:
        """Host port mapped to ``container_port``, if the container exposes it."""
        return (self.container_ports or {}).get(str(container_port))

    def as_payload(self) -> SessionPayload:
        return SessionPayload(
            id=self.id,
            project_id=self.project_id,
            name=self.name,
            status=self.status,
            branch=self.branch,
            worktree=self.worktree,
            container=self.container,
            error=self.error,
            claude_source_user=self.claude_source_user,
            git_user_name=self.git_user_name,
            git_user_email=self.git_user_email,
            created_by=self.created_by,
            created_at=self.created_at.isoformat() if self.created_at else None,
            updated_at=self.updated_at.isoformat() if self.updated_at else None,
        )
