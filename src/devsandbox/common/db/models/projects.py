"""
Database models for projects and their cached images.

A project's environment, git, mount and agent settings are stored as JSON and
exposed through typed pydantic views.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, TypedDict

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from devsandbox.common.db.models.base import Base
from devsandbox.sandbox.schemas import (
    ClaudeConfig,
    GitConfig,
    MountConfig,
    ProjectEnvironment,
)


class ImageStatus(str, enum.Enum):
    BUILDING = "building"
    READY = "ready"
    FAILED = "failed"


class ProjectPayload(TypedDict):
    id: Annotated[str, "Project ID"]
    name: Annotated[str, "Unique project name, used in image tags and paths"]
    description: Annotated[str | None, "Free-form description"]
    environment: Annotated[dict[str, Any], "Environment spec used to build the image"]
    git: Annotated[dict[str, Any], "Remote and default branch"]
    mounts: Annotated[list[dict[str, Any]], "Extra bind mounts"]
    claude: Annotated[dict[str, Any] | None, "Files materialised into worktrees"]
    created_at: Annotated[str | None, "ISO timestamp of creation"]
    updated_at: Annotated[str | None, "ISO timestamp of last update"]


class ProjectImagePayload(TypedDict):
    id: Annotated[str, "Image record ID"]
    project_id: Annotated[str, "Owning project"]
    config_hash: Annotated[str, "SHA256 of the canonical environment spec"]
    image_tag: Annotated[str, "Engine image tag"]
    status: Annotated[str, "building, ready or failed"]
    error: Annotated[str | None, "Build error, when failed"]
    built_at: Annotated[str | None, "ISO timestamp of the finished build"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Project(Base):
    """A repository plus the environment its sandboxes run in."""

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    environment_config: Mapped[dict[str, Any]] = mapped_column("environment", JSON, nullable=False)
    git_config: Mapped[dict[str, Any]] = mapped_column("git", JSON, nullable=False)
    mounts_config: Mapped[list[dict[str, Any]]] = mapped_column("mounts", JSON, nullable=False, default=list)
    claude_config: Mapped[dict[str, Any] | None] = mapped_column("claude", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, onupdate=_now, nullable=False)

    @property
    def environment(self) -> ProjectEnvironment:
        return ProjectEnvironment.model_validate(self.environment_config)

    @property
    def git(self) -> GitConfig:
        return GitConfig.model_validate(self.git_config)

    @property
    def mounts(self) -> list[MountConfig]:
        return [MountConfig.model_validate(m) for m in self.mounts_config or []]

    @property
    def claude(self) -> ClaudeConfig | None:
        if not self.claude_config:
            return None
        return ClaudeConfig.model_validate(self.claude_config)

    def as_payload(self) -> ProjectPayload:
        return ProjectPayload(
            id=self.id,
            name=self.name,
            description=self.description,
            environment=self.environment_config,
            git=self.git_config,
            mounts=self.mounts_config or [],
            claude=self.claude_config,
            created_at=self.created_at.isoformat() if self.created_at else None,
            updated_at=self.updated_at.isoformat() if self.updated_at else None,
        )


class ProjectImage(Base):
    """
    Image cache record.

    At most one record exists per (project, config hash). The image tag is
    derived from the hash, so a changed environment always maps to a new record.
    """

    __tablename__ = "project_images"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    project_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    config_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    image_tag: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ImageStatus.BUILDING.value)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    built_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("project_id", "config_hash", name="unique_project_config_hash"),
        Index("idx_project_images_project", "project_id"),
    )

    def as_payload(self) -> ProjectImagePayload:
        return ProjectImagePayload(
            id=self.id,
            project_id=self.project_id,
            config_hash=self.config_hash,
            image_tag=self.image_tag,
            status=self.status,
            error=self.error,
            built_at=self.built_at.isoformat() if self.built_at else None,
        )
