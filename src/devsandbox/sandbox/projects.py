import logging
import re
from typing import Any

from devsandbox.common.db.models import Project
from devsandbox.common.db.store import SandboxStore
from devsandbox.sandbox.errors import NotFoundError, ValidationError
from devsandbox.sandbox.schemas import ProjectCreate, ProjectUpdate

logger = logging.getLogger(__name__)

NAME_PATTERN = re.compile(r"^[a-z0-9-]+$")


def validation_errors(data: dict[str, Any]) -> list[str]:
    """Problems with a raw project definition, empty when it is acceptable."""
    errors = []
    name = (data.get("name") or "").strip()
    if not name:
        errors.append("Project name is required")
    elif not NAME_PATTERN.match(name):
        errors.append("Project name must contain only lowercase letters, numbers, and hyphens")

    git = data.get("git") or {}
    if not git.get("remote"):
        errors.append("Git remote URL is required")
    if "default_branch" in git and not git["default_branch"]:
        errors.append("Git default branch is required")

    environment = data.get("environment") or {}
    if not environment.get("base_image"):
        errors.append("Base image is required")

    kinds = [service.get("type") for service in environment.get("services") or []]
    if len(kinds) != len(set(kinds)):
        errors.append("Each service type may only be declared once")
    return errors


class ProjectService:
    def __init__(self, store: SandboxStore):
        self.store = store

    def list(self) -> list[Project]:
        return self.store.list_projects()

    def get(self, project_id: str) -> Project:
        project = self.store.find_project(project_id)
        if project is None:
            raise NotFoundError(f"Project not found: {project_id}")
        return project

    def get_by_name(self, name: str) -> Project:
        project = self.store.find_project_by_name(name)
        if project is None:
            raise NotFoundError(f"Project not found: {name}")
        return project

    def validate(self, data: dict[str, Any]) -> dict[str, Any]:
        errors = validation_errors(data)
        return {"valid": not errors, "errors": errors}

    def create(self, data: ProjectCreate) -> Project:
        errors = validation_errors(data.model_dump())
        if errors:
            raise ValidationError("; ".join(errors))
        if self.store.find_project_by_name(data.name):
            raise ValidationError(f'Project with name "{data.name}" already exists')

        project = self.store.create_project(
            name=data.name,
            description=data.description,
            environment=data.environment.model_dump(mode="json"),
            git=data.git.model_dump(mode="json"),
            mounts=[m.model_dump(mode="json") for m in data.mounts],
            claude=data.claude.model_dump(mode="json") if data.claude else None,
        )
        logger.info(f"Project created: {project.id} ({project.name})")
        return project

    def update(self, project_id: str, data: ProjectUpdate) -> Project:
        project = self.get(project_id)
        values = data.model_dump(mode="json", exclude_unset=True)
        merged = {
            "name": project.name,
            "environment": values.get("environment") or project.environment_config,
            "git": values.get("git") or project.git_config,
        }
        errors = validation_errors(merged)
        if errors:
            raise ValidationError("; ".join(errors))

        updated = self.store.update_project(project_id, **values)
        if updated is None:
            raise NotFoundError(f"Project not found: {project_id}")
        logger.info(f"Project updated: {project_id} ({', '.join(values) or 'no changes'})")
        return updated

    def delete(self, project_id: str) -> None:
        project = self.get(project_id)
        sessions = self.store.list_sessions_by_project(project_id)
        if sessions:
            raise ValidationError(f"Project {project.name} still has {len(sessions)} sessions")
        self.store.delete_project(project_id)
        logger.info(f"Project deleted: {project_id} ({project.name})")
