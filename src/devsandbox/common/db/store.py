"""
Persistence facade used by the sandbox core.

Every method opens its own short transaction and returns detached rows, so
callers never hold a database session across container or git operations.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select

from devsandbox.common.db.connection import Database
from devsandbox.common.db.models import (
    ImageStatus,
    Project,
    ProjectImage,
    Session,
    SessionStatus,
)

logger = logging.getLogger(__name__)


class SandboxStore:
    def __init__(self, database: Database):
        self.database = database

    # Sessions

    def find_session(self, session_id: str) -> Session | None:
        with self.database.make_session() as db:
            return db.get(Session, session_id)

    def list_sessions(self) -> list[Session]:
        with self.database.make_session() as db:
            return list(db.scalars(select(Session).order_by(Session.created_at)))

    def list_sessions_by_project(self, project_id: str) -> list[Session]:
        with self.database.make_session() as db:
            query = select(Session).where(Session.project_id == project_id).order_by(Session.created_at)
            return list(db.scalars(query))

    def list_sessions_with_containers(self) -> list[Session]:
        with self.database.make_session() as db:
            return list(db.scalars(select(Session).where(Session.container_id.is_not(None))))

    def create_session(
        self,
        project_id: str,
        name: str,
        branch: str | None = None,
        claude_source_user: str | None = None,
        git_user_name: str | None = None,
        git_user_email: str | None = None,
        created_by: str | None = None,
    ) -> Session:
        with self.database.make_session() as db:
            session = Session(
                project_id=project_id,
                name=name,
                branch=branch,
                status=SessionStatus.PENDING.value,
                claude_source_user=claude_source_user,
                git_user_name=git_user_name,
                git_user_email=git_user_email,
                created_by=created_by,
            )
            db.add(session)
            db.flush()
            db.refresh(session)
            return session

    def _update_session(self, session_id: str, **values: Any) -> Session | None:
        with self.database.make_session() as db:
            session = db.get(Session, session_id)
            if session is None:
                logger.warning(f"Session {session_id} vanished before update")
                return None
            for key, value in values.items():
                setattr(session, key, value)
            db.flush()
            db.refresh(session)
            return session

    def update_status(self, session_id: str, status: SessionStatus | str, error: str | None = None) -> Session | None:
        status = SessionStatus(status)
        return self._update_session(session_id, status=status.value, error=error)

    def update_worktree(
        self,
        session_id: str,
        path: str,
        branch: str,
        base_branch: str | None,
        commit: str | None,
    ) -> Session | None:
        return self._update_session(
            session_id,
            worktree_path=path,
            worktree_branch=branch,
            worktree_base_branch=base_branch,
            worktree_commit=commit,
        )

    def update_container(
        self,
        session_id: str,
        container_id: str,
        ports: dict[int, int] | dict[str, int],
        service_container_ids: list[str] | None = None,
        network_id: str | None = None,
    ) -> Session | None:
        return self._update_session(
            session_id,
            container_id=container_id,
            container_ports={str(k): int(v) for k, v in ports.items()},
            service_container_ids=list(service_container_ids or []),
            network_id=network_id,
        )

    def update_ports(self, session_id: str, ports: dict[int, int]) -> Session | None:
        return self._update_session(session_id, container_ports={str(k): int(v) for k, v in ports.items()})

    def clear_container(self, session_id: str) -> Session | None:
        return self._update_session(
            session_id,
            container_id=None,
            container_ports=None,
            service_container_ids=None,
            network_id=None,
        )

    def clear_worktree(self, session_id: str) -> Session | None:
        return self._update_session(
            session_id,
            worktree_path=None,
            worktree_branch=None,
            worktree_base_branch=None,
            worktree_commit=None,
        )

    def delete_session(self, session_id: str) -> bool:
        with self.database.make_session() as db:
            session = db.get(Session, session_id)
            if session is None:
                return False
            db.delete(session)
            return True

    # Projects

    def find_project(self, project_id: str) -> Project | None:
        with self.database.make_session() as db:
            return db.get(Project, project_id)

    def find_project_by_name(self, name: str) -> Project | None:
        with self.database.make_session() as db:
            return db.scalars(select(Project).where(Project.name == name)).first()

    def list_projects(self) -> list[Project]:
        with self.database.make_session() as db:
            return list(db.scalars(select(Project).order_by(Project.name)))

    def create_project(
        self,
        name: str,
        environment: dict[str, Any],
        git: dict[str, Any],
        description: str | None = None,
        mounts: list[dict[str, Any]] | None = None,
        claude: dict[str, Any] | None = None,
    ) -> Project:
        with self.database.make_session() as db:
            project = Project(
                name=name,
                description=description,
                environment_config=environment,
                git_config=git,
                mounts_config=mounts or [],
                claude_config=claude,
            )
            db.add(project)
            db.flush()
            db.refresh(project)
            return project

    def update_project(self, project_id: str, **values: Any) -> Project | None:
        """Update project columns. Keys are ``description``, ``environment``, ``git``, ``mounts``, ``claude``."""
        columns = {
            "description": "description",
            "environment": "environment_config",
            "git": "git_config",
            "mounts": "mounts_config",
            "claude": "claude_config",
        }
        with self.database.make_session() as db:
            project = db.get(Project, project_id)
            if project is None:
                return None
            for key, value in values.items():
                setattr(project, columns[key], value)
            db.flush()
            db.refresh(project)
            return project

    def delete_project(self, project_id: str) -> bool:
        with self.database.make_session() as db:
            project = db.get(Project, project_id)
            if project is None:
                return False
            for image in db.scalars(select(ProjectImage).where(ProjectImage.project_id == project_id)):
                db.delete(image)
            db.delete(project)
            return True

    # Image cache records

    def find_image(self, project_id: str, config_hash: str) -> ProjectImage | None:
        with self.database.make_session() as db:
            query = select(ProjectImage).where(
                ProjectImage.project_id == project_id,
                ProjectImage.config_hash == config_hash,
            )
            return db.scalars(query).first()

    def list_images(self, project_id: str) -> list[ProjectImage]:
        with self.database.make_session() as db:
            query = select(ProjectImage).where(ProjectImage.project_id == project_id).order_by(ProjectImage.created_at)
            return list(db.scalars(query))

    def start_image_build(self, project_id: str, config_hash: str, image_tag: str) -> ProjectImage:
        """Create or reset the record for ``(project_id, config_hash)`` to ``building``."""
        with self.database.make_session() as db:
            query = select(ProjectImage).where(
                ProjectImage.project_id == project_id,
                ProjectImage.config_hash == config_hash,
            )
            record = db.scalars(query).first()
            if record is None:
                record = ProjectImage(project_id=project_id, config_hash=config_hash)
                db.add(record)
            record.image_tag = image_tag
            record.status = ImageStatus.BUILDING.value
            record.error = None
            record.built_at = None
            db.flush()
            db.refresh(record)
            return record

    def finish_image_build(self, image_id: str, error: str | None = None) -> ProjectImage | None:
        with self.database.make_session() as db:
            record = db.get(ProjectImage, image_id)
            if record is None:
                return None
            record.status = ImageStatus.FAILED.value if error else ImageStatus.READY.value
            record.error = error
            record.built_at = datetime.now(timezone.utc)
            db.flush()
            db.refresh(record)
            return record

    def delete_image(self, image_id: str) -> bool:
        with self.database.make_session() as db:
            record = db.get(ProjectImage, image_id)
            if record is None:
                return False
            db.delete(record)
            return True

    def delete_stale_images(self, project_id: str, keep_hash: str) -> list[ProjectImage]:
        """Delete every record of the project except ``keep_hash``; returns the deleted rows."""
        with self.database.make_session() as db:
            query = select(ProjectImage).where(
                ProjectImage.project_id == project_id,
                ProjectImage.config_hash != keep_hash,
            )
            stale = list(db.scalars(query))
            for record in stale:
                db.delete(record)
            return stale
