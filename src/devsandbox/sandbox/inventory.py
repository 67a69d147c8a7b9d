"""
Worktrees on disk, whether or not a session still points at them.

Each project keeps its worktrees under ``WORKTREE_BASE/<project name>/``. Both
the directory listing and git's own registry are consulted, so worktrees whose
registration was lost and registrations whose directory was deleted both show
up.
"""

import logging
import pathlib
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone

from devsandbox.common import settings
from devsandbox.common.db.models import ACTIVE_STATUSES, Session
from devsandbox.common.db.store import SandboxStore
from devsandbox.sandbox.errors import GitError, NotFoundError, SandboxError, ValidationError
from devsandbox.sandbox.worktrees import WorktreeManager

logger = logging.getLogger(__name__)


@dataclass
class SessionRef:
    id: str
    name: str
    status: str


@dataclass
class WorktreeInfo:
    path: str
    project_name: str
    branch: str = "unknown"
    commit: str = "unknown"
    exists: bool = True
    session: SessionRef | None = None
    last_modified: datetime | None = None
    diff_summary: dict[str, int] = field(default_factory=dict)

    @property
    def available(self) -> bool:
        return self.session is None or self.session.status not in ACTIVE_STATUSES


class WorktreeInventory:
    def __init__(
        self,
        store: SandboxStore,
        worktrees: WorktreeManager,
        repos_dir: pathlib.Path | None = None,
        worktree_base: pathlib.Path | None = None,
    ):
        self.store = store
        self.worktrees = worktrees
        self.repos_dir = pathlib.Path(repos_dir or settings.REPOS_DIR).resolve()
        self.worktree_base = pathlib.Path(worktree_base or settings.WORKTREE_BASE).resolve()

    def _registered(self, repo_path: pathlib.Path) -> dict[str, tuple[str, str]]:
        """Worktree path -> (branch, commit) according to git."""
        if not (repo_path / ".git").exists():
            return {}
        try:
            entries = self.worktrees.list_worktrees(repo_path)
        except GitError as e:
            logger.warning(f"Failed to list git worktrees of {repo_path}: {e}")
            return {}
        return {
            entry.path: (entry.branch or "detached", entry.head or "unknown")
            for entry in entries
            if not entry.bare and pathlib.Path(entry.path) != repo_path
        }

    def _describe(
        self,
        path: pathlib.Path,
        project_name: str,
        registered: dict[str, tuple[str, str]],
        sessions: dict[str, Session],
    ) -> WorktreeInfo:
        branch, commit = registered.get(str(path), ("unknown", "unknown"))
        info = WorktreeInfo(path=str(path), project_name=project_name, branch=branch, commit=commit)

        session = sessions.get(str(path))
        if session:
            info.session = SessionRef(id=session.id, name=session.name, status=session.status)

        if not path.is_dir():
            info.exists = False
            return info

        info.last_modified = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        if (path / ".git").exists():
            try:
                info.diff_summary = self.worktrees.diff_summary(path)
            except GitError as e:
                logger.warning(f"Failed to summarise changes in {path}: {e}")
        return info

    def list_all(self) -> list[WorktreeInfo]:
        if not self.worktree_base.is_dir():
            return []

        sessions = {s.worktree_path: s for s in self.store.list_sessions() if s.worktree_path}
        results = []
        for project_dir in sorted(p for p in self.worktree_base.iterdir() if p.is_dir()):
            registered = self._registered(self.repos_dir / project_dir.name)
            seen = set()
            for path in sorted(p for p in project_dir.iterdir() if p.is_dir()):
                seen.add(str(path))
                results.append(self._describe(path, project_dir.name, registered, sessions))

            # Registered with git but missing from disk
            for path in sorted(set(registered) - seen):
                if pathlib.Path(path).parent == project_dir:
                    results.append(self._describe(pathlib.Path(path), project_dir.name, registered, sessions))
        return results

    def list_available(self, project_id: str) -> list[WorktreeInfo]:
        """Worktrees of the project that no active session is using."""
        project = self.store.find_project(project_id)
        if project is None:
            raise NotFoundError(f"Project not found: {project_id}")
        return [wt for wt in self.list_all() if wt.project_name == project.name and wt.available]

    def delete(self, worktree_path: str) -> None:
        path = pathlib.Path(worktree_path).resolve()
        base = self.worktree_base.resolve()
        if not path.is_relative_to(base) or path.parent.parent != base:
            raise ValidationError("Invalid worktree path: must be a worktree under the worktree base directory")

        for session in self.store.list_sessions():
            if session.worktree_path and pathlib.Path(session.worktree_path).resolve() == path:
                if session.status in ACTIVE_STATUSES:
                    raise ValidationError(f'Cannot delete worktree: session "{session.name}" is {session.status}')
                self.store.clear_worktree(session.id)
                logger.info(f"Cleared worktree reference from session {session.id}")

        repo_path = self.repos_dir / path.parent.name
        if (repo_path / ".git").exists():
            self.worktrees.remove_worktree(repo_path, path)
        elif path.exists():
            shutil.rmtree(path)

        if path.exists():
            raise SandboxError(f"Worktree directory {path} still exists after deletion")
        logger.info(f"Worktree deleted: {path}")
