"""
Session lifecycle.

    pending -> starting -> running -> stopping -> stopped
                  |                      |
                  +------> error <-------+

``restart`` is ``stop`` followed by ``start``; ``remove`` works from any state.
Operations on one session are serialised with an in-process re-entrant lock,
operations on different sessions run independently.

Every resource a session owns is named ``<prefix>-<short id>[-<suffix>]`` so a
failed start can be cleaned up by name prefix alone.
"""

import json
import logging
import os
import pathlib
import re
import threading
from contextlib import contextmanager
from typing import Iterator

from devsandbox.common import settings
from devsandbox.common.db.models import Project, Session, SessionStatus
from devsandbox.common.db.store import SandboxStore
from devsandbox.sandbox.containers import (
    LABEL_PROJECT,
    LABEL_ROLE,
    LABEL_SESSION,
    ContainerLogs,
    ContainerRuntime,
    MountSpec,
)
from devsandbox.sandbox.errors import (
    ContainerNotFoundError,
    EngineError,
    NotFoundError,
    ValidationError,
)
from devsandbox.sandbox.images import ImageCache
from devsandbox.sandbox.privileges import HostUser, PrivilegeBridge, lookup_user
from devsandbox.sandbox.schemas import ServiceConfig
from devsandbox.sandbox.worktrees import CommitInfo, GitStatus, WorktreeManager

logger = logging.getLogger(__name__)

WORKSPACE = "/workspace"
SETUP_SCRIPT = ".devsandbox-setup.sh"
# Paths under the source user's home that agent tooling references by absolute path
SOURCE_USER_PATHS = [".claude", ".claude.json", ".local/bin", ".gitconfig"]
BRANCH_PATTERN = re.compile(r"^(?!-)(?!.*\.\.)[A-Za-z0-9._/-]+$")

# Runs as the main container's long-lived process
STARTUP_SCRIPT = f"""
git config --global --get-all safe.directory 2>/dev/null | grep -qx '\\*' \\
    || git config --global --add safe.directory '*' || true
# SSH remotes only work with a mounted key; switch to HTTPS when a token can authenticate it
if [ -n "${{GH_TOKEN:-}}" ]; then
    remote=$(git -C {WORKSPACE} remote get-url origin 2>/dev/null || true)
    case "$remote" in
        git@github.com:*)
            git -C {WORKSPACE} remote set-url origin "https://github.com/${{remote#git@github.com:}}" || true
            ;;
    esac
    if command -v gh >/dev/null 2>&1; then
        gh auth setup-git || true
    fi
fi
exec sleep infinity
"""


def git_identity_env(name: str | None, email: str | None) -> dict[str, str]:
    env = {}
    if name:
        env["GIT_AUTHOR_NAME"] = env["GIT_COMMITTER_NAME"] = name
    if email:
        env["GIT_AUTHOR_EMAIL"] = env["GIT_COMMITTER_EMAIL"] = email
    return env


class SessionOrchestrator:
    def __init__(
        self,
        store: SandboxStore,
        runtime: ContainerRuntime,
        worktrees: WorktreeManager,
        images: ImageCache,
        privileges: PrivilegeBridge | None = None,
        repos_dir: pathlib.Path | None = None,
        worktree_base: pathlib.Path | None = None,
    ):
        self.store = store
        self.runtime = runtime
        self.worktrees = worktrees
        self.images = images
        self.privileges = privileges or PrivilegeBridge()
        self.repos_dir = pathlib.Path(repos_dir or settings.REPOS_DIR).resolve()
        self.worktree_base = pathlib.Path(worktree_base or settings.WORKTREE_BASE).resolve()
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def session_lock(self, session_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(session_id, threading.RLock())
        with lock:
            yield

    # Naming

    def container_name(self, session: Session) -> str:
        return f"{settings.CONTAINER_PREFIX}-{session.short_id}"

    def service_container_name(self, session: Session, service: ServiceConfig) -> str:
        return f"{self.container_name(session)}-{service.type.value}"

    def network_name(self, session: Session) -> str:
        return f"{self.container_name(session)}-{settings.NETWORK_SUFFIX}"

    def repo_path(self, project: Project) -> pathlib.Path:
        return self.repos_dir / project.name

    def worktree_path(self, project: Project, session: Session) -> pathlib.Path:
        return self.worktree_base / project.name / session.id

    # Lookups

    def get(self, session_id: str) -> Session:
        session = self.store.find_session(session_id)
        if session is None:
            raise NotFoundError(f"Session not found: {session_id}")
        return session

    def list_sessions(self) -> list[Session]:
        return self.store.list_sessions()

    def list_by_project(self, project_id: str) -> list[Session]:
        return self.store.list_sessions_by_project(project_id)

    def _project(self, project_id: str) -> Project:
        project = self.store.find_project(project_id)
        if project is None:
            raise NotFoundError(f"Project not found: {project_id}")
        return project

    def create(
        self,
        project_id: str,
        name: str,
        branch: str | None = None,
        claude_source_user: str | None = None,
        git_user_name: str | None = None,
        git_user_email: str | None = None,
        created_by: str | None = None,
    ) -> Session:
        project = self._project(project_id)
        if not name or not name.strip():
            raise ValidationError("Session name is required")
        if branch and not BRANCH_PATTERN.match(branch):
            raise ValidationError(f"Invalid branch name: {branch}")
        if claude_source_user and lookup_user(claude_source_user) is None:
            raise ValidationError(f"Unknown host user: {claude_source_user}")

        session = self.store.create_session(
            project_id=project.id,
            name=name.strip(),
            branch=branch,
            claude_source_user=claude_source_user,
            git_user_name=git_user_name,
            git_user_email=git_user_email,
            created_by=created_by,
        )
        logger.info(f"Session created: {session.id} ({name}) for project {project.name}")
        return session

    # Lifecycle

    def start(self, session_id: str) -> Session:
        with self.session_lock(session_id):
            session = self.get(session_id)
            if session.status == SessionStatus.RUNNING.value:
                return session

            project = self._project(session.project_id)
            self.store.update_status(session_id, SessionStatus.STARTING)

            if session.container_id:
                restarted = self._restart_existing(session)
                if restarted:
                    return restarted

            try:
                session = self._provision(session, project)
            except Exception as e:
                logger.exception(f"Failed to start session {session_id}")
                self._cleanup_resources(session)
                self.store.clear_container(session_id)
                self.store.update_status(session_id, SessionStatus.ERROR, error=str(e))
                raise

            logger.info(f"Session started: {session_id} ({session.container_id})")
            return session

    def _restart_existing(self, session: Session) -> Session | None:
        """Start the session's existing containers. None when they cannot be reused."""
        container_id = session.container_id or ""
        if session.worktree_path and not pathlib.Path(session.worktree_path).is_dir():
            logger.warning(f"Worktree {session.worktree_path} of {session.id} is missing, re-provisioning")
            return None
        try:
            for service_id in session.service_container_ids or []:
                self.runtime.start_container(service_id)
            self.runtime.start_container(container_id)
            ports = self.runtime.get_ports(container_id)
        except EngineError as e:
            logger.warning(f"Could not restart container {container_id[:12]} of {session.id}, re-provisioning: {e}")
            return None

        self.store.update_ports(session.id, ports)
        logger.info(f"Session restarted: {session.id} ({container_id[:12]})")
        return self.store.update_status(session.id, SessionStatus.RUNNING)

    def _provision(self, session: Session, project: Project) -> Session:
        env = project.environment
        repo = self.repo_path(project)
        self.worktrees.ensure_repository(project.git.remote, repo, project.git.default_branch)

        # Once recorded, the branch actually checked out wins over the requested one
        branch = session.worktree_branch or session.branch or f"session/{session.short_id}"
        worktree = pathlib.Path(session.worktree_path or self.worktree_path(project, session))
        base_branch = project.git.default_branch
        commit = self.worktrees.create_worktree(repo, worktree, branch, base_branch=base_branch)
        branch = self.worktrees.current_branch(worktree)
        self.store.update_worktree(session.id, str(worktree), branch, base_branch, commit)

        self._materialize_files(project, repo, worktree)

        source_user = None
        if session.claude_source_user:
            source_user = lookup_user(session.claude_source_user)
            if source_user is None:
                raise ValidationError(f"Unknown host user: {session.claude_source_user}")
            self.privileges.grant_access(worktree, source_user.uid)
            self.privileges.grant_access(repo / ".git", source_user.uid)

        image = self.images.resolve(project)

        labels = {LABEL_SESSION: session.id, LABEL_PROJECT: project.id}
        network_name = network_id = None
        service_ids: list[str] = []
        container_env: dict[str, str] = {}
        if env.services:
            network_name = self.network_name(session)
            network_id = self.runtime.create_network(network_name, labels=labels)
            for service in env.services:
                service_ids.append(self._start_service(session, service, network_name, labels))
                container_env.update(
                    service.type.spec.connection_variables(host=service.type.value, env=service.env)
                )

        if settings.GITHUB_TOKEN:
            container_env["GH_TOKEN"] = settings.GITHUB_TOKEN
        container_env.update(env.env)
        container_env.update(git_identity_env(session.git_user_name, session.git_user_email))
        user = None
        if source_user:
            user = f"{source_user.uid}:{source_user.gid}"
            container_env.update({"HOME": str(source_user.home), "USER": source_user.name})

        name = self.container_name(session)
        if self.runtime.remove_by_name(name):
            logger.info(f"Removed stale container {name}")
        handle = self.runtime.create_container(
            name=name,
            image=image,
            workdir=WORKSPACE,
            mounts=self._mounts(project, repo, worktree, source_user),
            ports=env.ports,
            env=container_env,
            user=user,
            command=["bash", "-c", STARTUP_SCRIPT],
            labels={**labels, LABEL_ROLE: "main"},
        )
        self.runtime.start_container(handle.id)
        if network_name:
            self.runtime.connect_to_network(handle.id, network_name)
        ports = self.runtime.get_ports(handle.id)
        self.store.update_container(session.id, handle.id, ports, service_ids, network_id)

        for service, service_id in zip(env.services, service_ids):
            if service.init_file:
                self._run_init_file(session, worktree, service, service_id)

        if env.setup:
            self._run_setup(session, handle.id, user)

        return self.store.update_status(session.id, SessionStatus.RUNNING) or self.get(session.id)

    def _materialize_files(self, project: Project, repo: pathlib.Path, worktree: pathlib.Path) -> None:
        claude = project.claude
        if claude and claude.claude_md:
            (worktree / "CLAUDE.md").write_text(claude.claude_md)
        if claude and claude.mcp_servers:
            (worktree / ".mcp.json").write_text(json.dumps({"mcpServers": claude.mcp_servers}, indent=2))

        setup = project.environment.setup
        if setup:
            script = worktree / SETUP_SCRIPT
            script.write_text(setup)
            script.chmod(0o755)
            self._exclude_from_git(repo, SETUP_SCRIPT)

    def _exclude_from_git(self, repo: pathlib.Path, pattern: str) -> None:
        exclude = repo / ".git" / "info" / "exclude"
        exclude.parent.mkdir(parents=True, exist_ok=True)
        lines = exclude.read_text().splitlines() if exclude.exists() else []
        if f"/{pattern}" not in lines:
            exclude.write_text("\n".join([*lines, f"/{pattern}"]) + "\n")

    def _mounts(
        self,
        project: Project,
        repo: pathlib.Path,
        worktree: pathlib.Path,
        source_user: HostUser | None,
    ) -> list[MountSpec]:
        git_dir = str((repo / ".git").absolute())
        mounts = [
            MountSpec(source=str(worktree.absolute()), target=WORKSPACE),
            # The worktree's .git pointer holds an absolute host path, and git
            # writes lock files there, so the main repo metadata is mounted rw
            MountSpec(source=git_dir, target=git_dir),
        ]

        home = str(source_user.home) if source_user else os.path.expanduser("~")
        for mount in project.mounts:
            source = mount.source
            if source == "~" or source.startswith("~/"):
                source = home + source[1:]
            mounts.append(MountSpec(source=source, target=mount.target, readonly=mount.readonly))

        if source_user:
            for relative in SOURCE_USER_PATHS:
                path = source_user.home / relative
                if path.exists():
                    mounts.append(MountSpec(source=str(path), target=str(path)))
        return mounts

    def _start_service(
        self,
        session: Session,
        service: ServiceConfig,
        network_name: str,
        labels: dict[str, str],
    ) -> str:
        spec = service.type.spec
        name = self.service_container_name(session, service)
        self.runtime.remove_by_name(name)
        return self.runtime.create_service_container(
            name=name,
            image=spec.image_ref(service.version),
            env=spec.effective_env(service.env),
            network=network_name,
            alias=service.type.value,
            labels={**labels, LABEL_ROLE: "service"},
        )

    def _run_init_file(self, session: Session, worktree: pathlib.Path, service: ServiceConfig, service_id: str) -> None:
        source = worktree / (service.init_file or "")
        if not source.is_file():
            logger.warning(f"Init file {source} for {service.type.value} not found, skipping")
            return
        try:
            self.runtime.wait_for_service_ready(service_id, service.type, env=service.env)
            target = f"/tmp/{source.name}"
            self.runtime.copy_to_container(service_id, source, target)
            result = self.runtime.exec(service_id, service.type.spec.init_file_command(target, service.env))
            if not result.ok:
                logger.warning(
                    f"Init file for {service.type.value} in session {session.id} exited with "
                    f"{result.exit_code}: {result.stderr.strip()}"
                )
        except EngineError as e:
            logger.warning(f"Init file for {service.type.value} in session {session.id} failed: {e}")

    def _run_setup(self, session: Session, container_id: str, user: str | None) -> None:
        logger.info(f"Running setup script for session {session.id}")
        try:
            result = self.runtime.exec(container_id, ["bash", f"{WORKSPACE}/{SETUP_SCRIPT}"], user=user, workdir=WORKSPACE)
        except EngineError as e:
            logger.warning(f"Setup script for session {session.id} failed: {e}")
            return
        if not result.ok:
            logger.warning(
                f"Setup script for session {session.id} exited with {result.exit_code}: "
                f"{(result.stderr or result.stdout).strip()[-2000:]}"
            )

    def _cleanup_resources(self, session: Session) -> None:
        """Best-effort removal of every container and network named after the session."""
        prefix = self.container_name(session)
        try:
            self.runtime.remove_containers_by_prefix(prefix)
        except Exception as e:
            logger.error(f"Cleanup of containers {prefix}* failed: {e}")
        try:
            self.runtime.remove_networks_by_prefix(prefix)
        except Exception as e:
            logger.error(f"Cleanup of networks {prefix}* failed: {e}")

    def stop(self, session_id: str) -> Session:
        with self.session_lock(session_id):
            session = self.get(session_id)
            if session.status == SessionStatus.STOPPED.value:
                return session
            if not session.container_id:
                return self.store.update_status(session_id, SessionStatus.STOPPED) or session

            self.store.update_status(session_id, SessionStatus.STOPPING)
            try:
                self.runtime.stop_container(session.container_id)
            except ContainerNotFoundError:
                logger.warning(f"Container of session {session_id} is gone, marking stopped")
                self.store.clear_container(session_id)
            except Exception as e:
                logger.error(f"Failed to stop session {session_id}: {e}")
                self.store.update_status(session_id, SessionStatus.ERROR, error=str(e))
                raise

            logger.info(f"Session stopped: {session_id}")
            return self.store.update_status(session_id, SessionStatus.STOPPED) or session

    def restart(self, session_id: str) -> Session:
        with self.session_lock(session_id):
            self.stop(session_id)
            return self.start(session_id)

    def remove(self, session_id: str) -> None:
        with self.session_lock(session_id):
            session = self.get(session_id)
            if session.status in (SessionStatus.RUNNING.value, SessionStatus.STARTING.value):
                try:
                    self.stop(session_id)
                except Exception as e:
                    logger.warning(f"Stopping session {session_id} before removal failed: {e}")
                session = self.store.find_session(session_id) or session

            for container_id in [session.container_id, *(session.service_container_ids or [])]:
                if not container_id:
                    continue
                try:
                    self.runtime.remove_container(container_id)
                except Exception as e:
                    logger.warning(f"Failed to remove container {container_id[:12]}: {e}")
            if session.network_id:
                try:
                    self.runtime.remove_network(session.network_id)
                except Exception as e:
                    logger.warning(f"Failed to remove network {session.network_id[:12]}: {e}")
            self._cleanup_resources(session)

            if session.worktree_path:
                project = self.store.find_project(session.project_id)
                if project:
                    try:
                        self.worktrees.remove_worktree(self.repo_path(project), session.worktree_path)
                    except Exception as e:
                        logger.warning(f"Failed to remove worktree {session.worktree_path}: {e}")

            self.store.delete_session(session_id)
            logger.info(f"Session removed: {session_id}")

        with self._locks_guard:
            self._locks.pop(session_id, None)

    def get_logs(self, session_id: str, tail: int = 500) -> ContainerLogs:
        session = self.get(session_id)
        if not session.container_id:
            return ContainerLogs(stdout="", stderr="")
        try:
            return self.runtime.get_logs(session.container_id, tail=tail)
        except ContainerNotFoundError:
            logger.warning(f"Container of session {session_id} is gone, no logs")
            return ContainerLogs(stdout="", stderr="")

    def mark_stopped(self, session_id: str) -> None:
        """Record that the session's container no longer exists."""
        self.store.clear_container(session_id)
        self.store.update_status(session_id, SessionStatus.STOPPED)
        logger.info(f"Session {session_id} marked stopped, container no longer exists")

    def sync_with_containers(self) -> int:
        """
        Reconcile persisted session state with the engine.

        Run once at startup: sessions whose container vanished become stopped,
        the others follow the engine's running state. Returns the number of
        sessions changed.
        """
        changed = 0
        for session in self.store.list_sessions_with_containers():
            container_id = session.container_id or ""
            try:
                state = self.runtime.inspect_container(container_id)
            except EngineError as e:
                logger.error(f"Could not inspect container of session {session.id}: {e}")
                continue

            if state is None:
                self.mark_stopped(session.id)
                changed += 1
                continue

            status = SessionStatus.RUNNING if state.running else SessionStatus.STOPPED
            if session.status != status.value:
                logger.info(f"Session {session.id}: {session.status} -> {status.value}")
                self.store.update_status(session.id, status)
                changed += 1
            if state.running and state.ports != {int(k): v for k, v in (session.container_ports or {}).items()}:
                self.store.update_ports(session.id, state.ports)

        # A control-plane restart interrupts any in-flight transition
        for session in self.store.list_sessions():
            if session.container_id:
                continue
            if session.status in (SessionStatus.STARTING.value, SessionStatus.STOPPING.value):
                self.store.update_status(session.id, SessionStatus.STOPPED)
                changed += 1

        logger.info(f"Container sync complete: {changed} sessions updated")
        return changed

    # Worktree pass-throughs

    def _worktree(self, session_id: str) -> pathlib.Path:
        session = self.get(session_id)
        if not session.worktree_path:
            raise ValidationError(f"Session {session_id} has no worktree")
        return pathlib.Path(session.worktree_path)

    def git_status(self, session_id: str) -> GitStatus:
        return self.worktrees.status(self._worktree(session_id))

    def git_diff(self, session_id: str, staged: bool = False) -> str:
        return self.worktrees.diff(self._worktree(session_id), staged=staged)

    def git_log(self, session_id: str, limit: int = 20) -> list[CommitInfo]:
        return list(self.worktrees.log(self._worktree(session_id), limit=limit))

    def git_commit(self, session_id: str, message: str, files: list[str] | None = None) -> str:
        if not message.strip():
            raise ValidationError("Commit message is required")
        return self.worktrees.commit(self._worktree(session_id), message, files)

    def git_push(self, session_id: str) -> None:
        self.worktrees.push(self._worktree(session_id))

    def git_pull(self, session_id: str) -> None:
        self.worktrees.pull(self._worktree(session_id))
