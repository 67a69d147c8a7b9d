"""
Git worktree lifecycle for sessions.

Every session gets its own worktree of the project's main clone. Worktrees are
fragile: the ``.git`` pointer file inside the worktree and the registration
directory under ``<repo>/.git/worktrees/<name>`` must agree, and either side
can go missing when volumes are moved or pruned. ``create_worktree`` and
``verify_and_repair`` detect that and rebuild whatever can be rebuilt.
"""

import logging
import os
import pathlib
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from typing import Iterator

from devsandbox.sandbox.errors import GitError

logger = logging.getLogger(__name__)

ALREADY_CHECKED_OUT = ("already checked out", "is already used by worktree", "already used by worktree")


def git_command(cwd: pathlib.Path | str | None, *args: str) -> subprocess.CompletedProcess:
    cmd = ["git", *args]
    res = subprocess.run(
        cmd,
        cwd=str(cwd) if cwd else None,
        text=True,
        capture_output=True,
        env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
    )
    if res.returncode != 0:
        logger.debug(f"`{' '.join(cmd)}` failed with {res.returncode}: {res.stderr.strip()}")
    return res


def check_git_command(cwd: pathlib.Path | str | None, *args: str, strip: bool = True) -> str:
    res = git_command(cwd, *args)
    if res.returncode != 0:
        stderr = res.stderr.strip()
        logger.error(f"Git command failed: git {' '.join(args)} (in {cwd})")
        logger.error(f"stderr: {stderr}")
        raise GitError(
            f"`git {' '.join(args)}` failed with return code {res.returncode}: {stderr}",
            command=["git", *args],
            stderr=stderr,
        )
    return res.stdout.strip() if strip else res.stdout


def trust_all_directories() -> None:
    """Let the control plane run git in worktrees owned by container uids."""
    current = git_command(None, "config", "--global", "--get-all", "safe.directory").stdout.split()
    if "*" in current:
        return
    check_git_command(None, "config", "--global", "--add", "safe.directory", "*")
    logger.info("Configured git safe.directory '*'")


@dataclass
class GitStatus:
    branch: str
    ahead: int = 0
    behind: int = 0
    tracking: str | None = None
    staged: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    untracked: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (self.staged or self.modified or self.untracked)


@dataclass
class CommitInfo:
    sha: str
    author_name: str
    author_email: str
    date: str
    message: str


@dataclass
class WorktreeEntry:
    """One record of ``git worktree list --porcelain``."""

    path: str
    head: str | None = None
    branch: str | None = None
    bare: bool = False
    detached: bool = False
    prunable: bool = False


def parse_worktree_list(output: str) -> list[WorktreeEntry]:
    entries = []
    current: WorktreeEntry | None = None
    for line in output.splitlines():
        if not line.strip():
            if current:
                entries.append(current)
            current = None
            continue

        key, _, value = line.partition(" ")
        if key == "worktree":
            if current:
                entries.append(current)
            current = WorktreeEntry(path=value)
        elif current is None:
            continue
        elif key == "HEAD":
            current.head = value
        elif key == "branch":
            current.branch = value.removeprefix("refs/heads/")
        elif key == "bare":
            current.bare = True
        elif key == "detached":
            current.detached = True
        elif key == "prunable":
            current.prunable = True
    if current:
        entries.append(current)
    return entries


def read_gitdir(worktree_path: pathlib.Path) -> pathlib.Path | None:
    """Target of the worktree's ``.git`` pointer file, or None when unreadable."""
    pointer = worktree_path / ".git"
    if not pointer.is_file():
        return None
    try:
        content = pointer.read_text().strip()
    except OSError as e:
        logger.warning(f"Cannot read {pointer}: {e}")
        return None
    if not content.startswith("gitdir:"):
        return None
    target = pathlib.Path(content.removeprefix("gitdir:").strip())
    if not target.is_absolute():
        target = (worktree_path / target).resolve()
    return target


class WorktreeManager:
    """Drives the ``git`` binary to manage clones and per-session worktrees."""

    # Clones and worktrees

    def ensure_repository(self, remote: str, local_path: pathlib.Path | str, default_branch: str | None = None) -> None:
        local_path = pathlib.Path(local_path)
        if (local_path / ".git").exists():
            return

        local_path.parent.mkdir(parents=True, exist_ok=True)
        args = ["clone"]
        if default_branch:
            args += ["--branch", default_branch]
        logger.info(f"Cloning {remote} into {local_path}")
        check_git_command(None, *args, remote, str(local_path))

    def create_worktree(
        self,
        repo_path: pathlib.Path | str,
        worktree_path: pathlib.Path | str,
        branch: str,
        base_branch: str | None = None,
    ) -> str:
        """
        Create (or reuse) a worktree of ``repo_path`` at ``worktree_path`` on ``branch``.

        Returns the commit checked out in the worktree. When ``branch`` is already
        checked out elsewhere, a ``<branch>-<timestamp>`` branch is forked instead;
        use ``current_branch`` to learn which branch was actually used.
        """
        repo_path = pathlib.Path(repo_path)
        worktree_path = pathlib.Path(worktree_path)

        if worktree_path.exists():
            if read_gitdir(worktree_path) and self.verify_and_repair(repo_path, worktree_path, branch=branch):
                logger.info(f"Reusing existing worktree at {worktree_path}")
                return self.head_commit(worktree_path)

            logger.warning(f"Worktree at {worktree_path} is corrupted, recreating it")
            shutil.rmtree(worktree_path)
            self.prune(repo_path)
        else:
            # A deleted directory leaves its registration behind and keeps the branch checked out
            self.prune(repo_path)

        worktree_path.parent.mkdir(parents=True, exist_ok=True)
        self._fetch_quietly(repo_path)

        if self._ref_exists(repo_path, f"refs/heads/{branch}"):
            self._add_existing_branch(repo_path, worktree_path, branch)
        elif self._ref_exists(repo_path, f"refs/remotes/origin/{branch}"):
            check_git_command(
                repo_path, "worktree", "add", "--track", "-b", branch, str(worktree_path), f"origin/{branch}"
            )
        else:
            start_point = self._start_point(repo_path, base_branch)
            logger.info(f"Creating branch {branch} from {start_point}")
            check_git_command(repo_path, "worktree", "add", "--no-track", "-b", branch, str(worktree_path), start_point)

        return self.head_commit(worktree_path)

    def _add_existing_branch(self, repo_path: pathlib.Path, worktree_path: pathlib.Path, branch: str) -> None:
        res = git_command(repo_path, "worktree", "add", str(worktree_path), branch)
        if res.returncode == 0:
            return

        if not any(marker in res.stderr for marker in ALREADY_CHECKED_OUT):
            raise GitError(
                f"Failed to add worktree for {branch}: {res.stderr.strip()}",
                command=["git", "worktree", "add", str(worktree_path), branch],
                stderr=res.stderr.strip(),
            )

        forked = f"{branch}-{int(time.time() * 1000)}"
        start_point = f"origin/{branch}" if self._ref_exists(repo_path, f"refs/remotes/origin/{branch}") else branch
        logger.info(f"Branch {branch} is checked out elsewhere, forking {forked} from {start_point}")
        check_git_command(repo_path, "worktree", "add", "--no-track", "-b", forked, str(worktree_path), start_point)

    def _start_point(self, repo_path: pathlib.Path, base_branch: str | None) -> str:
        if not base_branch:
            return "HEAD"
        if self._ref_exists(repo_path, f"refs/remotes/origin/{base_branch}"):
            return f"origin/{base_branch}"
        if self._ref_exists(repo_path, f"refs/heads/{base_branch}"):
            return base_branch
        logger.warning(f"Base branch {base_branch} not found in {repo_path}, using HEAD")
        return "HEAD"

    def _ref_exists(self, repo_path: pathlib.Path, ref: str) -> bool:
        return git_command(repo_path, "rev-parse", "--verify", "--quiet", ref).returncode == 0

    def _fetch_quietly(self, repo_path: pathlib.Path) -> None:
        if not git_command(repo_path, "remote").stdout.strip():
            return
        res = git_command(repo_path, "fetch", "origin")
        if res.returncode != 0:
            logger.warning(f"git fetch failed in {repo_path}, using local refs: {res.stderr.strip()}")

    def remove_worktree(self, repo_path: pathlib.Path | str, worktree_path: pathlib.Path | str) -> None:
        repo_path = pathlib.Path(repo_path)
        worktree_path = pathlib.Path(worktree_path)

        if repo_path.exists():
            res = git_command(repo_path, "worktree", "remove", "--force", str(worktree_path))
            if res.returncode != 0:
                logger.info(f"git worktree remove failed for {worktree_path}: {res.stderr.strip()}")

        if worktree_path.exists():
            shutil.rmtree(worktree_path)
        if repo_path.exists():
            self.prune(repo_path)

    def prune(self, repo_path: pathlib.Path | str) -> None:
        res = git_command(repo_path, "worktree", "prune")
        if res.returncode != 0:
            logger.warning(f"git worktree prune failed in {repo_path}: {res.stderr.strip()}")

    def verify_and_repair(
        self,
        repo_path: pathlib.Path | str,
        worktree_path: pathlib.Path | str,
        branch: str | None = None,
        commit: str | None = None,
    ) -> bool:
        """
        Make sure the worktree's ``.git`` pointer resolves to a live registration.

        When the registration under ``<repo>/.git/worktrees`` is gone, rebuild it
        (gitdir, HEAD, commondir), rewrite the pointer and rebuild the index with a
        mixed reset, leaving the working files untouched.

        Returns False only when no commit can be determined to rebuild from.
        """
        repo_path = pathlib.Path(repo_path).absolute()
        worktree_path = pathlib.Path(worktree_path).absolute()

        gitdir = read_gitdir(worktree_path)
        if gitdir and (gitdir / "HEAD").exists():
            return True

        logger.warning(f"Worktree registration for {worktree_path} is missing, attempting repair")

        branch_ref = f"refs/heads/{branch}" if branch else None
        if branch_ref and self._ref_exists(repo_path, branch_ref):
            head = f"ref: {branch_ref}"
            commit = commit or check_git_command(repo_path, "rev-parse", branch_ref)
        elif commit:
            head = commit
        else:
            logger.error(f"Cannot repair {worktree_path}: no commit to rebuild from")
            return False

        name = gitdir.name if gitdir else worktree_path.name
        registration = repo_path / ".git" / "worktrees" / name
        registration.mkdir(parents=True, exist_ok=True)
        (registration / "gitdir").write_text(f"{worktree_path / '.git'}\n")
        (registration / "HEAD").write_text(f"{head}\n")
        (registration / "commondir").write_text("../..\n")
        (worktree_path / ".git").write_text(f"gitdir: {registration}\n")

        check_git_command(worktree_path, "reset", "-q")
        logger.info(f"Repaired worktree {worktree_path} at {commit[:12]}")
        return True

    def list_worktrees(self, repo_path: pathlib.Path | str) -> list[WorktreeEntry]:
        return parse_worktree_list(check_git_command(repo_path, "worktree", "list", "--porcelain"))

    # Pass-throughs

    def current_branch(self, path: pathlib.Path | str) -> str:
        return check_git_command(path, "rev-parse", "--abbrev-ref", "HEAD")

    def head_commit(self, path: pathlib.Path | str) -> str:
        return check_git_command(path, "rev-parse", "HEAD")

    def tracking_branch(self, path: pathlib.Path | str) -> str | None:
        res = git_command(path, "rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}")
        if res.returncode != 0:
            return None
        return res.stdout.strip() or None

    def status(self, path: pathlib.Path | str) -> GitStatus:
        status = GitStatus(branch=self.current_branch(path))

        for line in check_git_command(path, "status", "--porcelain", strip=False).splitlines():
            if len(line) < 4:
                continue
            index, worktree, filename = line[0], line[1], line[3:]
            if index == "?":
                status.untracked.append(filename)
                continue
            if index != " ":
                status.staged.append(filename)
            if worktree != " ":
                status.modified.append(filename)

        status.tracking = self.tracking_branch(path)
        if status.tracking:
            counts = check_git_command(path, "rev-list", "--left-right", "--count", f"{status.tracking}...HEAD")
            behind, _, ahead = counts.partition("\t")
            status.behind = int(behind or 0)
            status.ahead = int(ahead or 0)
        return status

    def diff(self, path: pathlib.Path | str, staged: bool = False) -> str:
        args = ["diff", "--cached"] if staged else ["diff"]
        return check_git_command(path, *args)

    def log(self, path: pathlib.Path | str, limit: int = 20) -> Iterator[CommitInfo]:
        output = check_git_command(path, "log", f"-n{limit}", "--format=%H%x1f%an%x1f%ae%x1f%aI%x1f%s")
        for line in output.splitlines():
            sha, author_name, author_email, date, message = line.split("\x1f", 4)
            yield CommitInfo(sha, author_name, author_email, date, message)

    def commit(self, path: pathlib.Path | str, message: str, files: list[str] | None = None) -> str:
        if files:
            check_git_command(path, "add", "--", *files)
        else:
            check_git_command(path, "add", "-A")
        check_git_command(path, "commit", "-m", message)
        return self.head_commit(path)

    def push(self, path: pathlib.Path | str, remote: str = "origin") -> None:
        if self.tracking_branch(path):
            check_git_command(path, "push")
        else:
            check_git_command(path, "push", "--set-upstream", remote, "HEAD")

    def pull(self, path: pathlib.Path | str) -> None:
        check_git_command(path, "pull")

    def diff_summary(self, path: pathlib.Path | str) -> dict[str, int]:
        """Changed file, insertion, deletion and untracked counts against HEAD."""
        summary = {"files_changed": 0, "insertions": 0, "deletions": 0, "untracked": 0}
        stat = git_command(path, "diff", "HEAD", "--shortstat").stdout.strip()
        for part in stat.split(","):
            words = part.split()
            if len(words) < 2 or not words[0].isdigit():
                continue
            if words[1].startswith("file"):
                summary["files_changed"] = int(words[0])
            elif words[1].startswith("insertion"):
                summary["insertions"] = int(words[0])
            elif words[1].startswith("deletion"):
                summary["deletions"] = int(words[0])
        porcelain = git_command(path, "status", "--porcelain").stdout
        summary["untracked"] = sum(1 for line in porcelain.splitlines() if line.startswith("??"))
        return summary
