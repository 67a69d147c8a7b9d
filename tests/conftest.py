import pathlib
import shutil
import subprocess
import uuid
from unittest.mock import MagicMock

import pytest

from devsandbox.common.db import Database
from devsandbox.common.db.store import SandboxStore
from devsandbox.sandbox.containers import (
    ContainerHandle,
    ContainerLogs,
    ContainerState,
    ExecResult,
)
from devsandbox.sandbox.errors import ContainerNotFoundError, EngineError
from devsandbox.sandbox.images import ImageCache
from devsandbox.sandbox.orchestrator import SessionOrchestrator
from devsandbox.sandbox.worktrees import WorktreeManager


class FakeRuntime:
    """
    In-memory stand-in for ContainerRuntime.

    Containers, networks and images live in plain dicts and every engine call
    is appended to ``calls``. Put an exception in ``failures[<method name>]``
    to make that method raise it.
    """

    def __init__(self):
        self.containers: dict[str, dict] = {}
        self.networks: dict[str, str] = {}
        self.images: set[str] = set()
        self.builds: list[dict] = []
        self.execs: list[dict] = []
        self.copies: list[tuple] = []
        self.resizes: list[tuple] = []
        self.calls: list[tuple] = []
        self.failures: dict[str, Exception] = {}
        self.exec_result = ExecResult(exit_code=0)
        self.exec_stream = None
        self.logs = ContainerLogs(stdout="server listening\n", stderr="")
        self._next_port = 49152

    def _record(self, method: str, *args):
        self.calls.append((method, *args))
        if method in self.failures:
            raise self.failures[method]

    def _find(self, container_id: str) -> dict:
        if container_id in self.containers:
            return self.containers[container_id]
        for container in self.containers.values():
            if container["name"] == container_id:
                return container
        raise ContainerNotFoundError(f"No such container: {container_id}")

    def called(self, method: str) -> list[tuple]:
        return [call[1:] for call in self.calls if call[0] == method]

    def close(self):
        pass

    def ping(self) -> bool:
        return True

    # Images

    def image_exists(self, ref):
        return ref in self.images

    def ensure_image(self, ref):
        self.images.add(ref)

    def build_image(self, context_dir, tag, labels=None):
        self._record("build_image", tag)
        dockerfile = (pathlib.Path(context_dir) / "Dockerfile").read_text()
        self.builds.append({"tag": tag, "labels": labels or {}, "dockerfile": dockerfile})
        self.images.add(tag)

    def remove_image(self, ref, force=True):
        existed = ref in self.images
        self.images.discard(ref)
        return existed

    # Containers

    def create_container(
        self,
        name,
        image,
        workdir="/workspace",
        mounts=None,
        ports=None,
        env=None,
        user=None,
        command=None,
        labels=None,
    ):
        self._record("create_container", name)
        return self._create(name, image, workdir, mounts, ports, env, user, command, labels)

    def _create(self, name, image, workdir=None, mounts=None, ports=None, env=None, user=None, command=None, labels=None):
        if any(c["name"] == name for c in self.containers.values()):
            raise EngineError(f"Conflict. The container name {name} is already in use")
        container_id = uuid.uuid4().hex
        self.containers[container_id] = {
            "id": container_id,
            "name": name,
            "image": image,
            "workdir": workdir,
            "mounts": list(mounts or []),
            "ports": list(ports or []),
            "host_ports": {},
            "env": dict(env or {}),
            "user": user,
            "command": command,
            "labels": dict(labels or {}),
            "networks": {},
            "running": False,
        }
        return ContainerHandle(id=container_id, name=name)

    def start_container(self, container_id):
        self._record("start_container", container_id)
        self._start(container_id)

    def _start(self, container_id):
        container = self._find(container_id)
        container["running"] = True
        if not container["host_ports"]:
            for port in container["ports"]:
                container["host_ports"][port] = self._next_port
                self._next_port += 1

    def stop_container(self, container_id, grace=None):
        self._record("stop_container", container_id)
        self._find(container_id)["running"] = False

    def remove_container(self, container_id, force=True):
        self._record("remove_container", container_id)
        try:
            container = self._find(container_id)
        except ContainerNotFoundError:
            return False
        del self.containers[container["id"]]
        return True

    def remove_by_name(self, name):
        return self.remove_container(name)

    def remove_containers_by_prefix(self, prefix):
        self._record("remove_containers_by_prefix", prefix)
        names = [c["name"] for c in self.containers.values() if c["name"].startswith(prefix)]
        for name in names:
            self.remove_container(name)
        return names

    def inspect_container(self, container_id):
        self._record("inspect_container", container_id)
        try:
            container = self._find(container_id)
        except ContainerNotFoundError:
            return None
        return ContainerState(
            id=container["id"],
            name=container["name"],
            status="running" if container["running"] else "exited",
            running=container["running"],
            ports=dict(container["host_ports"]) if container["running"] else {},
            labels=container["labels"],
        )

    def get_ports(self, container_id):
        return dict(self._find(container_id)["host_ports"])

    # Networks

    def create_network(self, name, labels=None):
        self._record("create_network", name)
        return self.networks.setdefault(name, uuid.uuid4().hex)

    def remove_network(self, network_id):
        self._record("remove_network", network_id)
        for name, nid in list(self.networks.items()):
            if network_id in (name, nid):
                del self.networks[name]
                return True
        return False

    def remove_networks_by_prefix(self, prefix):
        self._record("remove_networks_by_prefix", prefix)
        names = [name for name in self.networks if name.startswith(prefix)]
        for name in names:
            del self.networks[name]
        return names

    def connect_to_network(self, container_id, network, alias=None):
        self._find(container_id)["networks"][network] = alias

    # Services and exec

    def create_service_container(self, name, image, env=None, network=None, alias=None, labels=None):
        self._record("create_service_container", name)
        self.ensure_image(image)
        handle = self._create(name, image, env=env, labels=labels)
        if network:
            self.connect_to_network(handle.id, network, alias)
        self._start(handle.id)
        return handle.id

    def wait_for_service_ready(self, container_id, kind, env=None, timeout=None, interval=None):
        self._find(container_id)
        return True

    def exec(self, container_id, cmd, user=None, workdir=None, env=None):
        self._record("exec", container_id)
        self._find(container_id)
        self.execs.append({"container_id": container_id, "cmd": cmd, "user": user, "workdir": workdir})
        return self.exec_result

    def copy_to_container(self, container_id, host_path, container_path):
        self._find(container_id)
        self.copies.append((container_id, str(host_path), container_path))

    def get_exec_stream(self, container_id, user=None, workdir="/workspace"):
        self._record("get_exec_stream", container_id, user)
        self._find(container_id)
        return self.exec_stream

    def resize_exec(self, exec_id, cols, rows):
        self.resizes.append((exec_id, cols, rows))

    def get_logs(self, container_id, tail=500):
        self._record("get_logs", container_id, tail)
        self._find(container_id)
        return self.logs


def run_git(cwd: pathlib.Path, *args: str) -> str:
    res = subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)
    return res.stdout.strip()


@pytest.fixture(autouse=True)
def git_environment(monkeypatch, tmp_path_factory):
    """Keep git away from the developer's global config and give commits an author."""
    config = tmp_path_factory.mktemp("gitconfig") / "config"
    config.write_text("")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(config))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test Author")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "author@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test Author")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "author@example.com")
    return config


@pytest.fixture
def remote_repo(tmp_path):
    """Bare repository with ``main`` and ``feature/x`` branches, used as the project remote."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    seed = tmp_path / "seed"
    seed.mkdir()
    run_git(seed, "init", "-q")
    run_git(seed, "checkout", "-q", "-b", "main")
    (seed / "README.md").write_text("# demo\n")
    run_git(seed, "add", "README.md")
    run_git(seed, "commit", "-q", "-m", "Initial commit")

    run_git(seed, "checkout", "-q", "-b", "feature/x")
    (seed / "feature.txt").write_text("feature\n")
    run_git(seed, "add", "feature.txt")
    run_git(seed, "commit", "-q", "-m", "Add feature")
    run_git(seed, "checkout", "-q", "main")

    remote = tmp_path / "remote.git"
    run_git(tmp_path, "clone", "-q", "--bare", str(seed), str(remote))
    return remote


@pytest.fixture
def cloned_repo(tmp_path, remote_repo):
    """A clone of ``remote_repo`` with ``main`` checked out."""
    repo = tmp_path / "repos" / "demo"
    repo.parent.mkdir(parents=True, exist_ok=True)
    run_git(tmp_path, "clone", "-q", "--branch", "main", str(remote_repo), str(repo))
    return repo


@pytest.fixture
def database():
    db = Database("sqlite://").open()
    db.create_all()
    yield db
    db.close()


@pytest.fixture
def store(database):
    return SandboxStore(database)


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def project(store, remote_repo):
    return store.create_project(
        name="demo",
        environment={"base_image": "debian:12", "ports": [5173]},
        git={"remote": str(remote_repo), "default_branch": "main"},
    )


@pytest.fixture
def privileges():
    return MagicMock()


@pytest.fixture
def images(store, runtime, tmp_path):
    return ImageCache(store, runtime, build_dir=tmp_path / "builds")


@pytest.fixture
def orchestrator(store, runtime, images, privileges, tmp_path):
    return SessionOrchestrator(
        store=store,
        runtime=runtime,
        worktrees=WorktreeManager(),
        images=images,
        privileges=privileges,
        repos_dir=tmp_path / "repos",
        worktree_base=tmp_path / "worktrees",
    )


@pytest.fixture
def git():
    return run_git
