"""
Container engine adapter.

Thin, mostly idempotent wrappers over the docker SDK. Podman works through its
docker-compatible socket (see ``settings.DOCKER_HOST``). Engine failures are
mapped to ``EngineError``; a missing container maps to ``ContainerNotFoundError``.
"""

from __future__ import annotations

import io
import logging
import pathlib
import socket
import tarfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, cast

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.models.containers import Container
from docker.models.images import Image
from docker.models.networks import Network
from docker.models.volumes import Volume

from devsandbox.common import settings
from devsandbox.sandbox.errors import BuildError, ContainerNotFoundError, EngineError
from devsandbox.sandbox.services import ServiceKind

logger = logging.getLogger(__name__)

MANAGED_BY = "devsandbox"
LABEL_MANAGED_BY = "managed-by"
LABEL_SESSION = "devsandbox.session"
LABEL_PROJECT = "devsandbox.project"
LABEL_ROLE = "devsandbox.role"

DEFAULT_COMMAND = ["sleep", "infinity"]


@contextmanager
def engine_errors(action: str) -> Iterator[None]:
    try:
        yield
    except ImageNotFound as e:
        raise EngineError(f"{action}: {e.explanation or e}") from e
    except NotFound as e:
        raise ContainerNotFoundError(f"{action}: {e.explanation or e}") from e
    except APIError as e:
        raise EngineError(f"{action}: {e.explanation or e}") from e
    except DockerException as e:
        raise EngineError(f"{action}: {e}") from e


@dataclass
class MountSpec:
    source: str
    target: str
    readonly: bool = False

    def bind(self, label: str = "") -> str:
        mode = "ro" if self.readonly else "rw"
        if label:
            mode = f"{mode},{label}"
        return f"{self.source}:{self.target}:{mode}"


@dataclass
class ContainerHandle:
    id: str
    name: str
    # Host ports are assigned on start; re-query with get_ports()
    ports: dict[int, int] = field(default_factory=dict)


@dataclass
class ContainerState:
    id: str
    name: str
    status: str
    running: bool
    exit_code: int | None = None
    started_at: str | None = None
    ports: dict[int, int] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class ExecResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class ContainerLogs:
    stdout: str
    stderr: str


class ExecStream:
    """A TTY exec session: raw bidirectional byte stream plus its exec id."""

    def __init__(self, exec_id: str, sock: Any):
        self.exec_id = exec_id
        self._sock = getattr(sock, "_sock", sock)
        self.closed = False

    def read(self, size: int = 4096) -> bytes:
        """Blocking read. Returns b"" once the shell exits."""
        if self.closed:
            return b""
        try:
            return self._sock.recv(size)
        except OSError:
            return b""

    def write(self, data: bytes) -> None:
        self._sock.sendall(data)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            # shutdown, unlike close, wakes a reader blocked in recv
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"Error shutting down exec socket {self.exec_id}: {e}")
        try:
            self._sock.close()
        except OSError as e:
            logger.debug(f"Error closing exec socket {self.exec_id}: {e}")


@dataclass
class BatchFailure:
    id: str
    error: str


@dataclass
class BatchResult:
    succeeded: list[str] = field(default_factory=list)
    failed: list[BatchFailure] = field(default_factory=list)


@dataclass
class ContainerStats:
    cpu_percent: float
    memory_usage: int
    memory_limit: int
    memory_percent: float
    network_rx: int
    network_tx: int
    block_read: int
    block_write: int


@dataclass
class ProjectResourceSummary:
    containers_total: int = 0
    containers_running: int = 0
    containers_stopped: int = 0
    containers_orphaned: int = 0
    images_total: int = 0
    images_size: int = 0
    images_unused: int = 0
    networks_total: int = 0
    volumes_total: int = 0


def compute_stats(raw: dict[str, Any]) -> ContainerStats:
    """Turn a one-shot docker stats sample into percentages and byte counters."""
    cpu = raw.get("cpu_stats") or {}
    precpu = raw.get("precpu_stats") or {}
    cpu_delta = (cpu.get("cpu_usage") or {}).get("total_usage", 0) - (precpu.get("cpu_usage") or {}).get(
        "total_usage", 0
    )
    system_delta = cpu.get("system_cpu_usage", 0) - precpu.get("system_cpu_usage", 0)
    online_cpus = cpu.get("online_cpus") or len((cpu.get("cpu_usage") or {}).get("percpu_usage") or []) or 1
    cpu_percent = 0.0
    if system_delta > 0 and cpu_delta > 0:
        cpu_percent = cpu_delta / system_delta * online_cpus * 100.0

    memory = raw.get("memory_stats") or {}
    memory_stats = memory.get("stats") or {}
    cache = memory_stats.get("inactive_file", memory_stats.get("cache", 0))
    memory_usage = max(memory.get("usage", 0) - cache, 0)
    memory_limit = memory.get("limit", 0)
    memory_percent = memory_usage / memory_limit * 100.0 if memory_limit else 0.0

    network_rx = network_tx = 0
    for net in (raw.get("networks") or {}).values():
        network_rx += net.get("rx_bytes", 0)
        network_tx += net.get("tx_bytes", 0)

    block_read = block_write = 0
    for entry in (raw.get("blkio_stats") or {}).get("io_service_bytes_recursive") or []:
        op = str(entry.get("op", "")).lower()
        if op == "read":
            block_read += entry.get("value", 0)
        elif op == "write":
            block_write += entry.get("value", 0)

    return ContainerStats(
        cpu_percent=round(cpu_percent, 2),
        memory_usage=memory_usage,
        memory_limit=memory_limit,
        memory_percent=round(memory_percent, 2),
        network_rx=network_rx,
        network_tx=network_tx,
        block_read=block_read,
        block_write=block_write,
    )


def parse_port_bindings(network_settings: dict[str, Any] | None) -> dict[int, int]:
    """Map container port -> host port from ``NetworkSettings.Ports``."""
    ports: dict[int, int] = {}
    for key, bindings in ((network_settings or {}).get("Ports") or {}).items():
        port, _, proto = key.partition("/")
        if proto and proto != "tcp":
            continue
        for binding in bindings or []:
            host_port = int(binding.get("HostPort") or 0)
            if host_port:
                ports[int(port)] = host_port
                break
    return ports


def terminal_script(workdir: str = "/workspace") -> str:
    """Shell that attaches to the container's persistent tmux session, creating it on first use."""
    name = settings.TMUX_SESSION_NAME
    conf = "/tmp/devsandbox-tmux.conf"
    return f"""
if command -v tmux >/dev/null 2>&1; then
    printf 'set -g mouse on\\nset -g history-limit {settings.TMUX_HISTORY_LIMIT}\\nset -g set-clipboard on\\n' > {conf}
    tmux -f {conf} has-session -t {name} 2>/dev/null || tmux -f {conf} new-session -d -s {name} -c {workdir}
    exec tmux attach-session -t {name}
fi
cd {workdir} 2>/dev/null
exec {settings.TERMINAL_SHELL} -l
"""


class ContainerRuntime:
    """Container, network, image and exec operations against one engine."""

    def __init__(self, client: docker.DockerClient | None = None, mount_label: str | None = None):
        self._client = client
        self.mount_label = settings.MOUNT_LABEL if mount_label is None else mount_label

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            with engine_errors("Connecting to container engine"):
                self._client = docker.DockerClient(base_url=settings.DOCKER_HOST)
            logger.info(f"Connected to {settings.CONTAINER_RUNTIME} at {settings.DOCKER_HOST}")
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except (DockerException, EngineError) as e:
            logger.warning(f"Container engine ping failed: {e}")
            return False

    # Images

    def image_exists(self, ref: str) -> bool:
        with engine_errors(f"Inspecting image {ref}"):
            try:
                self.client.images.get(ref)
                return True
            except ImageNotFound:
                return False

    def pull_image(self, ref: str) -> None:
        logger.info(f"Pulling image {ref}")
        with engine_errors(f"Pulling {ref}"):
            self.client.images.pull(ref)

    def ensure_image(self, ref: str) -> None:
        if not self.image_exists(ref):
            self.pull_image(ref)

    def build_image(self, context_dir: pathlib.Path | str, tag: str, labels: dict[str, str] | None = None) -> None:
        """Build ``tag`` from ``context_dir``/Dockerfile, logging the build output."""
        logger.info(f"Building image {tag} from {context_dir}")
        last_error = ""
        with engine_errors(f"Building {tag}"):
            stream = self.client.api.build(
                path=str(context_dir),
                tag=tag,
                rm=True,
                forcerm=True,
                decode=True,
                labels={LABEL_MANAGED_BY: MANAGED_BY, **(labels or {})},
            )
            for chunk in stream:
                if not isinstance(chunk, dict):
                    continue
                if "stream" in chunk:
                    line = str(chunk["stream"]).strip()
                    if line:
                        logger.debug(f"  {line}")
                if "error" in chunk or "errorDetail" in chunk:
                    detail = chunk.get("errorDetail") or {}
                    last_error = str(chunk.get("error") or detail.get("message") or "").strip()
                    logger.error(f"  {last_error}")

        if last_error:
            raise BuildError(f"Image build failed for {tag}: {last_error}", log_line=last_error)
        logger.info(f"Successfully built image: {tag}")

    def remove_image(self, ref: str, force: bool = True) -> bool:
        try:
            self.client.images.remove(ref, force=force)
            logger.info(f"Removed image {ref}")
            return True
        except ImageNotFound:
            return False
        except APIError as e:
            logger.warning(f"Failed to remove image {ref}: {e}")
            return False

    # Containers

    def _get(self, container_id: str) -> Container:
        with engine_errors(f"Looking up container {container_id}"):
            return cast(Container, self.client.containers.get(container_id))

    def create_container(
        self,
        name: str,
        image: str,
        workdir: str = "/workspace",
        mounts: list[MountSpec] | None = None,
        ports: list[int] | None = None,
        env: dict[str, str] | None = None,
        user: str | None = None,
        command: list[str] | None = None,
        labels: dict[str, str] | None = None,
    ) -> ContainerHandle:
        """
        Create (but do not start) a container.

        Each requested port is published with an empty host port so the engine
        picks a free one; actual host ports are only known after start.
        """
        with engine_errors(f"Creating container {name}"):
            container = cast(
                Container,
                self.client.containers.create(
                    image,
                    command=command or DEFAULT_COMMAND,
                    name=name,
                    working_dir=workdir,
                    environment=env or {},
                    user=user,
                    volumes=[m.bind(self.mount_label) for m in mounts or []],
                    ports={f"{port}/tcp": None for port in ports or []},
                    labels={LABEL_MANAGED_BY: MANAGED_BY, **(labels or {})},
                    tty=True,
                    stdin_open=True,
                ),
            )
        logger.info(f"Created container: {name} ({container.short_id})")
        return ContainerHandle(id=cast(str, container.id), name=name)

    def start_container(self, container_id: str) -> None:
        container = self._get(container_id)
        with engine_errors(f"Starting container {container_id}"):
            container.start()

    def stop_container(self, container_id: str, grace: int | None = None) -> None:
        container = self._get(container_id)
        with engine_errors(f"Stopping container {container_id}"):
            container.stop(timeout=settings.CONTAINER_STOP_TIMEOUT if grace is None else grace)
        logger.info(f"Stopped container: {container.name}")

    def remove_container(self, container_id: str, force: bool = True) -> bool:
        """Remove a container. Returns False when it was already gone."""
        try:
            container = cast(Container, self.client.containers.get(container_id))
        except NotFound:
            return False
        with engine_errors(f"Removing container {container_id}"):
            try:
                container.remove(force=force)
            except NotFound:
                return False
        logger.info(f"Removed container: {container.name}")
        return True

    def remove_by_name(self, name: str) -> bool:
        return self.remove_container(name)

    def _list(self, **filters: Any) -> list[Container]:
        with engine_errors("Listing containers"):
            return cast(list[Container], self.client.containers.list(all=True, filters=filters))

    def remove_containers_by_prefix(self, prefix: str) -> list[str]:
        """Force-remove every container whose name starts with ``prefix``. Zero matches is fine."""
        removed = []
        # The engine's name filter is a substring match, so re-check the prefix
        for container in self._list(name=prefix):
            name = container.name or ""
            if not name.lstrip("/").startswith(prefix):
                continue
            try:
                container.remove(force=True)
                removed.append(name)
                logger.info(f"Removed container: {name}")
            except NotFound:
                continue
            except APIError as e:
                logger.warning(f"Failed to remove container {name}: {e}")
        return removed

    def inspect_container(self, container_id: str) -> ContainerState | None:
        """Current engine view of a container, or None when it does not exist."""
        try:
            container = cast(Container, self.client.containers.get(container_id))
        except NotFound:
            return None
        except APIError as e:
            raise EngineError(f"Inspecting container {container_id}: {e.explanation or e}") from e

        state = container.attrs.get("State") or {}
        return ContainerState(
            id=cast(str, container.id),
            name=(container.name or "").lstrip("/"),
            status=state.get("Status", container.status),
            running=bool(state.get("Running", container.status == "running")),
            exit_code=state.get("ExitCode"),
            started_at=state.get("StartedAt"),
            ports=parse_port_bindings(container.attrs.get("NetworkSettings")),
            labels=container.labels or {},
        )

    def get_ports(self, container_id: str) -> dict[int, int]:
        container = self._get(container_id)
        with engine_errors(f"Inspecting container {container_id}"):
            container.reload()
        return parse_port_bindings(container.attrs.get("NetworkSettings"))

    # Networks

    def create_network(self, name: str, labels: dict[str, str] | None = None) -> str:
        """Create a bridge network. An existing network of that name is reused."""
        try:
            network = cast(
                Network,
                self.client.networks.create(
                    name,
                    driver="bridge",
                    labels={LABEL_MANAGED_BY: MANAGED_BY, **(labels or {})},
                ),
            )
            logger.info(f"Created network: {name}")
            return cast(str, network.id)
        except APIError as e:
            if e.status_code != 409 and "already exists" not in str(e):
                raise EngineError(f"Creating network {name}: {e.explanation or e}") from e

        logger.info(f"Using existing network: {name}")
        with engine_errors(f"Looking up network {name}"):
            return cast(str, self.client.networks.get(name).id)

    def remove_network(self, network_id: str) -> bool:
        try:
            network = cast(Network, self.client.networks.get(network_id))
            network.remove()
            logger.info(f"Removed network: {network.name}")
            return True
        except NotFound:
            return False
        except APIError as e:
            logger.warning(f"Failed to remove network {network_id}: {e}")
            return False

    def remove_networks_by_prefix(self, prefix: str) -> list[str]:
        removed = []
        with engine_errors("Listing networks"):
            networks = cast(list[Network], self.client.networks.list(names=[prefix]))
        for network in networks:
            name = network.name or ""
            if not name.startswith(prefix):
                continue
            try:
                network.remove()
                removed.append(name)
                logger.info(f"Removed network: {name}")
            except NotFound:
                continue
            except APIError as e:
                logger.warning(f"Failed to remove network {name}: {e}")
        return removed

    def connect_to_network(self, container_id: str, network: str, alias: str | None = None) -> None:
        with engine_errors(f"Looking up network {network}"):
            net = cast(Network, self.client.networks.get(network))
        try:
            net.connect(container_id, aliases=[alias] if alias else None)
        except APIError as e:
            if "already exists" in str(e) or "already attached" in str(e):
                logger.debug(f"Container {container_id} already on network {network}")
                return
            raise EngineError(f"Connecting {container_id} to {network}: {e.explanation or e}") from e

    # Sidecar services

    def create_service_container(
        self,
        name: str,
        image: str,
        env: dict[str, str] | None = None,
        network: str | None = None,
        alias: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> str:
        """Pull if needed, create, join ``network`` under ``alias`` and start. Returns the id."""
        self.ensure_image(image)
        with engine_errors(f"Creating service container {name}"):
            container = cast(
                Container,
                self.client.containers.create(
                    image,
                    name=name,
                    environment=env or {},
                    labels={LABEL_MANAGED_BY: MANAGED_BY, **(labels or {})},
                ),
            )
        container_id = cast(str, container.id)
        if network:
            self.connect_to_network(container_id, network, alias)
        with engine_errors(f"Starting service container {name}"):
            container.start()
        logger.info(f"Started service container: {name} ({container.short_id})")
        return container_id

    def wait_for_service_ready(
        self,
        container_id: str,
        kind: ServiceKind,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        interval: float | None = None,
    ) -> bool:
        """Poll the kind's readiness probe. Returns False on timeout."""
        timeout = settings.SERVICE_READY_TIMEOUT if timeout is None else timeout
        interval = settings.SERVICE_READY_INTERVAL if interval is None else interval
        probe = kind.spec.probe_command(env)

        deadline = time.monotonic() + timeout
        while True:
            try:
                if self.exec(container_id, probe).ok:
                    logger.info(f"{kind.value} service {container_id[:12]} is ready")
                    return True
            except EngineError as e:
                logger.debug(f"Readiness probe for {container_id[:12]} failed: {e}")
            if time.monotonic() >= deadline:
                break
            time.sleep(interval)

        logger.warning(f"{kind.value} service {container_id[:12]} not ready after {timeout}s, continuing")
        return False

    # Exec and files

    def exec(
        self,
        container_id: str,
        cmd: list[str],
        user: str | None = None,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
    ) -> ExecResult:
        container = self._get(container_id)
        with engine_errors(f"Exec in {container_id}"):
            exit_code, output = container.exec_run(
                cmd,
                user=user or "",
                workdir=workdir,
                environment=env,
                demux=True,
            )
        stdout, stderr = output if isinstance(output, tuple) else (output, None)
        return ExecResult(
            exit_code=exit_code if exit_code is not None else -1,
            stdout=(stdout or b"").decode("utf-8", errors="replace"),
            stderr=(stderr or b"").decode("utf-8", errors="replace"),
        )

    def copy_to_container(self, container_id: str, host_path: pathlib.Path | str, container_path: str) -> None:
        """Archive a file or directory tree and extract it at ``container_path``."""
        host_path = pathlib.Path(host_path)
        target = pathlib.PurePosixPath(container_path)

        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            tar.add(str(host_path), arcname=target.name)
        buffer.seek(0)

        container = self._get(container_id)
        with engine_errors(f"Copying {host_path} into {container_id}"):
            if not container.put_archive(str(target.parent), buffer.getvalue()):
                raise EngineError(f"Copying {host_path} into {container_id} failed")

    def get_exec_stream(self, container_id: str, user: str | None = None, workdir: str = "/workspace") -> ExecStream:
        """Open a TTY shell attached to the container's persistent tmux session."""
        with engine_errors(f"Opening terminal in {container_id}"):
            exec_id = self.client.api.exec_create(
                container_id,
                ["bash", "-c", terminal_script(workdir)],
                stdin=True,
                tty=True,
                user=user or "",
                environment={"TERM": "xterm-256color"},
            )["Id"]
            sock = self.client.api.exec_start(exec_id, tty=True, socket=True)
        return ExecStream(exec_id, sock)

    def resize_exec(self, exec_id: str, cols: int, rows: int) -> None:
        with engine_errors(f"Resizing exec {exec_id}"):
            self.client.api.exec_resize(exec_id, height=rows, width=cols)

    def get_logs(self, container_id: str, tail: int = 500) -> ContainerLogs:
        container = self._get(container_id)
        with engine_errors(f"Reading logs of {container_id}"):
            stdout = container.logs(stdout=True, stderr=False, tail=tail)
            stderr = container.logs(stdout=False, stderr=True, tail=tail)
        return ContainerLogs(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    def get_stats(self, container_id: str) -> ContainerStats:
        container = self._get(container_id)
        with engine_errors(f"Reading stats of {container_id}"):
            raw = container.stats(stream=False)
        return compute_stats(cast(dict[str, Any], raw))

    # Project-scoped introspection

    def list_containers(self, project_id: str) -> list[dict[str, Any]]:
        return [
            {
                "id": c.id,
                "name": c.name,
                "image": (c.attrs.get("Config") or {}).get("Image"),
                "status": c.status,
                "session_id": c.labels.get(LABEL_SESSION),
                "role": c.labels.get(LABEL_ROLE),
                "created": c.attrs.get("Created"),
            }
            for c in self._list(label=f"{LABEL_PROJECT}={project_id}")
        ]

    def list_images(self, project_name: str) -> list[dict[str, Any]]:
        with engine_errors("Listing images"):
            images = cast(list[Image], self.client.images.list(name=f"{settings.IMAGE_PREFIX}/{project_name}"))
        in_use: dict[str, int] = {}
        for container in self._list():
            image_id = container.attrs.get("Image", "")
            in_use[image_id] = in_use.get(image_id, 0) + 1
        return [
            {
                "id": image.id,
                "tags": image.tags,
                "size": image.attrs.get("Size", 0),
                "created": image.attrs.get("Created"),
                "containers": in_use.get(cast(str, image.id), 0),
            }
            for image in images
        ]

    def list_networks(self, project_id: str) -> list[dict[str, Any]]:
        with engine_errors("Listing networks"):
            networks = cast(
                list[Network],
                self.client.networks.list(filters={"label": f"{LABEL_PROJECT}={project_id}"}, greedy=True),
            )
        return [
            {
                "id": network.id,
                "name": network.name,
                "session_id": (network.attrs.get("Labels") or {}).get(LABEL_SESSION),
                "containers": len(network.attrs.get("Containers") or {}),
            }
            for network in networks
        ]

    def list_volumes(self, project_id: str) -> list[dict[str, Any]]:
        with engine_errors("Listing volumes"):
            volumes = cast(list[Volume], self.client.volumes.list(filters={"label": f"{LABEL_PROJECT}={project_id}"}))
        users: dict[str, int] = {}
        for container in self._list():
            for mount in container.attrs.get("Mounts") or []:
                if mount.get("Type") == "volume":
                    users[mount.get("Name", "")] = users.get(mount.get("Name", ""), 0) + 1
        return [
            {
                "name": volume.name,
                "driver": volume.attrs.get("Driver"),
                "created": volume.attrs.get("CreatedAt"),
                "containers": users.get(cast(str, volume.name), 0),
            }
            for volume in volumes
        ]

    def find_orphaned_containers(self, project_id: str, valid_session_ids: set[str]) -> list[dict[str, Any]]:
        """Project containers whose session no longer exists."""
        return [c for c in self.list_containers(project_id) if c["session_id"] not in valid_session_ids]

    def cleanup_orphaned_containers(self, project_id: str, valid_session_ids: set[str]) -> BatchResult:
        orphans = self.find_orphaned_containers(project_id, valid_session_ids)
        return self.remove_containers_batch([c["id"] for c in orphans])

    def get_project_summary(
        self, project_id: str, project_name: str, valid_session_ids: set[str]
    ) -> ProjectResourceSummary:
        containers = self.list_containers(project_id)
        images = self.list_images(project_name)
        running = sum(1 for c in containers if c["status"] == "running")
        return ProjectResourceSummary(
            containers_total=len(containers),
            containers_running=running,
            containers_stopped=len(containers) - running,
            containers_orphaned=sum(1 for c in containers if c["session_id"] not in valid_session_ids),
            images_total=len(images),
            images_size=sum(i["size"] or 0 for i in images),
            images_unused=sum(1 for i in images if not i["containers"]),
            networks_total=len(self.list_networks(project_id)),
            volumes_total=len(self.list_volumes(project_id)),
        )

    # Batch operations

    def _batch(self, ids: list[str], action) -> BatchResult:
        result = BatchResult()
        for container_id in ids:
            try:
                action(container_id)
                result.succeeded.append(container_id)
            except Exception as e:
                logger.warning(f"Batch operation failed for {container_id}: {e}")
                result.failed.append(BatchFailure(id=container_id, error=str(e)))
        return result

    def stop_containers_batch(self, ids: list[str]) -> BatchResult:
        return self._batch(ids, self.stop_container)

    def remove_containers_batch(self, ids: list[str]) -> BatchResult:
        return self._batch(ids, self.remove_container)
