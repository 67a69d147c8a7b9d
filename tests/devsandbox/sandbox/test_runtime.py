import socket
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from devsandbox.sandbox.containers import (
    LABEL_MANAGED_BY,
    LABEL_PROJECT,
    LABEL_SESSION,
    ContainerRuntime,
    ExecStream,
    MountSpec,
    compute_stats,
    parse_port_bindings,
    terminal_script,
)
from devsandbox.sandbox.errors import BuildError, ContainerNotFoundError, EngineError
from devsandbox.sandbox.services import ServiceKind


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def runtime(client):
    return ContainerRuntime(client=client, mount_label="")


def make_container(name, status="running", labels=None, container_id=None):
    container = MagicMock()
    container.id = container_id or f"id-{name}"
    container.short_id = container.id[:10]
    container.name = name
    container.status = status
    container.labels = labels or {}
    container.attrs = {"Config": {"Image": "debian:12"}, "Created": "2024-01-01T00:00:00Z", "Image": "sha256:img"}
    return container


@pytest.mark.parametrize(
    "mount, label, expected",
    [
        (MountSpec("/src", "/dst"), "", "/src:/dst:rw"),
        (MountSpec("/src", "/dst", readonly=True), "", "/src:/dst:ro"),
        (MountSpec("/src", "/dst"), "z", "/src:/dst:rw,z"),
    ],
)
def test_mount_bind(mount, label, expected):
    assert mount.bind(label) == expected


def test_parse_port_bindings():
    settings = {
        "Ports": {
            "5173/tcp": [{"HostIp": "0.0.0.0", "HostPort": "49153"}, {"HostIp": "::", "HostPort": "49153"}],
            "3000/tcp": None,
            "53/udp": [{"HostIp": "0.0.0.0", "HostPort": "49200"}],
            "8080/tcp": [{"HostIp": "0.0.0.0", "HostPort": ""}],
        }
    }
    assert parse_port_bindings(settings) == {5173: 49153}


@pytest.mark.parametrize("settings", [None, {}, {"Ports": None}])
def test_parse_port_bindings_empty(settings):
    assert parse_port_bindings(settings) == {}


def test_compute_stats():
    raw = {
        "cpu_stats": {"cpu_usage": {"total_usage": 400}, "system_cpu_usage": 2000, "online_cpus": 2},
        "precpu_stats": {"cpu_usage": {"total_usage": 200}, "system_cpu_usage": 1000},
        "memory_stats": {"usage": 600, "limit": 1000, "stats": {"inactive_file": 100}},
        "networks": {"eth0": {"rx_bytes": 10, "tx_bytes": 20}, "eth1": {"rx_bytes": 1, "tx_bytes": 2}},
        "blkio_stats": {
            "io_service_bytes_recursive": [
                {"op": "Read", "value": 7},
                {"op": "Write", "value": 9},
                {"op": "read", "value": 1},
            ]
        },
    }
    stats = compute_stats(raw)

    assert stats.cpu_percent == 40.0
    assert stats.memory_usage == 500
    assert stats.memory_limit == 1000
    assert stats.memory_percent == 50.0
    assert (stats.network_rx, stats.network_tx) == (11, 22)
    assert (stats.block_read, stats.block_write) == (8, 9)


def test_compute_stats_empty_sample():
    stats = compute_stats({})
    assert stats.cpu_percent == 0.0
    assert stats.memory_percent == 0.0


def test_terminal_script_uses_tmux():
    script = terminal_script("/workspace")
    assert "tmux" in script
    assert "-c /workspace" in script


def test_ping(runtime, client):
    client.ping.return_value = True
    assert runtime.ping()

    client.ping.side_effect = DockerException("connection refused")
    assert not runtime.ping()


def test_image_exists(runtime, client):
    assert runtime.image_exists("debian:12")

    client.images.get.side_effect = ImageNotFound("missing")
    assert not runtime.image_exists("debian:12")


def test_image_exists_engine_failure(runtime, client):
    client.images.get.side_effect = APIError("500 Server Error: Internal Server Error")

    with pytest.raises(EngineError, match="Inspecting image debian:12"):
        runtime.image_exists("debian:12")


def test_ensure_image_pulls_missing(runtime, client):
    client.images.get.side_effect = ImageNotFound("missing")

    runtime.ensure_image("redis:7")

    client.images.pull.assert_called_once_with("redis:7")


def test_build_image(runtime, client, tmp_path):
    client.api.build.return_value = iter([{"stream": "Step 1/3 : FROM debian:12\n"}, {"stream": "Successfully built"}])

    runtime.build_image(tmp_path, "devsandbox/demo:abc", labels={LABEL_PROJECT: "p1"})

    kwargs = client.api.build.call_args.kwargs
    assert kwargs["path"] == str(tmp_path)
    assert kwargs["tag"] == "devsandbox/demo:abc"
    assert kwargs["labels"] == {LABEL_MANAGED_BY: "devsandbox", LABEL_PROJECT: "p1"}


def test_build_image_error_chunk(runtime, client, tmp_path):
    client.api.build.return_value = iter(
        [{"stream": "Step 1/3"}, {"error": "apt failed", "errorDetail": {"message": "apt failed"}}]
    )

    with pytest.raises(BuildError, match="apt failed") as exc:
        runtime.build_image(tmp_path, "devsandbox/demo:abc")
    assert exc.value.log_line == "apt failed"


def test_create_container(runtime, client):
    client.containers.create.return_value = make_container("devsandbox-abc", container_id="c1")

    handle = runtime.create_container(
        name="devsandbox-abc",
        image="devsandbox/demo:abc",
        mounts=[MountSpec("/wt", "/workspace")],
        ports=[5173, 3000],
        env={"A": "1"},
        user="1000:1000",
        labels={LABEL_SESSION: "s1"},
    )

    assert handle.id == "c1"
    args, kwargs = client.containers.create.call_args
    assert args == ("devsandbox/demo:abc",)
    assert kwargs["name"] == "devsandbox-abc"
    assert kwargs["command"] == ["sleep", "infinity"]
    assert kwargs["volumes"] == ["/wt:/workspace:rw"]
    assert kwargs["ports"] == {"5173/tcp": None, "3000/tcp": None}
    assert kwargs["environment"] == {"A": "1"}
    assert kwargs["user"] == "1000:1000"
    assert kwargs["labels"] == {LABEL_MANAGED_BY: "devsandbox", LABEL_SESSION: "s1"}
    assert kwargs["tty"]


def test_create_container_conflict(runtime, client):
    client.containers.create.side_effect = APIError("Conflict. The container name is already in use")

    with pytest.raises(EngineError, match="Creating container devsandbox-abc"):
        runtime.create_container(name="devsandbox-abc", image="debian:12")


def test_missing_container_raises_not_found(runtime, client):
    client.containers.get.side_effect = NotFound("No such container: c1")

    with pytest.raises(ContainerNotFoundError):
        runtime.start_container("c1")
    with pytest.raises(ContainerNotFoundError):
        runtime.exec("c1", ["true"])
    assert runtime.inspect_container("c1") is None
    assert not runtime.remove_container("c1")


def test_inspect_container(runtime, client):
    container = make_container("devsandbox-abc", labels={LABEL_SESSION: "s1"})
    container.attrs.update(
        {
            "State": {"Status": "running", "Running": True, "ExitCode": 0, "StartedAt": "2024-01-01T00:00:00Z"},
            "NetworkSettings": {"Ports": {"5173/tcp": [{"HostPort": "49153"}]}},
        }
    )
    client.containers.get.return_value = container

    state = runtime.inspect_container("c1")

    assert state.running
    assert state.status == "running"
    assert state.ports == {5173: 49153}
    assert state.labels == {LABEL_SESSION: "s1"}


def test_get_ports_reloads(runtime, client):
    container = make_container("devsandbox-abc")
    container.attrs["NetworkSettings"] = {"Ports": {"5173/tcp": [{"HostPort": "49153"}]}}
    client.containers.get.return_value = container

    assert runtime.get_ports("c1") == {5173: 49153}
    container.reload.assert_called_once()


def test_remove_containers_by_prefix_rechecks_names(runtime, client):
    matching = make_container("devsandbox-abc12345")
    sidecar = make_container("devsandbox-abc12345-postgres")
    substring = make_container("other-devsandbox-abc12345")
    client.containers.list.return_value = [matching, sidecar, substring]

    removed = runtime.remove_containers_by_prefix("devsandbox-abc12345")

    assert removed == ["devsandbox-abc12345", "devsandbox-abc12345-postgres"]
    matching.remove.assert_called_once_with(force=True)
    sidecar.remove.assert_called_once_with(force=True)
    substring.remove.assert_not_called()
    client.containers.list.assert_called_once_with(all=True, filters={"name": "devsandbox-abc12345"})


def test_remove_containers_by_prefix_no_matches(runtime, client):
    client.containers.list.return_value = []
    assert runtime.remove_containers_by_prefix("devsandbox-abc12345") == []


def test_remove_containers_by_prefix_tolerates_races(runtime, client):
    gone = make_container("devsandbox-abc12345")
    gone.remove.side_effect = NotFound("already removed")
    client.containers.list.return_value = [gone]

    assert runtime.remove_containers_by_prefix("devsandbox-abc12345") == []


def test_create_network(runtime, client):
    client.networks.create.return_value = MagicMock(id="n1")

    assert runtime.create_network("devsandbox-abc-net", labels={LABEL_SESSION: "s1"}) == "n1"
    assert client.networks.create.call_args.kwargs["driver"] == "bridge"


def test_create_network_reuses_existing(runtime, client):
    client.networks.create.side_effect = APIError("network exists", response=MagicMock(status_code=409))
    client.networks.get.return_value = MagicMock(id="existing")

    assert runtime.create_network("devsandbox-abc-net") == "existing"
    client.networks.get.assert_called_once_with("devsandbox-abc-net")


def test_create_network_other_errors(runtime, client):
    client.networks.create.side_effect = APIError("pool overlaps", response=MagicMock(status_code=500))

    with pytest.raises(EngineError):
        runtime.create_network("devsandbox-abc-net")


def test_remove_networks_by_prefix(runtime, client):
    ours = MagicMock()
    ours.name = "devsandbox-abc-net"
    other = MagicMock()
    other.name = "x-devsandbox-abc-net"
    client.networks.list.return_value = [ours, other]

    assert runtime.remove_networks_by_prefix("devsandbox-abc") == ["devsandbox-abc-net"]
    other.remove.assert_not_called()


def test_connect_to_network_already_attached(runtime, client):
    network = MagicMock()
    network.connect.side_effect = APIError("endpoint with name x already exists in network")
    client.networks.get.return_value = network

    runtime.connect_to_network("c1", "devsandbox-abc-net", alias="postgres")

    network.connect.assert_called_once_with("c1", aliases=["postgres"])


def test_create_service_container(runtime, client):
    container = make_container("devsandbox-abc-postgres", container_id="svc1")
    client.containers.create.return_value = container
    network = MagicMock()
    client.networks.get.return_value = network

    service_id = runtime.create_service_container(
        name="devsandbox-abc-postgres",
        image="postgres:16",
        env={"POSTGRES_USER": "dev"},
        network="devsandbox-abc-net",
        alias="postgres",
    )

    assert service_id == "svc1"
    network.connect.assert_called_once_with("svc1", aliases=["postgres"])
    container.start.assert_called_once()


def test_exec_decodes_output(runtime, client):
    container = make_container("c")
    container.exec_run.return_value = (1, (b"out", b"err \xff"))
    client.containers.get.return_value = container

    result = runtime.exec("c1", ["ls"], user="1000", workdir="/workspace")

    assert result.exit_code == 1
    assert not result.ok
    assert result.stdout == "out"
    assert result.stderr == "err �"


def test_wait_for_service_ready(runtime, client):
    container = make_container("svc")
    container.exec_run.side_effect = [(1, (b"", b"not ready")), (0, (b"ok", None))]
    client.containers.get.return_value = container

    assert runtime.wait_for_service_ready("svc1", ServiceKind.POSTGRES, timeout=5, interval=0)
    assert container.exec_run.call_args.args[0] == ["pg_isready", "-U", "dev", "-d", "dev"]


def test_wait_for_service_ready_times_out(runtime, client):
    container = make_container("svc")
    container.exec_run.return_value = (1, (b"", b"not ready"))
    client.containers.get.return_value = container

    assert not runtime.wait_for_service_ready("svc1", ServiceKind.REDIS, timeout=0, interval=0)


def test_copy_to_container(runtime, client, tmp_path):
    source = tmp_path / "init.sql"
    source.write_text("CREATE TABLE t (id int);")
    container = make_container("svc")
    container.put_archive.return_value = True
    client.containers.get.return_value = container

    runtime.copy_to_container("svc1", source, "/tmp/init.sql")

    path, data = container.put_archive.call_args.args
    assert path == "/tmp"
    assert b"init.sql" in data


def test_get_exec_stream(runtime, client):
    sock = MagicMock(spec=socket.socket)
    client.api.exec_create.return_value = {"Id": "exec1"}
    client.api.exec_start.return_value = sock

    stream = runtime.get_exec_stream("c1", user="1000:1000")

    assert stream.exec_id == "exec1"
    kwargs = client.api.exec_create.call_args.kwargs
    assert kwargs["tty"] and kwargs["stdin"]
    assert kwargs["user"] == "1000:1000"
    client.api.exec_start.assert_called_once_with("exec1", tty=True, socket=True)


def test_exec_stream_io():
    sock = MagicMock(spec=socket.socket)
    sock.recv.return_value = b"$ "
    stream = ExecStream("exec1", sock)

    assert stream.read() == b"$ "
    stream.write(b"ls\n")
    sock.sendall.assert_called_once_with(b"ls\n")

    stream.close()
    stream.close()
    sock.shutdown.assert_called_once_with(socket.SHUT_RDWR)
    sock.close.assert_called_once()
    assert stream.read() == b""


def test_exec_stream_unwraps_socket_io():
    raw = MagicMock()
    wrapper = MagicMock(_sock=raw)

    assert ExecStream("exec1", wrapper)._sock is raw


def test_exec_stream_read_error_is_eof():
    sock = MagicMock(spec=socket.socket)
    sock.recv.side_effect = OSError("connection reset")
    assert ExecStream("exec1", sock).read() == b""


def test_resize_exec(runtime, client):
    runtime.resize_exec("exec1", cols=120, rows=40)
    client.api.exec_resize.assert_called_once_with("exec1", height=40, width=120)


def test_get_logs(runtime, client):
    container = make_container("c")
    container.logs.side_effect = [b"out\n", b"err\n"]
    client.containers.get.return_value = container

    logs = runtime.get_logs("c1", tail=10)

    assert (logs.stdout, logs.stderr) == ("out\n", "err\n")


def test_orphans_and_summary(runtime, client):
    live = make_container("devsandbox-live", labels={LABEL_SESSION: "s1"})
    orphan = make_container("devsandbox-orphan", status="exited", labels={LABEL_SESSION: "gone"})
    client.containers.list.return_value = [live, orphan]
    image = MagicMock(id="sha256:img", tags=["devsandbox/demo:abc"], attrs={"Size": 100, "Created": "x"})
    client.images.list.return_value = [image]
    client.networks.list.return_value = []
    client.volumes.list.return_value = []

    orphans = runtime.find_orphaned_containers("p1", {"s1"})
    assert [o["name"] for o in orphans] == ["devsandbox-orphan"]

    summary = runtime.get_project_summary("p1", "demo", {"s1"})
    assert summary.containers_total == 2
    assert summary.containers_running == 1
    assert summary.containers_stopped == 1
    assert summary.containers_orphaned == 1
    assert summary.images_total == 1
    assert summary.images_size == 100
    assert summary.images_unused == 0


def test_batch_operations(runtime, client):
    good = make_container("good")
    bad = make_container("bad")
    bad.stop.side_effect = APIError("cannot stop")
    client.containers.get.side_effect = lambda container_id: {"good": good, "bad": bad}[container_id]

    result = runtime.stop_containers_batch(["good", "bad"])

    assert result.succeeded == ["good"]
    assert [f.id for f in result.failed] == ["bad"]
    assert "cannot stop" in result.failed[0].error
