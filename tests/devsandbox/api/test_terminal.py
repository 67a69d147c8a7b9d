import asyncio
import queue
from unittest.mock import AsyncMock, MagicMock

import pytest
from starlette.websockets import WebSocketDisconnect, WebSocketState

from devsandbox.api.terminal import bridge, output_loop, send_ws_json
from devsandbox.common.db.models import SessionStatus


class FakeExecStream:
    """Blocking byte stream fed from a queue, like a TTY exec socket."""

    exec_id = "exec-1"

    def __init__(self, *chunks: bytes):
        self.chunks: queue.Queue[bytes] = queue.Queue()
        for chunk in chunks:
            self.chunks.put(chunk)
        self.written: list[bytes] = []
        self.closed = False

    def read(self, size: int = 4096) -> bytes:
        return self.chunks.get(timeout=10)

    def write(self, data: bytes) -> None:
        self.written.append(data)

    def close(self) -> None:
        self.closed = True
        self.chunks.put(b"")


@pytest.fixture
def container(runtime):
    handle = runtime.create_container(name="devsandbox-web", image="debian:12")
    runtime.start_container(handle.id)
    return handle


@pytest.fixture
def live_session(store, project, container):
    session = store.create_session(project_id=project.id, name="web")
    store.update_container(session.id, container.id, {5173: 49152})
    return store.update_status(session.id, SessionStatus.RUNNING)


def test_output_and_exit(client, runtime, live_session):
    # "é" split across two reads
    runtime.exec_stream = FakeExecStream(b"$ echo caf", b"\xc3", b"\xa9\r\n", b"")

    with client.websocket_connect(f"/ws?session={live_session.id}") as ws:
        assert ws.receive_json()["type"] == "connected"

        output = ""
        while (message := ws.receive_json())["type"] == "output":
            output += message["data"]

        assert message["type"] == "exit"
        assert "timestamp" in message

    assert output == "$ echo café\r\n"
    assert runtime.exec_stream.closed
    assert runtime.called("get_exec_stream") == [(live_session.container_id, None)]


def hang_up(ws, stream):
    """End the shell and drain until the server closes, so the app finishes before the client exits."""
    stream.close()
    while ws.receive_json()["type"] != "exit":
        pass


def test_input_resize_and_ping(client, runtime, live_session):
    runtime.exec_stream = FakeExecStream()

    with client.websocket_connect(f"/ws?session={live_session.id}") as ws:
        assert ws.receive_json()["type"] == "connected"

        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"

        ws.send_json({"type": "input", "data": "ls -la\r"})
        ws.send_json({"type": "resize", "cols": 120, "rows": 40})
        ws.send_json({"type": "unknown"})
        ws.send_text("not json")
        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"

        assert runtime.exec_stream.written == [b"ls -la\r"]
        assert runtime.resizes == [("exec-1", 120, 40)]
        hang_up(ws, runtime.exec_stream)


@pytest.mark.parametrize(
    "message",
    [
        {"type": "input"},
        {"type": "input", "data": ""},
        {"type": "resize", "cols": 80},
        {"type": "resize", "cols": 0, "rows": 24},
    ],
)
def test_incomplete_messages_are_ignored(client, runtime, live_session, message):
    runtime.exec_stream = FakeExecStream()

    with client.websocket_connect(f"/ws?session={live_session.id}") as ws:
        ws.receive_json()
        ws.send_json(message)
        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"
        hang_up(ws, runtime.exec_stream)

    assert runtime.exec_stream.written == []
    assert runtime.resizes == []


def test_unknown_session(client):
    with client.websocket_connect("/ws?session=missing") as ws:
        message = ws.receive_json()

    assert message["type"] == "error"
    assert message["message"] == "Session not found"


@pytest.mark.parametrize("status", [SessionStatus.PENDING, SessionStatus.STOPPED, SessionStatus.ERROR])
def test_session_not_running(client, store, live_session, status):
    store.update_status(live_session.id, status)

    with client.websocket_connect(f"/ws?session={live_session.id}") as ws:
        message = ws.receive_json()

    assert message == {"type": "error", "timestamp": message["timestamp"], "message": "Session is not running"}


def test_vanished_container_stops_session(client, store, runtime, live_session):
    runtime.containers.clear()

    with client.websocket_connect(f"/ws?session={live_session.id}") as ws:
        message = ws.receive_json()

    assert message["message"] == "Container no longer exists. Please restart the session."
    session = store.find_session(live_session.id)
    assert session.status == SessionStatus.STOPPED.value
    assert session.container_id is None


def mock_websocket(state=WebSocketState.CONNECTED):
    websocket = MagicMock()
    websocket.client_state = state
    websocket.send_json = AsyncMock()
    websocket.close = AsyncMock()
    return websocket


@pytest.mark.asyncio
async def test_send_ws_json_skips_closed_socket():
    websocket = mock_websocket(WebSocketState.DISCONNECTED)

    await send_ws_json(websocket, "output", "ignored")

    websocket.send_json.assert_not_called()


@pytest.mark.asyncio
async def test_output_loop_flushes_truncated_character():
    websocket = mock_websocket()

    await output_loop(websocket, FakeExecStream(b"ok \xc3", b""), "s1")

    messages = [call.args[0] for call in websocket.send_json.call_args_list]
    assert [m["type"] for m in messages] == ["output", "output", "exit"]
    assert messages[0]["data"] == "ok "
    assert messages[1]["data"] == "�"
    websocket.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_bridge_finishes_when_client_leaves(runtime):
    websocket = mock_websocket()
    websocket.receive_json = AsyncMock(side_effect=WebSocketDisconnect(1000))
    stream = FakeExecStream(b"partial output")

    await asyncio.wait_for(bridge(websocket, stream, runtime, "s1"), timeout=5)

    assert stream.closed
    # The output side drained and ended on its own rather than being cancelled mid-read
    messages = [call.args[0] for call in websocket.send_json.call_args_list]
    assert messages[-1]["type"] == "exit"
