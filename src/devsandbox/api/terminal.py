"""
Interactive terminal over WebSocket.

The client connects to ``/ws?session=<id>`` and is bridged to a TTY exec in
the session's main container, attached to the container's persistent tmux
session so scrollback and running programs survive reconnects.

Server messages: ``connected``, ``output {data}``, ``exit``,
``error {message}``, ``pong``. Client messages: ``input {data}``,
``resize {cols, rows}``, ``ping``.
"""

import asyncio
import codecs
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

from devsandbox.api.deps import get_orchestrator, get_runtime
from devsandbox.common.db.models import SessionStatus
from devsandbox.sandbox.containers import ContainerRuntime, ExecStream
from devsandbox.sandbox.errors import ContainerNotFoundError, EngineError
from devsandbox.sandbox.orchestrator import SessionOrchestrator
from devsandbox.sandbox.privileges import lookup_user

logger = logging.getLogger(__name__)

router = APIRouter(tags=["terminal"])

READ_SIZE = 4096


async def send_ws_json(
    websocket: WebSocket,
    msg_type: str,
    data: str | None = None,
    **extra: int | str | bool,
) -> None:
    """Send a JSON message with timestamp over WebSocket."""
    if websocket.client_state != WebSocketState.CONNECTED:
        return
    msg: dict[str, str | int | bool] = {
        "type": msg_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if data is not None:
        msg["data"] = data
    msg.update(extra)
    await websocket.send_json(msg)


async def fail(websocket: WebSocket, message: str) -> None:
    await send_ws_json(websocket, "error", message=message)
    await websocket.close()


async def output_loop(websocket: WebSocket, stream: ExecStream, session_id: str) -> None:
    """Forward shell output until the exec stream ends."""
    # Multi-byte characters can be split across reads
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await asyncio.to_thread(stream.read, READ_SIZE)
        if not chunk:
            break
        if text := decoder.decode(chunk):
            await send_ws_json(websocket, "output", text)

    if tail := decoder.decode(b"", final=True):
        await send_ws_json(websocket, "output", tail)
    logger.info(f"Terminal stream ended for {session_id}")
    await send_ws_json(websocket, "exit")
    if websocket.client_state == WebSocketState.CONNECTED:
        await websocket.close()


async def input_loop(websocket: WebSocket, stream: ExecStream, runtime: ContainerRuntime, session_id: str) -> None:
    """Apply client messages to the exec stream until the client goes away."""
    while True:
        try:
            message = await websocket.receive_json()
        except WebSocketDisconnect:
            return
        except ValueError as e:
            logger.warning(f"Invalid terminal message for {session_id}: {e}")
            continue

        msg_type = message.get("type") if isinstance(message, dict) else None
        if msg_type == "ping":
            await send_ws_json(websocket, "pong")
        elif msg_type == "input" and message.get("data"):
            try:
                await asyncio.to_thread(stream.write, str(message["data"]).encode("utf-8"))
            except OSError as e:
                logger.warning(f"Terminal write for {session_id} failed: {e}")
                return
        elif msg_type == "resize" and message.get("cols") and message.get("rows"):
            try:
                await asyncio.to_thread(
                    runtime.resize_exec, stream.exec_id, int(message["cols"]), int(message["rows"])
                )
            except EngineError as e:
                logger.warning(f"Failed to resize terminal for {session_id}: {e}")
        else:
            logger.debug(f"Ignoring terminal message for {session_id}: {msg_type}")


@router.websocket("/ws")
async def terminal(
    websocket: WebSocket,
    session: str = Query(...),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
    runtime: ContainerRuntime = Depends(get_runtime),
):
    await websocket.accept()
    logger.info(f"Terminal connection requested for {session}")

    record = await asyncio.to_thread(orchestrator.store.find_session, session)
    if record is None:
        await fail(websocket, "Session not found")
        return
    if record.status != SessionStatus.RUNNING.value or not record.container_id:
        await fail(websocket, "Session is not running")
        return

    user = None
    if record.claude_source_user and (host_user := lookup_user(record.claude_source_user)):
        user = f"{host_user.uid}:{host_user.gid}"

    try:
        stream = await asyncio.to_thread(runtime.get_exec_stream, record.container_id, user=user)
    except ContainerNotFoundError:
        logger.info(f"Container of session {session} not found, marking session stopped")
        await asyncio.to_thread(orchestrator.mark_stopped, session)
        await fail(websocket, "Container no longer exists. Please restart the session.")
        return
    except EngineError as e:
        logger.error(f"Failed to open terminal for {session}: {e}")
        await fail(websocket, str(e))
        return

    await send_ws_json(websocket, "connected")
    logger.info(f"Terminal connected for {session}")
    await bridge(websocket, stream, runtime, session)
    logger.info(f"Terminal connection closed for {session}")


async def bridge(websocket: WebSocket, stream: ExecStream, runtime: ContainerRuntime, session_id: str) -> None:
    """Run both directions until either the shell exits or the client leaves."""
    output_task = asyncio.create_task(output_loop(websocket, stream, session_id))
    input_task = asyncio.create_task(input_loop(websocket, stream, runtime, session_id))
    try:
        await asyncio.wait([output_task, input_task], return_when=asyncio.FIRST_COMPLETED)
    finally:
        # Closing the stream makes the reader thread return, so the output loop finishes by itself
        stream.close()
        input_task.cancel()
        results = await asyncio.gather(output_task, input_task, return_exceptions=True)

    for result in results:
        if isinstance(result, Exception) and not isinstance(result, WebSocketDisconnect):
            logger.error(f"Terminal bridge for {session_id} failed: {result}")
