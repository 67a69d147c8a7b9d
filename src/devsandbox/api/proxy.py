"""
Reverse proxy from ``/proxy/<session id>/<container port>/<path>`` to the host
port the engine published for that container port.

HTML, JavaScript and JSON responses are buffered and passed through
``rewrite_body`` so root-relative asset and module URLs stay under the proxy
prefix; everything else streams through untouched. WebSocket upgrades on the
same paths are relayed frame by frame without rewriting.
"""

import asyncio
import logging

import httpx
import websockets
from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket
from fastapi.responses import JSONResponse, RedirectResponse, Response, StreamingResponse
from starlette.background import BackgroundTask
from starlette.websockets import WebSocketDisconnect
from websockets.exceptions import ConnectionClosed, WebSocketException

from devsandbox.api.deps import get_store
from devsandbox.api.rewrite import proxy_base, rewrite_body, rewrite_location, should_rewrite
from devsandbox.common import settings
from devsandbox.common.db.models import SessionStatus
from devsandbox.common.db.store import SandboxStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/proxy", tags=["proxy"])

METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}
# Headers the proxy recomputes on buffered (rewritten) responses
BUFFERED_DROP_HEADERS = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}


async def resolve_host_port(store: SandboxStore, session_id: str, container_port: str) -> int:
    """Host port serving ``container_port`` of a running session, or an HTTPException."""
    if not container_port.isdigit():
        raise HTTPException(status_code=400, detail="Invalid port")

    session = await asyncio.to_thread(store.find_session, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    if session.status != SessionStatus.RUNNING.value:
        raise HTTPException(status_code=400, detail="Session is not running")

    host_port = session.host_port(int(container_port))
    if not host_port:
        raise HTTPException(status_code=404, detail=f"Port {container_port} is not exposed in this session")
    return host_port


def upstream_url(scheme: str, host_port: int, rest: str, query: str) -> str:
    url = f"{scheme}://localhost:{host_port}/{rest}"
    return f"{url}?{query}" if query else url


def forward_headers(request: Request, host_port: int) -> dict[str, str]:
    headers = {k: v for k, v in request.headers.items() if k.lower() not in HOP_BY_HOP_HEADERS}
    headers["host"] = f"localhost:{host_port}"
    headers["accept-encoding"] = "identity"
    return headers


def response_headers(response: httpx.Response, base: str, drop: set[str]) -> list[tuple[str, str]]:
    headers = []
    for key, value in response.headers.multi_items():
        if key.lower() in drop:
            continue
        if key.lower() == "location":
            value = rewrite_location(value, base)
        headers.append((key, value))
    return headers


@router.api_route("/{session_id}/{container_port}", methods=METHODS)
async def proxy_root(request: Request, session_id: str, container_port: str):
    query = f"?{request.url.query}" if request.url.query else ""
    return RedirectResponse(url=f"{proxy_base(session_id, container_port)}/{query}")


@router.api_route("/{session_id}/{container_port}/{rest:path}", methods=METHODS)
async def proxy_http(
    request: Request,
    session_id: str,
    container_port: str,
    rest: str,
    store: SandboxStore = Depends(get_store),
):
    host_port = await resolve_host_port(store, session_id, container_port)
    base = proxy_base(session_id, container_port)
    client: httpx.AsyncClient = request.app.state.http_client

    upstream_request = client.build_request(
        request.method,
        upstream_url("http", host_port, rest, request.url.query),
        headers=forward_headers(request, host_port),
        content=await request.body(),
    )
    logger.debug(f"Proxying {request.method} {base}/{rest} -> localhost:{host_port}")

    try:
        upstream = await client.send(upstream_request, stream=True)
    except httpx.TimeoutException as e:
        logger.warning(f"Proxy timeout for {base}/{rest}: {e}")
        return JSONResponse({"error": "Upstream timed out"}, status_code=504)
    except httpx.HTTPError as e:
        logger.warning(f"Proxy request for {base}/{rest} failed: {e}")
        return JSONResponse({"error": "Failed to connect to container", "details": str(e)}, status_code=502)

    if request.method != "HEAD" and should_rewrite(upstream.headers.get("content-type")):
        try:
            body = await upstream.aread()
        except httpx.TimeoutException as e:
            logger.warning(f"Proxy timeout reading {base}/{rest}: {e}")
            return JSONResponse({"error": "Upstream timed out"}, status_code=504)
        except httpx.HTTPError as e:
            logger.warning(f"Proxy read for {base}/{rest} failed: {e}")
            return JSONResponse({"error": "Upstream connection lost", "details": str(e)}, status_code=502)
        finally:
            await upstream.aclose()

        encoding = upstream.encoding or "utf-8"
        text = rewrite_body(body.decode(encoding, errors="replace"), base)
        response = Response(content=text.encode(encoding, errors="replace"), status_code=upstream.status_code)
        for key, value in response_headers(upstream, base, BUFFERED_DROP_HEADERS):
            response.headers.append(key, value)
        return response

    response = StreamingResponse(
        upstream.aiter_raw(),
        status_code=upstream.status_code,
        background=BackgroundTask(upstream.aclose),
    )
    for key, value in response_headers(upstream, base, HOP_BY_HOP_HEADERS):
        response.headers.append(key, value)
    return response


@router.websocket("/{session_id}/{container_port}/{rest:path}")
async def proxy_websocket(
    websocket: WebSocket,
    session_id: str,
    container_port: str,
    rest: str,
    store: SandboxStore = Depends(get_store),
):
    try:
        host_port = await resolve_host_port(store, session_id, container_port)
    except HTTPException as e:
        await websocket.close(code=1008, reason=str(e.detail))
        return

    url = upstream_url("ws", host_port, rest, websocket.url.query)
    subprotocols = [
        p.strip() for p in websocket.headers.get("sec-websocket-protocol", "").split(",") if p.strip()
    ]
    try:
        upstream = await websockets.connect(
            url,
            subprotocols=subprotocols or None,
            open_timeout=settings.PROXY_CONNECT_TIMEOUT,
            max_size=None,
        )
    except (OSError, asyncio.TimeoutError, WebSocketException) as e:
        logger.warning(f"WebSocket proxy to {url} failed: {e}")
        await websocket.close(code=1011, reason="Failed to connect to container")
        return

    await websocket.accept(subprotocol=upstream.subprotocol)
    logger.debug(f"WebSocket relay open: {proxy_base(session_id, container_port)}/{rest} -> {url}")

    async def client_to_upstream() -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
            if message.get("text") is not None:
                await upstream.send(message["text"])
            elif message.get("bytes") is not None:
                await upstream.send(message["bytes"])

    async def upstream_to_client() -> None:
        async for message in upstream:
            if isinstance(message, bytes):
                await websocket.send_bytes(message)
            else:
                await websocket.send_text(message)

    tasks = [asyncio.create_task(client_to_upstream()), asyncio.create_task(upstream_to_client())]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            if (exc := task.exception()) and not isinstance(
                exc, (WebSocketDisconnect, ConnectionClosed)
            ):
                logger.warning(f"WebSocket relay for {url} ended with error: {exc}")
    finally:
        await upstream.close()
        try:
            await websocket.close()
        except RuntimeError:
            # Already closed by the client
            pass
    logger.debug(f"WebSocket relay closed: {url}")
