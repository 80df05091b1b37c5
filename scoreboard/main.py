"""
FastAPI application entry point.

Routes:
  POST   /api/scoreboard/{channel_id}/clients        register a viewer, returns clientId
  GET    /api/scoreboard/{channel_id}/events         SSE stream (?clientId=… to attach)
  GET    /api/scoreboard/{channel_id}                session status + last known state
  DELETE /api/clients/{client_id}                    explicit unsubscribe

  GET  /api/sessions
  GET  /api/health

  WS   /ws/scoreboard/{channel_id}                   same stream over WebSocket (?clientId=… to attach)
"""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import (
    Depends, FastAPI, HTTPException, Query, Request, Response, WebSocket,
    WebSocketDisconnect, status,
)
from fastapi.middleware.cors import CORSMiddleware
from sse_starlette.sse import EventSourceResponse
from starlette.websockets import WebSocketState

from scoreboard.config import CORS_ORIGINS, LOG_LEVEL
from scoreboard.errors import DuplicateClient, SessionStartFailed
from scoreboard.gateway.transport import QueueTransport
from scoreboard.relay import Relay, build_relay
from scoreboard.scheduler.jobs import setup_scheduler

log = logging.getLogger("uvicorn.error")

# ── Lifespan ──────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.getLogger("scoreboard").setLevel(LOG_LEVEL)
    relay = build_relay()
    app.state.relay = relay
    app.state.scheduler = await setup_scheduler(relay)
    yield
    app.state.scheduler.shutdown(wait=False)
    await relay.aclose()


app = FastAPI(title="Scoreboard Relay", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_relay(request: Request) -> Relay:
    return request.app.state.relay


def _endpoints(channel_id: str, client_id: str) -> dict:
    return {
        "clientId": client_id,
        "channelId": channel_id,
        "sseEndpoint": f"/api/scoreboard/{channel_id}/events?clientId={client_id}",
        "wsEndpoint": f"/ws/scoreboard/{channel_id}?clientId={client_id}",
    }


def _hello(channel_id: str, client_id: str) -> str:
    return json.dumps({"kind": "hello", "channel_id": channel_id, "client_id": client_id})


def _attach_problem(relay: Relay, channel_id: str, client_id: str, transport: QueueTransport) -> Optional[str]:
    """Why an existing registration cannot be streamed on this channel, if it can't."""
    if relay.registry.channel_of(client_id) != channel_id:
        return f"Client {client_id} is not registered on {channel_id}"
    if transport.attached:
        return f"Client {client_id} is already streaming"
    return None


# ── Registration ──────────────────────────────────────────────────────────────

@app.post("/api/scoreboard/{channel_id}/clients", status_code=status.HTTP_201_CREATED)
async def register_client(
    channel_id: str,
    response: Response,
    client_id: Optional[str] = Query(default=None, alias="clientId"),
    relay: Relay = Depends(get_relay),
):
    try:
        client_id = await relay.gateway.accept(channel_id, client_id)
    except DuplicateClient as exc:
        raise HTTPException(409, str(exc))
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    except SessionStartFailed as exc:
        # Registered anyway; data flows once a later start succeeds
        response.status_code = status.HTTP_202_ACCEPTED
        return {**_endpoints(channel_id, exc.client_id), "detail": str(exc)}
    return _endpoints(channel_id, client_id)


@app.delete("/api/clients/{client_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unregister_client(client_id: str, relay: Relay = Depends(get_relay)):
    await relay.gateway.on_close(client_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── Server-sent events ────────────────────────────────────────────────────────

async def sse_events(channel_id: str, client_id: str, transport: QueueTransport) -> AsyncIterator[dict]:
    """Drain one client's transport as SSE messages; closing ends the stream."""
    try:
        yield {"data": _hello(channel_id, client_id)}
        async for payload in transport.stream():
            yield {"data": payload.decode("utf-8")}
    finally:
        # Sync close: the gateway's close hook deregisters in its own task.
        transport.close()


@app.get("/api/scoreboard/{channel_id}/events")
async def scoreboard_events(
    channel_id: str,
    client_id: Optional[str] = Query(default=None, alias="clientId"),
    relay: Relay = Depends(get_relay),
):
    if client_id is None:
        try:
            client_id = await relay.gateway.accept(channel_id)
        except SessionStartFailed as exc:
            client_id = exc.client_id

    transport = relay.gateway.transport_of(client_id)
    if transport is None:
        raise HTTPException(404, "Client not found")
    problem = _attach_problem(relay, channel_id, client_id, transport)
    if problem:
        raise HTTPException(409, problem)
    transport.attached = True

    return EventSourceResponse(sse_events(channel_id, client_id, transport))


# ── Status ────────────────────────────────────────────────────────────────────

@app.get("/api/scoreboard/{channel_id}")
async def scoreboard_status(channel_id: str, relay: Relay = Depends(get_relay)):
    return {
        "channel_id": channel_id,
        "status": relay.sessions.status(channel_id).value,
        "subscribers": len(relay.registry.subscribers_of(channel_id)),
        "reference_count": relay.sessions.reference_count(channel_id),
        "state": relay.sessions.snapshot(channel_id),
    }


@app.get("/api/sessions")
async def list_sessions(relay: Relay = Depends(get_relay)):
    return relay.sessions.describe()


@app.get("/api/health")
async def health(relay: Relay = Depends(get_relay)):
    return {
        "ok": True,
        "sessions": len(relay.sessions.describe()),
        "clients": len(relay.registry),
    }


# ── WebSocket live scoreboard ─────────────────────────────────────────────────

@app.websocket("/ws/scoreboard/{channel_id}")
async def ws_scoreboard(websocket: WebSocket, channel_id: str):
    relay: Relay = websocket.app.state.relay
    await websocket.accept()

    client_id = websocket.query_params.get("clientId")
    transport = relay.gateway.transport_of(client_id) if client_id else None
    if transport is not None:
        # Registered over POST; attach to the existing stream
        problem = _attach_problem(relay, channel_id, client_id, transport)
        if problem:
            await websocket.send_json({"kind": "error", "detail": problem})
            await websocket.close(code=1008)
            return
    else:
        try:
            client_id = await relay.gateway.accept(channel_id, client_id)
        except SessionStartFailed as exc:
            client_id = exc.client_id
            await websocket.send_json({"kind": "error", "detail": str(exc)})
        except (DuplicateClient, ValueError) as exc:
            await websocket.send_json({"kind": "error", "detail": str(exc)})
            await websocket.close(code=1008)
            return
        transport = relay.gateway.transport_of(client_id)
        if transport is None:
            await websocket.close()
            return
    transport.attached = True

    async def watch_disconnect() -> None:
        # Inbound frames are ignored; we only care about the disconnect.
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        except Exception as exc:
            log.debug("WebSocket reader for %s ended: %s", client_id, exc)
        finally:
            transport.close()

    watcher = asyncio.create_task(watch_disconnect())
    try:
        await websocket.send_text(_hello(channel_id, client_id))
        async for payload in transport.stream():
            await websocket.send_text(payload.decode("utf-8"))
    except WebSocketDisconnect:
        pass
    except Exception:
        log.exception("WebSocket error for scoreboard %s", channel_id)
    finally:
        watcher.cancel()
        transport.close()
        if websocket.client_state is WebSocketState.CONNECTED:
            try:
                await websocket.close()
            except RuntimeError as exc:
                log.debug("WebSocket for %s already closed: %s", client_id, exc)
