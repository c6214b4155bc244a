"""
FastAPI control surface for a pairchat session.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set
from urllib.parse import quote

from fastapi import FastAPI, HTTPException, Query, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .. import PairchatConfig
from ..errors import (
    FileTransferAborted,
    InvalidState,
    MediaAccessDenied,
    PairchatError,
    SendFailure,
    SignalingError,
    SignalingParseError,
    TransportUnavailable,
)
from ..session import SessionEvent
from ..supervisor import ConnectionSupervisor
from . import schemas

LOG = logging.getLogger(__name__)

# First match wins; subclasses come before their bases.
ERROR_STATUS = (
    (SignalingParseError, 400),
    (InvalidState, 409),
    (TransportUnavailable, 503),
    (SendFailure, 409),
    (MediaAccessDenied, 424),
    (FileTransferAborted, 409),
    (SignalingError, 502),
)

# High-rate events that may be dropped for a slow client.
DROPPABLE_EVENTS = frozenset({"file-progress"})


def status_for(exc: BaseException) -> int:
    for kind, status in ERROR_STATUS:
        if isinstance(exc, kind):
            return status
    return 500


@dataclass
class OutboundMessage:
    payload: Dict[str, Any]
    allow_drop: bool = False


class EventClient:
    """
    One ``/events`` subscriber.

    A reader task answers client pings and snapshot requests; a writer task
    drains the bounded outbox and pings the client whenever the outbox stays
    idle for ``ping_interval``.  Whichever task finishes first ends the client.
    """

    def __init__(self, hub: "EventHub", websocket: WebSocket, *, queue_size: int) -> None:
        self.hub = hub
        self.websocket = websocket
        self.client_id = uuid.uuid4().hex
        self.outbox: asyncio.Queue[OutboundMessage] = asyncio.Queue(maxsize=queue_size)
        self.last_seen = time.monotonic()
        self._closed = False
        self.logger = LOG.getChild(f"events.{self.client_id[:8]}")

    @property
    def closed(self) -> bool:
        return self._closed

    async def serve(self) -> None:
        try:
            await self.websocket.accept()
        except Exception:  # pragma: no cover - defensive
            self.logger.exception("Could not accept event client")
            return

        await self.hub.register(self)
        await self.push({"type": "init", "payload": self.hub.supervisor.snapshot(), "ts": time.time()})
        tasks = {asyncio.create_task(self._read()), asyncio.create_task(self._write())}
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    self.logger.error("Event client task failed", exc_info=task.exception())
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.hub.unregister(self)
            await self.close()

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closed:
            return
        self._closed = True
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await self.websocket.close(code=code, reason=reason)

    async def push(self, payload: Dict[str, Any], *, allow_drop: bool = False) -> None:
        if self._closed:
            return
        message = OutboundMessage(payload=dict(payload), allow_drop=allow_drop)
        if not allow_drop:
            await self.outbox.put(message)
            return
        try:
            self.outbox.put_nowait(message)
        except asyncio.QueueFull:
            self.logger.debug("Outbox full; dropping %s event", payload.get("type"))

    async def _read(self) -> None:
        while not self._closed:
            try:
                message = await self.websocket.receive_json()
            except WebSocketDisconnect:
                return
            except ValueError:
                self.logger.debug("Ignoring non-JSON client frame")
                continue
            except RuntimeError as exc:
                self.logger.debug("Event socket no longer readable: %s", exc)
                return

            self.last_seen = time.monotonic()
            kind = str(message.get("type") or "").lower() if isinstance(message, dict) else ""
            if kind == "ping":
                await self.push({"type": "pong", "ts": time.time()})
            elif kind == "snapshot":
                await self.push({"type": "snapshot", "payload": self.hub.supervisor.snapshot(), "ts": time.time()})
            elif kind != "pong":
                self.logger.debug("Ignoring client message %r", kind)

    async def _write(self) -> None:
        interval = self.hub.ping_interval or None
        while not self._closed:
            try:
                outbound = await asyncio.wait_for(self.outbox.get(), timeout=interval)
            except asyncio.TimeoutError:
                if time.monotonic() - self.last_seen > self.hub.pong_timeout:
                    self.logger.warning("Event client stopped answering pings; closing")
                    await self.close(code=1011, reason="ping timeout")
                    return
                outbound = OutboundMessage({"type": "ping", "ts": time.time()})
            try:
                await self.websocket.send_json(outbound.payload)
            except WebSocketDisconnect:
                return
            except RuntimeError as exc:
                # Starlette raises RuntimeError once the close frame went out.
                self.logger.debug("Event socket no longer writable: %s", exc)
                return


class EventHub:
    """Fan supervisor events out to every connected ``/events`` client."""

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        *,
        queue_size: int = 256,
        ping_interval: float = 30.0,
        pong_timeout: float = 60.0,
    ) -> None:
        self.supervisor = supervisor
        self.queue_size = max(1, int(queue_size))
        self.ping_interval = max(0.0, float(ping_interval))
        self.pong_timeout = max(self.ping_interval, float(pong_timeout))
        self._clients: Dict[str, EventClient] = {}
        self._lock = asyncio.Lock()
        self._token: Optional[int] = None
        self._deliveries: Set["asyncio.Task[None]"] = set()

    @property
    def running(self) -> bool:
        return self._token is not None

    async def start(self) -> None:
        if self._token is None:
            self._token = self.supervisor.subscribe(self._on_event)

    async def stop(self) -> None:
        if self._token is None:
            return
        self.supervisor.unsubscribe(self._token)
        self._token = None
        async with self._lock:
            clients = list(self._clients.values())
        for client in clients:
            await client.close(code=1001, reason="server shutdown")

    async def serve(self, websocket: WebSocket) -> None:
        await EventClient(self, websocket, queue_size=self.queue_size).serve()

    async def register(self, client: EventClient) -> None:
        async with self._lock:
            self._clients[client.client_id] = client
        LOG.info("Event client %s connected", client.client_id)

    async def unregister(self, client: EventClient) -> None:
        async with self._lock:
            self._clients.pop(client.client_id, None)
        LOG.info("Event client %s disconnected", client.client_id)

    def _on_event(self, event: SessionEvent) -> None:
        delivery = asyncio.ensure_future(
            self.broadcast(event.to_dict(), allow_drop=event.kind in DROPPABLE_EVENTS)
        )
        self._deliveries.add(delivery)
        delivery.add_done_callback(self._deliveries.discard)

    async def broadcast(self, message: Dict[str, Any], *, allow_drop: bool = False) -> None:
        async with self._lock:
            clients = list(self._clients.values())
        results = await asyncio.gather(
            *[client.push(message, allow_drop=allow_drop) for client in clients],
            return_exceptions=True,
        )
        for client, result in zip(clients, results):
            if isinstance(result, Exception):
                LOG.warning("Could not queue event for client %s: %s", client.client_id, result)


def create_app(
    *,
    supervisor: Optional[ConnectionSupervisor] = None,
    config: Optional[PairchatConfig] = None,
    lifespan: Optional[Callable[..., Any]] = None,
) -> FastAPI:
    session_supervisor = supervisor or ConnectionSupervisor(config)
    hub = EventHub(session_supervisor)

    @asynccontextmanager
    async def app_lifespan(app: FastAPI) -> AsyncIterator[None]:
        await hub.start()
        try:
            if lifespan is not None:
                async with lifespan(app):
                    yield
            else:
                yield
        finally:
            await hub.stop()
            try:
                await session_supervisor.shutdown()
            except Exception:  # pragma: no cover - defensive
                LOG.exception("Failed to shut the session down cleanly.")

    app = FastAPI(title="pairchat control API", lifespan=app_lifespan)
    app.state.supervisor = session_supervisor
    app.state.events = hub
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PairchatError)
    async def _pairchat_error(request: Request, exc: PairchatError) -> JSONResponse:
        return JSONResponse(status_code=status_for(exc), content={"detail": str(exc), "code": exc.code})

    @app.websocket("/events")
    async def events_endpoint(websocket: WebSocket) -> None:
        await hub.serve(websocket)

    @app.get("/healthz")
    async def healthz() -> dict:
        return {
            "status": "ok",
            "state": session_supervisor.session.state.value,
            "mode": session_supervisor.mode,
        }

    # ------------------------------------------------------------------ session

    @app.get("/session")
    async def get_session() -> dict:
        return session_supervisor.snapshot()

    @app.post("/session/offer", response_model=schemas.DescriptionResponse)
    async def create_offer() -> schemas.DescriptionResponse:
        description = await session_supervisor.start_direct()
        return schemas.DescriptionResponse(description=description)

    @app.post("/session/answer", response_model=schemas.DescriptionResponse)
    async def create_answer(payload: schemas.DescriptionRequest) -> schemas.DescriptionResponse:
        description = await session_supervisor.generate_answer(payload.description)
        return schemas.DescriptionResponse(description=description)

    @app.post("/session/accept")
    async def accept_answer(payload: schemas.DescriptionRequest) -> dict:
        await session_supervisor.accept_answer(payload.description)
        return session_supervisor.snapshot()

    @app.post("/session/matchmaking")
    async def start_matchmaking() -> dict:
        await session_supervisor.start_matchmaking()
        return session_supervisor.snapshot()

    @app.post("/session/leave")
    async def leave() -> dict:
        await session_supervisor.leave()
        return session_supervisor.snapshot()

    @app.post("/session/next")
    async def next_session() -> dict:
        description = await session_supervisor.next()
        snapshot = session_supervisor.snapshot()
        snapshot["description"] = description
        return snapshot

    @app.put("/session/mode")
    async def set_mode(payload: schemas.ModeRequest) -> dict:
        return {"mode": session_supervisor.set_mode(payload.mode)}

    # ------------------------------------------------------------------ messages and files

    @app.post("/messages")
    async def send_message(payload: schemas.MessageRequest) -> dict:
        await session_supervisor.send_text(payload.text)
        return {"status": "sent", "text": payload.text}

    @app.post("/files", response_model=schemas.FileSentModel)
    async def send_file(
        request: Request,
        name: str = Query(..., min_length=1),
        mime_type: Optional[str] = Query(default=None, alias="mimeType"),
    ) -> schemas.FileSentModel:
        data = await request.body()
        metadata = await session_supervisor.send_file(name, data, mime_type)
        return schemas.FileSentModel(name=metadata.name, size=metadata.size, mimeType=metadata.mime_type)

    @app.get("/files", response_model=List[schemas.FileModel])
    async def list_files() -> List[dict]:
        return [artifact.to_dict() for artifact in session_supervisor.artifacts.values()]

    @app.get("/files/{file_id}")
    async def download_file(file_id: str) -> Response:
        artifact = session_supervisor.artifacts.get(file_id)
        if artifact is None:
            raise HTTPException(status_code=404, detail=f"File '{file_id}' not found")
        return Response(
            content=artifact.data,
            media_type=artifact.mime_type,
            headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(artifact.name)}"},
        )

    @app.get("/transcript")
    async def transcript() -> PlainTextResponse:
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%SZ")
        return PlainTextResponse(
            session_supervisor.export_transcript(),
            headers={"Content-Disposition": f'attachment; filename="chat-{stamp}.txt"'},
        )

    # ------------------------------------------------------------------ calls and media

    @app.post("/call/voice")
    async def start_voice_call() -> dict:
        await session_supervisor.start_voice_call()
        return session_supervisor.snapshot()

    @app.post("/call/video")
    async def start_video_call() -> dict:
        await session_supervisor.start_video_call()
        return session_supervisor.snapshot()

    @app.post("/call/end")
    async def end_call() -> dict:
        await session_supervisor.end_call()
        return session_supervisor.snapshot()

    @app.post("/media/mute", response_model=schemas.ToggleResponse, response_model_exclude_none=True)
    async def toggle_mute() -> schemas.ToggleResponse:
        return schemas.ToggleResponse(muted=await session_supervisor.toggle_mute())

    @app.post("/media/camera", response_model=schemas.ToggleResponse, response_model_exclude_none=True)
    async def toggle_camera() -> schemas.ToggleResponse:
        return schemas.ToggleResponse(cameraOff=await session_supervisor.toggle_camera())

    @app.post("/media/screen", response_model=schemas.ToggleResponse, response_model_exclude_none=True)
    async def toggle_screen() -> schemas.ToggleResponse:
        return schemas.ToggleResponse(sharing=await session_supervisor.toggle_screen_share())

    # ------------------------------------------------------------------ settings

    @app.get("/settings/pools", response_model=schemas.PoolsResponse)
    async def get_pools() -> schemas.PoolsResponse:
        store = session_supervisor.pools
        return schemas.PoolsResponse(pools=store.load(), raw=store.raw())

    @app.put("/settings/pools", response_model=schemas.PoolsResponse)
    async def put_pools(payload: schemas.PoolsRequest) -> schemas.PoolsResponse:
        store = session_supervisor.pools
        pools = store.save(payload.pools)
        return schemas.PoolsResponse(pools=pools, raw=store.raw())

    @app.post("/settings/pools/restore", response_model=schemas.PoolsResponse)
    async def restore_pools() -> schemas.PoolsResponse:
        store = session_supervisor.pools
        pools = store.restore_defaults()
        return schemas.PoolsResponse(pools=pools, raw=store.raw())

    return app


__all__ = ["EventClient", "EventHub", "create_app", "status_for"]
