from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import (
    Depends,
    FastAPI,
    HTTPException,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)

from libs.observability.logging import RequestContextMiddleware, configure_logging

from .channels import AlertChannel
from .config import Settings, get_settings
from .engine import AlertEngine
from .metrics import setup_metrics
from .schemas import AlertSnapshotMessage, GapAlertEvent, GapAlertRecord, UnreadCountRead
from .storage import PersistentStore

SERVICE_NAME = "gap-alerts"


class WebSocketManager:
    def __init__(self) -> None:
        self._connections: set[WebSocket] = set()
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.add(websocket)

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._connections.discard(websocket)

    async def broadcast(self, message: AlertSnapshotMessage) -> None:
        payload = message.model_dump(mode="json", by_alias=True)
        async with self._lock:
            connections = list(self._connections)
        for websocket in connections:
            try:
                await websocket.send_json(payload)
            except Exception:  # noqa: BLE001
                await self.disconnect(websocket)


def _snapshot(engine: AlertEngine, change: str | None = None) -> AlertSnapshotMessage:
    return AlertSnapshotMessage(
        change=change,
        active=engine.active_alerts(),
        unread_count=engine.unread_count(),
    )


def create_app(
    settings: Settings | None = None,
    *,
    engine: AlertEngine | None = None,
    store: PersistentStore | None = None,
    channel_factory: Callable[[], AlertChannel] | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(SERVICE_NAME, settings.log_level.upper())
    engine = engine or AlertEngine.from_settings(
        settings,
        store=store,
        channel=channel_factory() if channel_factory is not None else None,
    )
    manager = WebSocketManager()
    pending: set[asyncio.Task[None]] = set()

    def _on_change(change: str) -> None:
        task = asyncio.get_running_loop().create_task(
            manager.broadcast(_snapshot(engine, change))
        )
        pending.add(task)
        task.add_done_callback(pending.discard)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        remove_listener = engine.add_listener(_on_change)
        await engine.start()
        try:
            yield
        finally:
            remove_listener()
            await engine.stop()

    app = FastAPI(title="Gap Alerts", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.alert_engine = engine
    app.state.websocket_manager = manager
    app.add_middleware(RequestContextMiddleware, service_name=SERVICE_NAME)
    setup_metrics(app)

    def get_engine() -> AlertEngine:
        return app.state.alert_engine

    @app.get("/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "engine": "running" if engine.is_running else "idle"}

    @app.get("/alerts/active", response_model=list[GapAlertRecord], tags=["alerts"])
    async def list_active_alerts(
        engine: AlertEngine = Depends(get_engine),
    ) -> list[GapAlertRecord]:
        return engine.active_alerts()

    @app.get("/alerts/history", response_model=list[GapAlertRecord], tags=["alerts"])
    async def list_alert_history(
        engine: AlertEngine = Depends(get_engine),
    ) -> list[GapAlertRecord]:
        return engine.history_alerts()

    @app.get("/alerts/unread-count", response_model=UnreadCountRead, tags=["alerts"])
    async def unread_count(engine: AlertEngine = Depends(get_engine)) -> UnreadCountRead:
        return UnreadCountRead(unread_count=engine.unread_count())

    @app.post(
        "/alerts/read-all", status_code=status.HTTP_204_NO_CONTENT, tags=["alerts"]
    )
    async def mark_all_alerts_read(engine: AlertEngine = Depends(get_engine)) -> Response:
        engine.mark_all_read()
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post(
        "/alerts/{alert_id}/dismiss",
        status_code=status.HTTP_204_NO_CONTENT,
        tags=["alerts"],
    )
    async def dismiss_alert(
        alert_id: str, engine: AlertEngine = Depends(get_engine)
    ) -> Response:
        engine.dismiss(alert_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post(
        "/alerts/{alert_id}/read",
        status_code=status.HTTP_204_NO_CONTENT,
        tags=["alerts"],
    )
    async def mark_alert_read(
        alert_id: str, engine: AlertEngine = Depends(get_engine)
    ) -> Response:
        engine.mark_read(alert_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.delete("/alerts/history", status_code=status.HTTP_204_NO_CONTENT, tags=["alerts"])
    async def clear_alert_history(engine: AlertEngine = Depends(get_engine)) -> Response:
        engine.clear_history()
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post(
        "/events",
        response_model=GapAlertRecord,
        status_code=status.HTTP_201_CREATED,
        tags=["events"],
    )
    async def receive_event(
        event: GapAlertEvent, engine: AlertEngine = Depends(get_engine)
    ) -> GapAlertRecord:
        record = engine.ingest(event)
        if record is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Gap alert rejected",
            )
        return record

    @app.websocket("/alerts/ws")
    async def alerts_ws(websocket: WebSocket) -> None:
        await manager.connect(websocket)
        try:
            await websocket.send_json(_snapshot(engine).model_dump(mode="json", by_alias=True))
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            await manager.disconnect(websocket)

    return app


app = create_app()

__all__ = ["WebSocketManager", "app", "create_app"]
