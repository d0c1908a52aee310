
import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .dispatcher import CommandDispatcher
from .errors import InvalidAction, StoreUnavailable, TransportUnavailable
from .models import PumpCommandIn
from .pipeline import IngestionPipeline
from .repos.mongo_repo import MongoRepo
from .settings import Settings, configure_logging
from .state import StateCache
from .transport import TransportLink
from .ws_manager import WSManager

logger = logging.getLogger(__name__)

DEFAULT_HISTORY = 100
MAX_HISTORY = 1000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_app(
    settings: Optional[Settings] = None,
    *,
    store=None,
    transport=None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    device_id = settings.node_id

    app = FastAPI(title="Farm Telemetry Bridge")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- deps
    ws_manager = WSManager()
    cache = StateCache()
    store = store or MongoRepo(
        settings.mongo_uri,
        settings.mongo_db,
        retention_days=settings.retention_days,
        timeout_ms=int(settings.store_timeout * 1000),
    )
    transport = transport or TransportLink(
        settings.mqtt_url,
        telemetry_topic=settings.telemetry_topic,
        command_topic=settings.command_topic,
        username=settings.mqtt_username,
        password=settings.mqtt_password,
        reconnect_min_delay=settings.reconnect_min_delay,
        reconnect_max_delay=settings.reconnect_max_delay,
        command_timeout=settings.command_timeout,
    )
    pipeline = IngestionPipeline(device_id, cache, ws_manager, store, store_timeout=settings.store_timeout)
    transport.set_message_handler(pipeline.handle)
    dispatcher = CommandDispatcher(transport.publish_command, max_auto_off_seconds=settings.max_auto_off_seconds)
    started_at = time.monotonic()

    app.state.settings = settings
    app.state.cache = cache
    app.state.store = store
    app.state.transport = transport
    app.state.pipeline = pipeline
    app.state.dispatcher = dispatcher
    app.state.ws_manager = ws_manager

    # --- startup/shutdown
    @app.on_event("startup")
    async def on_startup():
        # an unreachable store at boot is fatal; let the supervisor restart us
        await asyncio.to_thread(store.ensure_schema)
        logger.info("[store] history store ready")
        transport.start(asyncio.get_running_loop())

    @app.on_event("shutdown")
    async def on_shutdown():
        cancelled = dispatcher.cancel_all()
        if cancelled:
            logger.info("[pump] cancelled %d pending auto-off timer(s)", cancelled)
        await transport.stop()
        store.close()
        logger.info("[shutdown] cleanup complete")

    # --- error mapping
    @app.exception_handler(InvalidAction)
    async def invalid_action(request, exc: InvalidAction):
        return JSONResponse(status_code=400, content={"success": False, "error": "Invalid action"})

    @app.exception_handler(TransportUnavailable)
    async def transport_unavailable(request, exc: TransportUnavailable):
        return JSONResponse(status_code=503, content={"success": False, "error": str(exc)})

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable(request, exc: StoreUnavailable):
        return JSONResponse(status_code=503, content={"success": False, "error": str(exc)})

    # --- REST APIs ---
    @app.get("/health")
    def health():
        last = pipeline.last_message_at
        return {
            "status": "ok",
            "transportConnected": transport.is_connected,
            "storeConnected": store.ping(),
            "lastMessageAt": last.isoformat() if last else None,
            "devices": cache.devices(),
            "uptime": round(time.monotonic() - started_at, 1),
        }

    @app.get("/api/state")
    def current_state():
        return pipeline.latest_event()

    @app.get("/api/history")
    def get_history(limit: int = Query(DEFAULT_HISTORY)):
        if limit < 1:
            limit = DEFAULT_HISTORY
        limit = min(limit, MAX_HISTORY)
        return [r.to_event() for r in store.query_latest(device_id, limit=limit)]

    @app.get("/api/history/range")
    def get_history_range(start: datetime, end: Optional[datetime] = None, limit: Optional[int] = Query(None, ge=1)):
        records = store.query_range(device_id, start, end or _utcnow(), limit=limit)
        return [r.to_event() for r in records]

    @app.get("/api/trends")
    def get_trends(hours: float = Query(24, gt=0, le=24 * 60), bucket: Optional[int] = Query(None, ge=1)):
        end = _utcnow()
        start = end - timedelta(hours=hours)
        if bucket:
            return [b.model_dump(mode="json") for b in store.query_bucketed(device_id, start, end, bucket)]
        return [r.to_event() for r in store.query_range(device_id, start, end)]

    @app.post("/api/pump")
    async def control_pump(body: PumpCommandIn):
        command = await dispatcher.issue_command(device_id, body.action, body.duration)
        return {"success": True, "command": command}

    # --- WebSockets for live UI ---
    @app.websocket("/ws/telemetry")
    async def ws_telemetry(ws: WebSocket):
        await ws_manager.connect(ws, pipeline.latest_event)
        try:
            while True:
                # viewers don't send anything; just keep alive
                await ws.receive_text()
        except WebSocketDisconnect:
            ws_manager.disconnect(ws)

    return app


def run() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
