"""FastAPI application factory."""

from __future__ import annotations

import traceback
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from qrsplit.api import api_router
from qrsplit.config import Settings, get_settings
from qrsplit.db.memory import InMemorySessionStore
from qrsplit.db.repo import Database, PostgresSessionStore
from qrsplit.db.store import SessionStore
from qrsplit.logging import get_logger
from qrsplit.scheduler import setup_scheduler
from qrsplit.services.broadcast import Broadcaster
from qrsplit.services.coordinator import MutationCoordinator
from qrsplit.services.errors import QRSplitError
from qrsplit.services.ledger import HttpLedger, Ledger, MockLedger

log = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[SessionStore] = None,
    ledger: Optional[Ledger] = None,
) -> FastAPI:
    settings = settings or get_settings()

    database: Optional[Database] = None
    if store is None:
        if settings.database_url:
            database = Database(settings.database_url, command_timeout=settings.store_timeout)
            store = PostgresSessionStore(database)
        else:
            store = InMemorySessionStore()

    if ledger is None:
        ledger = HttpLedger(settings.ledger_url, timeout=settings.ledger_timeout) if settings.ledger_url else MockLedger()

    broadcaster = Broadcaster(send_timeout=settings.observer_send_timeout)
    coordinator = MutationCoordinator(store, broadcaster, ledger, settings)
    started_at = datetime.now().astimezone()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if database is not None:
            await database.connect()
        scheduler = setup_scheduler(broadcaster.presence, settings)
        log.info("server.start", store=type(store).__name__, ledger=type(ledger).__name__)
        try:
            yield
        finally:
            await broadcaster.shutdown("Server shutting down, reconnecting automatically")
            scheduler.shutdown(wait=False)
            if database is not None:
                await database.close()
            if isinstance(ledger, HttpLedger):
                await ledger.close()
            log.info("server.stop")

    app = FastAPI(title="QRSplit API", lifespan=lifespan)
    app.state.settings = settings
    app.state.coordinator = coordinator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.exception_handler(QRSplitError)
    async def handle_domain_error(request: Request, exc: QRSplitError) -> JSONResponse:
        log.warning("request.rejected", path=request.url.path, code=exc.code, details=exc.details)
        return JSONResponse(status_code=exc.status_code, content=exc.as_dict())

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        log.error("request.failed", path=request.url.path, error=repr(exc))
        content: dict[str, Any] = {"error": "internal_error", "message": "Internal server error"}
        if settings.debug:
            content["message"] = str(exc)
            content["traceback"] = traceback.format_exception(exc)
        return JSONResponse(status_code=500, content=content)

    app.include_router(api_router)

    @app.get("/")
    async def root() -> dict[str, Any]:
        presence = broadcaster.presence
        return {
            "message": "QRSplit API - realtime split sessions",
            "status": "running",
            "timestamp": datetime.now().astimezone().isoformat(),
            "realtime": {
                **presence.stats(),
                "sessions": [
                    {
                        "sessionId": session_id,
                        "connectedUsers": len(entry.observers),
                        "lastActivity": entry.last_activity.isoformat(),
                    }
                    for session_id, entry in presence.sessions()
                ],
            },
            "splitMethods": ["equal", "proportional"],
            "webLinkTemplate": settings.web_link(":sessionId"),
        }

    @app.get("/health")
    async def health() -> JSONResponse:
        try:
            sessions = await coordinator.count_sessions()
        except QRSplitError as exc:
            return JSONResponse(status_code=500, content={"status": "unhealthy", "error": exc.message})
        return JSONResponse(
            content={
                "status": "healthy",
                "timestamp": datetime.now().astimezone().isoformat(),
                "uptime": (datetime.now().astimezone() - started_at).total_seconds(),
                "database": {"status": "connected", "sessions": sessions},
                "realtime": {"status": "active", **broadcaster.presence.stats()},
            }
        )

    return app
