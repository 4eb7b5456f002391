"""WebSocket transport for session observers."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from qrsplit.db.models import utcnow
from qrsplit.logging import get_logger
from qrsplit.services.coordinator import MutationCoordinator

router = APIRouter()
log = get_logger(__name__)


class WebSocketObserver:
    def __init__(self, websocket: WebSocket) -> None:
        self.observer_id = uuid4().hex
        self.websocket = websocket
        self._send_lock = asyncio.Lock()

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        async with self._send_lock:
            await self.websocket.send_json({"event": event, "data": payload})


async def handle_message(coordinator: MutationCoordinator, observer: WebSocketObserver, message: Any) -> None:
    if not isinstance(message, dict):
        await observer.send("error", {"message": "Expected a JSON object"})
        return

    event = message.get("event")
    data = message.get("data") or {}

    if event == "join-session":
        session_id = data.get("sessionId") if isinstance(data, dict) else None
        if not session_id:
            await observer.send("error", {"message": "sessionId required"})
            return
        await coordinator.connect_observer(session_id, observer, data.get("userId"), data.get("userName"))
    elif event == "leave-session":
        await coordinator.disconnect_observer(observer.observer_id)
    elif event == "typing-start":
        action = data.get("action", "typing") if isinstance(data, dict) else "typing"
        await coordinator.broadcaster.relay(observer.observer_id, "user-typing", {"action": action})
    elif event == "typing-stop":
        await coordinator.broadcaster.relay(observer.observer_id, "user-stopped-typing", {})
    elif event == "ping":
        await observer.send("pong", {"timestamp": utcnow().isoformat()})
    else:
        await observer.send("error", {"message": f"Unknown event: {event}"})


@router.websocket("/ws")
async def realtime(websocket: WebSocket) -> None:
    coordinator: MutationCoordinator = websocket.app.state.coordinator
    await websocket.accept()
    observer = WebSocketObserver(websocket)
    log.info("realtime.connected", observer_id=observer.observer_id)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                await observer.send("error", {"message": "Malformed JSON"})
                continue
            await handle_message(coordinator, observer, message)
    except WebSocketDisconnect:
        log.info("realtime.disconnected", observer_id=observer.observer_id)
    finally:
        await coordinator.disconnect_observer(observer.observer_id)
