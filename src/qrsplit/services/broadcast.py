from __future__ import annotations

import asyncio
from typing import Any, Optional, Protocol

from qrsplit.db.models import utcnow
from qrsplit.logging import get_logger
from qrsplit.services.presence import ObserverInfo, PresenceTracker


class Observer(Protocol):
    observer_id: str

    async def send(self, event: str, payload: dict[str, Any]) -> None: ...


class Broadcaster:
    def __init__(self, presence: Optional[PresenceTracker] = None, send_timeout: float = 5.0) -> None:
        self.presence = presence or PresenceTracker()
        self._send_timeout = send_timeout
        self._connections: dict[str, Observer] = {}
        self._log = get_logger(__name__)

    def connected(self, session_id: str) -> int:
        return self.presence.count(session_id)

    async def subscribe(
        self,
        session_id: str,
        observer: Observer,
        user_id: Optional[str] = None,
        user_name: Optional[str] = None,
    ) -> ObserverInfo:
        previous = self.presence.session_of(observer.observer_id)
        if previous is not None and previous != session_id:
            await self.unsubscribe(observer.observer_id)

        info = self.presence.subscribe(session_id, observer.observer_id, user_id, user_name)
        self._connections[observer.observer_id] = observer
        self._log.info(
            "realtime.subscribed",
            session_id=session_id,
            observer_id=observer.observer_id,
            user_id=info.user_id,
        )
        await self._emit(
            session_id,
            "user-connected",
            {
                "userId": info.user_id,
                "userName": info.user_name,
                "connectedUsers": self.connected(session_id),
                "timestamp": utcnow().isoformat(),
            },
            exclude=observer.observer_id,
        )
        return info

    async def unsubscribe(self, observer_id: str) -> Optional[ObserverInfo]:
        self._connections.pop(observer_id, None)
        info = self.presence.unsubscribe(observer_id)
        if info is None:
            return None

        self._log.info("realtime.unsubscribed", session_id=info.session_id, observer_id=observer_id)
        await self._emit(
            info.session_id,
            "user-disconnected",
            {
                "userId": info.user_id,
                "userName": info.user_name,
                "connectedUsers": self.connected(info.session_id),
                "timestamp": utcnow().isoformat(),
            },
        )
        return info

    async def publish(self, session_id: str, event: str, payload: dict[str, Any]) -> int:
        self.presence.touch(session_id)
        delivered = await self._emit(session_id, event, payload)
        self._log.info("realtime.published", session_id=session_id, event_name=event, observers=delivered)
        return delivered

    async def send_to(self, observer_id: str, event: str, payload: dict[str, Any]) -> bool:
        observer = self._connections.get(observer_id)
        if observer is None:
            return False
        return await self._deliver(observer, event, payload)

    async def relay(self, observer_id: str, event: str, payload: dict[str, Any]) -> int:
        info = self.presence.observer(observer_id)
        if info is None:
            return 0
        body = {"userId": info.user_id, "userName": info.user_name, "timestamp": utcnow().isoformat(), **payload}
        return await self._emit(info.session_id, event, body, exclude=observer_id)

    async def shutdown(self, message: str = "Server shutting down") -> None:
        payload = {"message": message, "timestamp": utcnow().isoformat()}
        await asyncio.gather(
            *(self._deliver(observer, "server-shutdown", payload) for observer in list(self._connections.values()))
        )

    async def _emit(
        self,
        session_id: str,
        event: str,
        payload: dict[str, Any],
        exclude: Optional[str] = None,
    ) -> int:
        targets = [
            self._connections[member.observer_id]
            for member in self.presence.members_of(session_id)
            if member.observer_id != exclude and member.observer_id in self._connections
        ]
        if not targets:
            return 0
        results = await asyncio.gather(*(self._deliver(observer, event, payload) for observer in targets))
        return sum(1 for ok in results if ok)

    async def _deliver(self, observer: Observer, event: str, payload: dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(observer.send(event, payload), timeout=self._send_timeout)
        except Exception as exc:
            self._log.warning(
                "realtime.observer_failed",
                observer_id=observer.observer_id,
                event_name=event,
                error=repr(exc),
            )
            await self.unsubscribe(observer.observer_id)
            return False
        return True
