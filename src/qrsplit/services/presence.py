"""Tracks which observers are connected to which session."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from qrsplit.db.models import utcnow


@dataclass(slots=True)
class ObserverInfo:
    observer_id: str
    session_id: str
    user_id: str
    user_name: str
    connected_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class SessionPresence:
    observers: dict[str, ObserverInfo] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)


class PresenceTracker:
    """
    In-memory membership map: session id -> observers, observer id -> session.

    Only touched from the event loop thread, so methods are synchronous and
    never suspend between reading and writing the maps.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, SessionPresence] = {}
        self._observers: dict[str, ObserverInfo] = {}

    def track(self, session_id: str) -> SessionPresence:
        presence = self._sessions.get(session_id)
        if presence is None:
            presence = SessionPresence()
            self._sessions[session_id] = presence
        return presence

    def touch(self, session_id: str) -> None:
        presence = self._sessions.get(session_id)
        if presence is not None:
            presence.last_activity = utcnow()

    def subscribe(
        self,
        session_id: str,
        observer_id: str,
        user_id: Optional[str] = None,
        user_name: Optional[str] = None,
    ) -> ObserverInfo:
        if observer_id in self._observers:
            self.unsubscribe(observer_id)

        info = ObserverInfo(
            observer_id=observer_id,
            session_id=session_id,
            user_id=user_id or observer_id,
            user_name=user_name or f"User {observer_id[-4:]}",
        )
        presence = self.track(session_id)
        presence.observers[observer_id] = info
        presence.last_activity = info.connected_at
        self._observers[observer_id] = info
        return info

    def unsubscribe(self, observer_id: str) -> Optional[ObserverInfo]:
        info = self._observers.pop(observer_id, None)
        if info is None:
            return None

        presence = self._sessions.get(info.session_id)
        if presence is not None:
            presence.observers.pop(observer_id, None)
            presence.last_activity = utcnow()
            if not presence.observers:
                del self._sessions[info.session_id]
        return info

    def observer(self, observer_id: str) -> Optional[ObserverInfo]:
        return self._observers.get(observer_id)

    def session_of(self, observer_id: str) -> Optional[str]:
        info = self._observers.get(observer_id)
        return info.session_id if info else None

    def members_of(self, session_id: str) -> list[ObserverInfo]:
        presence = self._sessions.get(session_id)
        if presence is None:
            return []
        return list(presence.observers.values())

    def count(self, session_id: str) -> int:
        presence = self._sessions.get(session_id)
        return len(presence.observers) if presence else 0

    def presence_of(self, session_id: str) -> Optional[SessionPresence]:
        return self._sessions.get(session_id)

    def sweep(self, idle: timedelta, now: Optional[datetime] = None) -> list[str]:
        now = now or utcnow()
        evicted = [
            session_id
            for session_id, presence in self._sessions.items()
            if not presence.observers and now - presence.last_activity > idle
        ]
        for session_id in evicted:
            del self._sessions[session_id]
        return evicted

    def stats(self) -> dict[str, int]:
        return {
            "connectedSessions": len(self._sessions),
            "connectedUsers": len(self._observers),
        }

    def sessions(self) -> list[tuple[str, SessionPresence]]:
        return list(self._sessions.items())
