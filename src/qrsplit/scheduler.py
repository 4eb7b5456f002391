from __future__ import annotations

from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from qrsplit.config import Settings
from qrsplit.logging import get_logger
from qrsplit.services.presence import PresenceTracker


def setup_scheduler(presence: PresenceTracker, settings: Settings) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        _presence_sweep_job,
        IntervalTrigger(minutes=settings.presence_sweep_minutes),
        kwargs={"presence": presence, "idle": timedelta(minutes=settings.presence_idle_minutes)},
    )
    scheduler.start()
    return scheduler


async def _presence_sweep_job(presence: PresenceTracker, idle: timedelta) -> None:
    log = get_logger(__name__)
    evicted = presence.sweep(idle)
    for session_id in evicted:
        log.info("presence.evicted", session_id=session_id)
