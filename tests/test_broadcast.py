import asyncio

import pytest
from structlog.testing import capture_logs

from qrsplit.services.broadcast import Broadcaster


class RecordingObserver:
    def __init__(self, observer_id: str) -> None:
        self.observer_id = observer_id
        self.events: list[tuple[str, dict]] = []

    async def send(self, event: str, payload: dict) -> None:
        self.events.append((event, payload))

    def named(self, event: str) -> list[dict]:
        return [payload for name, payload in self.events if name == event]


class FailingObserver(RecordingObserver):
    async def send(self, event: str, payload: dict) -> None:
        raise ConnectionResetError("socket closed")


class SlowObserver(RecordingObserver):
    async def send(self, event: str, payload: dict) -> None:
        await asyncio.sleep(1)


@pytest.mark.asyncio
async def test_publish_reaches_only_session_members():
    broadcaster = Broadcaster()
    first = RecordingObserver("a")
    other = RecordingObserver("b")
    await broadcaster.subscribe("s1", first)
    await broadcaster.subscribe("s2", other)

    delivered = await broadcaster.publish("s1", "session-updated", {"type": "item-added"})

    assert delivered == 1
    assert first.named("session-updated") == [{"type": "item-added"}]
    assert other.named("session-updated") == []


@pytest.mark.asyncio
async def test_failing_observer_is_isolated_and_dropped():
    broadcaster = Broadcaster()
    healthy = RecordingObserver("ok")
    broken = FailingObserver("broken")
    await broadcaster.subscribe("s1", healthy)
    await broadcaster.subscribe("s1", broken)

    delivered = await broadcaster.publish("s1", "session-updated", {"n": 1})

    assert delivered == 1
    assert healthy.named("session-updated") == [{"n": 1}]
    assert broadcaster.connected("s1") == 1
    assert broadcaster.presence.session_of("broken") is None


@pytest.mark.asyncio
async def test_slow_observer_times_out():
    broadcaster = Broadcaster(send_timeout=0.05)
    fast = RecordingObserver("fast")
    slow = SlowObserver("slow")
    await broadcaster.subscribe("s1", fast)
    await broadcaster.subscribe("s1", slow)

    delivered = await broadcaster.publish("s1", "session-updated", {"n": 1})

    assert delivered == 1
    assert broadcaster.connected("s1") == 1


@pytest.mark.asyncio
async def test_subscribe_notifies_other_observers():
    broadcaster = Broadcaster()
    first = RecordingObserver("a")
    second = RecordingObserver("b")
    await broadcaster.subscribe("s1", first, user_id="alice", user_name="Alice")
    await broadcaster.subscribe("s1", second, user_id="bob", user_name="Bob")

    joined = first.named("user-connected")
    assert len(joined) == 1
    assert joined[0]["userId"] == "bob"
    assert joined[0]["connectedUsers"] == 2
    assert second.named("user-connected") == []


@pytest.mark.asyncio
async def test_unsubscribe_notifies_and_evicts():
    broadcaster = Broadcaster()
    first = RecordingObserver("a")
    second = RecordingObserver("b")
    await broadcaster.subscribe("s1", first, user_id="alice")
    await broadcaster.subscribe("s1", second, user_id="bob")

    await broadcaster.unsubscribe("b")
    left = first.named("user-disconnected")
    assert left[0]["userId"] == "bob"
    assert left[0]["connectedUsers"] == 1

    await broadcaster.unsubscribe("a")
    assert broadcaster.presence.presence_of("s1") is None
    assert await broadcaster.unsubscribe("a") is None


@pytest.mark.asyncio
async def test_relay_excludes_sender():
    broadcaster = Broadcaster()
    typist = RecordingObserver("a")
    reader = RecordingObserver("b")
    await broadcaster.subscribe("s1", typist, user_id="alice")
    await broadcaster.subscribe("s1", reader, user_id="bob")

    await broadcaster.relay("a", "user-typing", {"action": "adding-item"})

    assert typist.named("user-typing") == []
    typing = reader.named("user-typing")
    assert typing[0]["userId"] == "alice"
    assert typing[0]["action"] == "adding-item"


@pytest.mark.asyncio
async def test_shutdown_notifies_everyone():
    broadcaster = Broadcaster()
    first = RecordingObserver("a")
    second = RecordingObserver("b")
    await broadcaster.subscribe("s1", first)
    await broadcaster.subscribe("s2", second)

    await broadcaster.shutdown("bye")

    assert first.named("server-shutdown")[0]["message"] == "bye"
    assert second.named("server-shutdown")[0]["message"] == "bye"


@pytest.mark.asyncio
async def test_publish_and_failure_logs_name_the_event():
    broadcaster = Broadcaster()
    await broadcaster.subscribe("s1", RecordingObserver("ok"))
    await broadcaster.subscribe("s1", FailingObserver("broken"))

    with capture_logs() as logs:
        await broadcaster.publish("s1", "session-updated", {"n": 1})

    by_event = {entry["event"]: entry for entry in logs}
    assert by_event["realtime.published"]["event_name"] == "session-updated"
    assert by_event["realtime.published"]["observers"] == 1
    assert by_event["realtime.observer_failed"]["event_name"] == "session-updated"
    assert by_event["realtime.observer_failed"]["observer_id"] == "broken"


@pytest.mark.asyncio
async def test_dropped_observer_is_announced_to_peers():
    broadcaster = Broadcaster()
    healthy = RecordingObserver("ok")
    await broadcaster.subscribe("s1", healthy, user_id="alice")
    await broadcaster.subscribe("s1", FailingObserver("broken"), user_id="bob")

    await broadcaster.publish("s1", "session-updated", {"n": 1})

    left = healthy.named("user-disconnected")
    assert len(left) == 1
    assert left[0]["userId"] == "bob"
    assert left[0]["connectedUsers"] == 1
    assert await broadcaster.unsubscribe("broken") is None
