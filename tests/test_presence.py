from datetime import timedelta

from qrsplit.db.models import utcnow
from qrsplit.services.presence import PresenceTracker


def test_subscribe_and_members():
    tracker = PresenceTracker()
    tracker.subscribe("s1", "obs-1", user_id="alice", user_name="Alice")
    tracker.subscribe("s1", "obs-2")
    tracker.subscribe("s2", "obs-3", user_id="carol")

    assert tracker.count("s1") == 2
    assert {m.observer_id for m in tracker.members_of("s1")} == {"obs-1", "obs-2"}
    assert tracker.session_of("obs-3") == "s2"
    assert tracker.members_of("missing") == []


def test_default_identity_uses_observer_id():
    tracker = PresenceTracker()
    info = tracker.subscribe("s1", "observer-abcd")

    assert info.user_id == "observer-abcd"
    assert info.user_name == "User abcd"


def test_last_unsubscribe_evicts_session_entry():
    tracker = PresenceTracker()
    tracker.subscribe("s1", "obs-1")
    tracker.subscribe("s1", "obs-2")

    tracker.unsubscribe("obs-1")
    assert tracker.presence_of("s1") is not None

    info = tracker.unsubscribe("obs-2")
    assert info is not None and info.session_id == "s1"
    assert tracker.presence_of("s1") is None
    assert tracker.unsubscribe("obs-2") is None


def test_resubscribe_moves_observer():
    tracker = PresenceTracker()
    tracker.subscribe("s1", "obs-1")
    tracker.subscribe("s2", "obs-1")

    assert tracker.count("s1") == 0
    assert tracker.count("s2") == 1
    assert tracker.session_of("obs-1") == "s2"


def test_sweep_evicts_only_idle_empty_sessions():
    tracker = PresenceTracker()
    tracker.track("idle")
    tracker.track("fresh")
    tracker.subscribe("busy", "obs-1")

    tracker.presence_of("idle").last_activity = utcnow() - timedelta(hours=1)
    tracker.presence_of("busy").last_activity = utcnow() - timedelta(hours=1)

    evicted = tracker.sweep(timedelta(minutes=30))

    assert evicted == ["idle"]
    assert tracker.presence_of("fresh") is not None
    assert tracker.presence_of("busy") is not None


def test_stats():
    tracker = PresenceTracker()
    tracker.track("s1")
    tracker.subscribe("s2", "obs-1")

    assert tracker.stats() == {"connectedSessions": 2, "connectedUsers": 1}
