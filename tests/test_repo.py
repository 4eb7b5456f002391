import copy
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import pytest

from qrsplit.db.models import PaymentStatus, SessionStatus
from qrsplit.db.repo import PostgresSessionStore
from qrsplit.services.errors import SessionNotFound
from qrsplit.services.split import split_session

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def session_row(**overrides):
    row = {
        "session_id": "s1",
        "merchant_id": "m",
        "merchant_wallet": "0xshop",
        "created_by": "alice",
        "status": "active",
        "total_amount": 12.5,
        "participants_count": 1,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


class DummyDB:
    def __init__(self, rows=None, row=None, value=None):
        self.rows = rows or {}
        self.row = row
        self.value = value
        self.calls = []

    @asynccontextmanager
    async def transaction(self, isolation=None, readonly=False):
        self.calls.append(("transaction", isolation, readonly))
        yield

    async def fetch(self, query, *args):
        self.calls.append(("fetch", query, args))
        for table, rows in self.rows.items():
            if f"FROM {table}" in query:
                return rows
        return []

    async def fetchrow(self, query, *args):
        self.calls.append(("fetchrow", query, args))
        return self.row

    async def fetchval(self, query, *args):
        self.calls.append(("fetchval", query, args))
        return self.value


@pytest.mark.asyncio
async def test_get_session_maps_rows():
    db = DummyDB(
        row=session_row(),
        rows={
            "participants": [
                {
                    "id": "p1",
                    "session_id": "s1",
                    "user_id": "u1",
                    "name": "Ann",
                    "wallet_address": "0xabc",
                    "added_by": "u1",
                    "is_operator": False,
                    "created_at": NOW,
                }
            ],
            "items": [
                {
                    "id": "i1",
                    "session_id": "s1",
                    "name": "Soup",
                    "amount": 10.0,
                    "tax": 2.0,
                    "tip": 0.5,
                    "assignees": '["p1"]',
                    "created_at": NOW,
                }
            ],
            "payments": [
                {
                    "id": "pay1",
                    "session_id": "s1",
                    "participant_id": "p1",
                    "from_address": "0xabc",
                    "to_address": "0xshop",
                    "amount": 12.5,
                    "token_address": "eth",
                    "status": "success",
                    "tx_hash": "0x01",
                    "created_at": NOW,
                }
            ],
        },
    )
    store = PostgresSessionStore(db)  # type: ignore[arg-type]

    snapshot = await store.get_session("s1")

    assert snapshot.session.status == SessionStatus.ACTIVE
    assert snapshot.participants[0].wallet_address == "0xabc"
    assert snapshot.items[0].assignees == frozenset({"p1"})
    assert snapshot.items[0].total == 12.5
    assert snapshot.payments[0].status == PaymentStatus.SUCCESS
    assert snapshot.paid_participant_ids() == {"p1"}


@pytest.mark.asyncio
async def test_get_session_missing_returns_none():
    db = DummyDB(row=None)
    store = PostgresSessionStore(db)  # type: ignore[arg-type]

    assert await store.get_session("missing") is None
    assert [call[0] for call in db.calls] == ["transaction", "fetchrow"]


@pytest.mark.asyncio
async def test_increment_total_is_relative():
    db = DummyDB(row=session_row(total_amount=20.0))
    store = PostgresSessionStore(db)  # type: ignore[arg-type]

    session = await store.increment_session_total("s1", 7.5)

    _, query, args = db.calls[-1]
    assert "total_amount = total_amount + $1" in query
    assert "WHERE session_id = $2" in query
    assert args == (7.5, "s1")
    assert session.total_amount == 20.0


@pytest.mark.asyncio
async def test_update_missing_session_raises():
    store = PostgresSessionStore(DummyDB(row=None))  # type: ignore[arg-type]

    with pytest.raises(SessionNotFound):
        await store.set_session_status("missing", SessionStatus.COMPLETED)


@pytest.mark.asyncio
async def test_find_participant_without_keys_skips_query():
    db = DummyDB()
    store = PostgresSessionStore(db)  # type: ignore[arg-type]

    assert await store.find_participant("s1") is None
    assert db.calls == []


@pytest.mark.asyncio
async def test_count_sessions():
    store = PostgresSessionStore(DummyDB(value=3))  # type: ignore[arg-type]
    assert await store.count_sessions() == 3


def item_row(item_id, amount):
    return {
        "id": item_id,
        "session_id": "s1",
        "name": item_id,
        "amount": amount,
        "tax": 0.0,
        "tip": 0.0,
        "assignees": "[]",
        "created_at": NOW,
    }


class SnapshotDB:
    """Serves reads from the state captured when a transaction begins."""

    def __init__(self, state, concurrent_write):
        self.live = state
        self.view = None
        self.transactions = []
        self.concurrent_write = concurrent_write

    @asynccontextmanager
    async def transaction(self, isolation=None, readonly=False):
        self.transactions.append((isolation, readonly))
        self.view = copy.deepcopy(self.live)
        try:
            yield
        finally:
            self.view = None

    def _state(self):
        return self.view if self.view is not None else self.live

    async def fetchrow(self, query, *args):
        row = self._state()["sessions"]
        self.concurrent_write(self.live)
        return row

    async def fetch(self, query, *args):
        for table in ("participants", "items", "payments"):
            if f"FROM {table}" in query:
                return self._state()[table]
        return []


@pytest.mark.asyncio
async def test_get_session_reads_one_snapshot():
    def add_item(live):
        live["items"].append(item_row("i2", 10.0))
        live["sessions"] = session_row(total_amount=20.0)

    db = SnapshotDB(
        {
            "sessions": session_row(total_amount=10.0),
            "participants": [
                {
                    "id": "p1",
                    "session_id": "s1",
                    "user_id": "u1",
                    "name": "Ann",
                    "wallet_address": None,
                    "added_by": "u1",
                    "is_operator": False,
                    "created_at": NOW,
                }
            ],
            "items": [item_row("i1", 10.0)],
            "payments": [],
        },
        concurrent_write=add_item,
    )
    store = PostgresSessionStore(db)  # type: ignore[arg-type]

    snapshot = await store.get_session("s1")

    assert db.transactions == [("repeatable_read", True)]
    assert snapshot.session.total_amount == 10.0
    assert [item.id for item in snapshot.items] == ["i1"]
    splits = split_session(snapshot)
    assert splits.reconciled is True
    assert splits.difference == 0.0
