"""In-process session store used for development and tests."""

from __future__ import annotations

from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import replace
from typing import AsyncIterator, Callable, Iterable, Optional
from uuid import uuid4

from qrsplit.db.models import (
    Item,
    Participant,
    Payment,
    PaymentStatus,
    Session,
    SessionSnapshot,
    SessionStatus,
    utcnow,
)
from qrsplit.logging import get_logger
from qrsplit.services.errors import SessionNotFound

UndoJournal = list[Callable[[], None]]


class InMemorySessionStore:
    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._participants: dict[str, Participant] = {}
        self._items: dict[str, Item] = {}
        self._payments: dict[str, Payment] = {}
        self._journal: ContextVar[Optional[UndoJournal]] = ContextVar(f"journal-{id(self)}", default=None)
        self._log = get_logger(__name__)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._journal.get() is not None:
            yield
            return

        journal: UndoJournal = []
        token = self._journal.set(journal)
        try:
            yield
        except BaseException:
            for undo in reversed(journal):
                undo()
            self._log.info("store.rollback", steps=len(journal))
            raise
        finally:
            self._journal.reset(token)

    def _record(self, undo: Callable[[], None]) -> None:
        journal = self._journal.get()
        if journal is not None:
            journal.append(undo)

    def _insert(self, table: dict, key: str, value: object) -> None:
        table[key] = value
        self._record(lambda: table.pop(key, None))

    def _overwrite(self, table: dict, key: str, value: object) -> None:
        previous = table[key]
        table[key] = value

        def undo() -> None:
            table[key] = previous

        self._record(undo)

    def _require_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def get_session(self, session_id: str) -> Optional[SessionSnapshot]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        return SessionSnapshot(
            session=replace(session),
            participants=[replace(p) for p in self._participants.values() if p.session_id == session_id],
            items=[replace(i) for i in self._items.values() if i.session_id == session_id],
            payments=[replace(p) for p in self._payments.values() if p.session_id == session_id],
        )

    async def create_session(
        self,
        session_id: str,
        merchant_id: str,
        merchant_wallet: Optional[str],
        created_by: Optional[str],
    ) -> Session:
        session = Session(
            session_id=session_id,
            merchant_id=merchant_id,
            merchant_wallet=merchant_wallet,
            created_by=created_by,
        )
        self._insert(self._sessions, session_id, session)
        return replace(session)

    async def get_item(self, session_id: str, item_id: str) -> Optional[Item]:
        item = self._items.get(item_id)
        if item is None or item.session_id != session_id:
            return None
        return replace(item)

    async def create_item(
        self,
        session_id: str,
        name: str,
        amount: float,
        tax: float,
        tip: float,
        assignees: Iterable[str],
    ) -> Item:
        self._require_session(session_id)
        item = Item(
            id=uuid4().hex,
            session_id=session_id,
            name=name,
            amount=amount,
            tax=tax,
            tip=tip,
            assignees=frozenset(assignees),
        )
        self._insert(self._items, item.id, item)
        return replace(item)

    async def update_item_assignees(
        self,
        session_id: str,
        item_id: str,
        assignees: Iterable[str],
    ) -> Optional[Item]:
        item = self._items.get(item_id)
        if item is None or item.session_id != session_id:
            return None
        updated = replace(item, assignees=frozenset(assignees))
        self._overwrite(self._items, item_id, updated)
        return replace(updated)

    async def find_participant(
        self,
        session_id: str,
        *,
        user_id: Optional[str] = None,
        wallet_address: Optional[str] = None,
    ) -> Optional[Participant]:
        for participant in self._participants.values():
            if participant.session_id != session_id:
                continue
            if wallet_address and participant.wallet_address == wallet_address:
                return replace(participant)
            if user_id and participant.user_id == user_id:
                return replace(participant)
        return None

    async def create_participant(
        self,
        session_id: str,
        user_id: str,
        name: Optional[str],
        wallet_address: Optional[str],
        added_by: Optional[str],
        is_operator: bool,
    ) -> Participant:
        self._require_session(session_id)
        participant = Participant(
            id=uuid4().hex,
            session_id=session_id,
            user_id=user_id,
            name=name,
            wallet_address=wallet_address,
            added_by=added_by,
            is_operator=is_operator,
        )
        self._insert(self._participants, participant.id, participant)
        return replace(participant)

    async def update_participant(
        self,
        participant_id: str,
        *,
        wallet_address: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Participant:
        participant = self._participants[participant_id]
        updated = replace(
            participant,
            wallet_address=wallet_address if wallet_address is not None else participant.wallet_address,
            name=name if name is not None else participant.name,
        )
        self._overwrite(self._participants, participant_id, updated)
        return replace(updated)

    async def _update_session(self, session_id: str, **changes: object) -> Session:
        session = self._require_session(session_id)
        updated = replace(session, updated_at=utcnow(), **changes)
        self._overwrite(self._sessions, session_id, updated)
        return replace(updated)

    async def increment_session_total(self, session_id: str, delta: float) -> Session:
        previous = self._require_session(session_id).total_amount
        return await self._update_session(session_id, total_amount=previous + delta)

    async def increment_participants_count(self, session_id: str) -> Session:
        previous = self._require_session(session_id).participants_count
        return await self._update_session(session_id, participants_count=previous + 1)

    async def set_merchant_wallet(self, session_id: str, wallet_address: str) -> Session:
        return await self._update_session(session_id, merchant_wallet=wallet_address)

    async def create_payment(
        self,
        session_id: str,
        participant_id: str,
        from_address: str,
        to_address: str,
        amount: float,
        token_address: str,
        status: PaymentStatus,
        tx_hash: Optional[str],
    ) -> Payment:
        self._require_session(session_id)
        payment = Payment(
            id=uuid4().hex,
            session_id=session_id,
            participant_id=participant_id,
            from_address=from_address,
            to_address=to_address,
            amount=amount,
            token_address=token_address,
            status=status,
            tx_hash=tx_hash,
        )
        self._insert(self._payments, payment.id, payment)
        return replace(payment)

    async def set_session_status(self, session_id: str, status: SessionStatus) -> Session:
        return await self._update_session(session_id, status=status)

    async def count_sessions(self) -> int:
        return len(self._sessions)
