from __future__ import annotations

from typing import AsyncContextManager, Iterable, Optional, Protocol

from qrsplit.db.models import Item, Participant, Payment, PaymentStatus, Session, SessionSnapshot, SessionStatus


class SessionStore(Protocol):
    """Persistence contract consumed by the mutation coordinator."""

    def transaction(self) -> AsyncContextManager[None]: ...

    async def get_session(self, session_id: str) -> Optional[SessionSnapshot]: ...

    async def create_session(
        self,
        session_id: str,
        merchant_id: str,
        merchant_wallet: Optional[str],
        created_by: Optional[str],
    ) -> Session: ...

    async def get_item(self, session_id: str, item_id: str) -> Optional[Item]: ...

    async def create_item(
        self,
        session_id: str,
        name: str,
        amount: float,
        tax: float,
        tip: float,
        assignees: Iterable[str],
    ) -> Item: ...

    async def update_item_assignees(
        self,
        session_id: str,
        item_id: str,
        assignees: Iterable[str],
    ) -> Optional[Item]: ...

    async def find_participant(
        self,
        session_id: str,
        *,
        user_id: Optional[str] = None,
        wallet_address: Optional[str] = None,
    ) -> Optional[Participant]: ...

    async def create_participant(
        self,
        session_id: str,
        user_id: str,
        name: Optional[str],
        wallet_address: Optional[str],
        added_by: Optional[str],
        is_operator: bool,
    ) -> Participant: ...

    async def update_participant(
        self,
        participant_id: str,
        *,
        wallet_address: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Participant: ...

    async def increment_session_total(self, session_id: str, delta: float) -> Session: ...

    async def increment_participants_count(self, session_id: str) -> Session: ...

    async def set_merchant_wallet(self, session_id: str, wallet_address: str) -> Session: ...

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
    ) -> Payment: ...

    async def set_session_status(self, session_id: str, status: SessionStatus) -> Session: ...

    async def count_sessions(self) -> int: ...
