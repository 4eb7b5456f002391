"""
Read-modify-broadcast orchestration for every session mutation.

Each mutation runs under a per-session lock: validate, write inside a store
transaction, reload the session, compute the split, publish to observers and
return the same payload to the caller. Publishing happens while the lock is
held, so observers of one session receive updates in mutation order.
"""

from __future__ import annotations

import asyncio
import math
import secrets
import string
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Iterable, Optional, TypeVar

from qrsplit.config import Settings, get_settings
from qrsplit.db.models import (
    Item,
    Participant,
    PaymentStatus,
    Session,
    SessionSnapshot,
    SessionStatus,
    utcnow,
)
from qrsplit.db.store import SessionStore
from qrsplit.logging import get_logger
from qrsplit.services.broadcast import Broadcaster, Observer
from qrsplit.services.errors import (
    DuplicatePayment,
    IncompletePayment,
    InvalidAmount,
    InvalidInput,
    ItemNotFound,
    LedgerUnavailable,
    MerchantWalletNotConfigured,
    ParticipantNotFound,
    SessionNotFound,
    StoreUnavailable,
)
from qrsplit.services.ledger import Ledger, Receipt
from qrsplit.services.payloads import (
    item_dict,
    observer_dict,
    participant_dict,
    payment_dict,
    snapshot_dict,
    split_dict,
)
from qrsplit.services.split import SplitMethod, SplitResult, split_session
from qrsplit.utils.parse import normalize_amount, normalize_wallet

T = TypeVar("T")

SESSION_ID_ALPHABET = string.ascii_lowercase + string.digits
UPDATE_EVENT = "session-updated"
SYNC_EVENT = "session-sync"


def generate_session_id() -> str:
    suffix = "".join(secrets.choice(SESSION_ID_ALPHABET) for _ in range(9))
    return f"session_{int(time.time() * 1000)}_{suffix}"


@dataclass(slots=True)
class MutationResult:
    type: str
    snapshot: SessionSnapshot
    splits: Optional[SplitResult]
    data: dict[str, Any] = field(default_factory=dict)
    connected_users: int = 0
    timestamp: datetime = field(default_factory=utcnow)

    def as_payload(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "session": snapshot_dict(self.snapshot),
            "splits": split_dict(self.splits),
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "connectedUsers": self.connected_users,
        }


class SessionLocks:
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._holders[session_id] = self._holders.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[session_id] -= 1
            if self._holders[session_id] == 0:
                del self._holders[session_id]
                del self._locks[session_id]

    def __len__(self) -> int:
        return len(self._locks)


class MutationCoordinator:
    def __init__(
        self,
        store: SessionStore,
        broadcaster: Broadcaster,
        ledger: Ledger,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.ledger = ledger
        self.settings = settings or get_settings()
        self.locks = SessionLocks()
        self._log = get_logger(__name__)

    # -- infrastructure -------------------------------------------------

    async def _store(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.settings.store_timeout)
        except asyncio.TimeoutError as exc:
            self._log.warning("store.timeout", timeout=self.settings.store_timeout)
            raise StoreUnavailable("Store operation timed out", timeout=self.settings.store_timeout) from exc

    async def _load(self, session_id: str) -> SessionSnapshot:
        snapshot = await self._store(self.store.get_session(session_id))
        if snapshot is None:
            raise SessionNotFound(session_id)
        return snapshot

    async def _commit(
        self,
        session_id: str,
        mutation: str,
        data: dict[str, Any],
        method: SplitMethod = SplitMethod.PROPORTIONAL,
    ) -> MutationResult:
        snapshot = await self._load(session_id)
        splits = split_session(snapshot, method) if snapshot.participants else None
        result = MutationResult(
            type=mutation,
            snapshot=snapshot,
            splits=splits,
            data=data,
            connected_users=self.broadcaster.connected(session_id),
        )
        await self.broadcaster.publish(session_id, UPDATE_EVENT, result.as_payload())
        self._log.info("session.mutated", session_id=session_id, type=mutation, observers=result.connected_users)
        return result

    # -- sessions -------------------------------------------------------

    async def create_session(
        self,
        merchant_id: Optional[str] = None,
        merchant_wallet: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> MutationResult:
        session_id = generate_session_id()
        wallet = normalize_wallet(merchant_wallet)
        async with self.locks.hold(session_id):
            await self._store(
                self.store.create_session(session_id, merchant_id or "default_merchant", wallet, created_by)
            )
            self.broadcaster.presence.track(session_id)
            self._log.info("session.created", session_id=session_id, merchant_wallet=wallet)
            return await self._commit(
                session_id,
                "session-created",
                {
                    "webLink": self.settings.web_link(session_id),
                    "qrCode": f"qrsplit://session/{session_id}",
                },
            )

    async def set_merchant_wallet(
        self,
        session_id: str,
        wallet_address: Optional[str],
        user_id: Optional[str] = None,
    ) -> MutationResult:
        wallet = normalize_wallet(wallet_address)
        if wallet is None:
            raise InvalidInput("Wallet address required", received=wallet_address)

        async with self.locks.hold(session_id):
            await self._load(session_id)
            await self._store(self.store.set_merchant_wallet(session_id, wallet))
            return await self._commit(
                session_id,
                "merchant-wallet-configured",
                {"merchantWallet": wallet, "userId": user_id, "message": "Merchant wallet configured"},
            )

    async def finalize_session(self, session_id: str) -> MutationResult:
        async with self.locks.hold(session_id):
            snapshot = await self._load(session_id)
            participant_ids = {p.id for p in snapshot.participants}
            paid = len(snapshot.paid_participant_ids() & participant_ids)
            total = len(participant_ids)
            if paid != total:
                raise IncompletePayment(paid=paid, total=total)

            await self._store(self.store.set_session_status(session_id, SessionStatus.COMPLETED))
            total_collected = sum(p.amount for p in snapshot.successful_payments())
            return await self._commit(
                session_id,
                "session-finalized",
                {"totalCollected": total_collected, "message": "Session completed, all payments processed"},
            )

    # -- participants ---------------------------------------------------

    async def join_session(
        self,
        session_id: str,
        user_id: Optional[str] = None,
        name: Optional[str] = None,
        wallet_address: Optional[str] = None,
        added_by: Optional[str] = None,
        is_operator: bool = False,
    ) -> MutationResult:
        user_id = (user_id or "").strip() or f"user_{int(time.time() * 1000)}"
        wallet = normalize_wallet(wallet_address)

        async with self.locks.hold(session_id):
            await self._load(session_id)
            existing = await self._store(self.store.find_participant(session_id, user_id=user_id))
            if existing is not None:
                participant = await self._store(
                    self.store.update_participant(existing.id, wallet_address=wallet, name=name)
                )
                return await self._commit(
                    session_id,
                    "wallet-updated",
                    {"participant": participant_dict(participant), "rejoined": True},
                )

            participant = await self._store(
                self._create_participant(session_id, user_id, name, wallet, added_by or user_id, is_operator)
            )
            return await self._commit(
                session_id,
                "participant-joined",
                {
                    "participant": participant_dict(participant),
                    "message": f"{participant.display_name} joined the session",
                },
            )

    async def update_participant_wallet(
        self,
        session_id: str,
        user_id: str,
        wallet_address: Optional[str],
        name: Optional[str] = None,
    ) -> MutationResult:
        wallet = normalize_wallet(wallet_address)
        if wallet is None:
            raise InvalidInput("Wallet address required", received=wallet_address)

        async with self.locks.hold(session_id):
            await self._load(session_id)
            existing = await self._store(self.store.find_participant(session_id, user_id=user_id))
            if existing is None:
                participant = await self._store(
                    self._create_participant(session_id, user_id, name, wallet, user_id, False)
                )
                return await self._commit(
                    session_id,
                    "participant-joined",
                    {
                        "participant": participant_dict(participant),
                        "message": f"{participant.display_name} joined the session",
                    },
                )

            participant = await self._store(self.store.update_participant(existing.id, wallet_address=wallet))
            return await self._commit(
                session_id,
                "wallet-updated",
                {
                    "participant": participant_dict(participant),
                    "message": f"{participant.display_name} connected a wallet",
                },
            )

    async def _create_participant(
        self,
        session_id: str,
        user_id: str,
        name: Optional[str],
        wallet: Optional[str],
        added_by: Optional[str],
        is_operator: bool,
    ) -> Participant:
        async with self.store.transaction():
            participant = await self.store.create_participant(
                session_id, user_id, name, wallet, added_by, is_operator
            )
            await self.store.increment_participants_count(session_id)
        return participant

    # -- items ----------------------------------------------------------

    async def add_item(
        self,
        session_id: str,
        name: str,
        amount: Any,
        tax: Any = None,
        tip: Any = None,
        assignees: Optional[Iterable[str]] = None,
    ) -> MutationResult:
        processed = normalize_amount(amount)
        if processed <= 0:
            self._log.warning("item.invalid_amount", session_id=session_id, received=amount, processed=processed)
            raise InvalidAmount(received=amount, processed=processed)
        item_tax = normalize_amount(tax)
        item_tip = normalize_amount(tip)
        assigned = frozenset(str(a) for a in assignees or ())
        delta = processed + item_tax + item_tip
        if not math.isfinite(delta):
            raise InvalidAmount(received=amount, processed=delta)

        async with self.locks.hold(session_id):
            snapshot = await self._load(session_id)
            previous_total = snapshot.session.total_amount
            if not math.isfinite(previous_total + delta):
                raise InvalidAmount(received=amount, processed=delta)
            item, session = await self._store(
                self._insert_item(session_id, name, processed, item_tax, item_tip, assigned, delta)
            )
            self._log.info(
                "item.added",
                session_id=session_id,
                item_id=item.id,
                item_total=delta,
                previous_total=previous_total,
                new_total=session.total_amount,
            )
            return await self._commit(
                session_id,
                "item-added",
                {
                    "item": item_dict(item),
                    "previousTotal": previous_total,
                    "newTotal": session.total_amount,
                    "message": f"{name} added for {processed:.2f}",
                    "debug": {
                        "originalAmount": amount,
                        "processedAmount": processed,
                        "totalCalculated": delta,
                    },
                },
            )

    async def _insert_item(
        self,
        session_id: str,
        name: str,
        amount: float,
        tax: float,
        tip: float,
        assignees: frozenset[str],
        delta: float,
    ) -> tuple[Item, Session]:
        async with self.store.transaction():
            item = await self.store.create_item(session_id, name, amount, tax, tip, assignees)
            session = await self.store.increment_session_total(session_id, delta)
        return item, session

    async def update_item_assignees(
        self,
        session_id: str,
        item_id: str,
        assignees: Optional[Iterable[str]],
    ) -> MutationResult:
        if not item_id or not item_id.strip():
            raise InvalidInput(f"Invalid item id: {item_id!r}", received=item_id)
        assigned = frozenset(str(a) for a in assignees or ())

        async with self.locks.hold(session_id):
            await self._load(session_id)
            previous = await self._store(self.store.get_item(session_id, item_id))
            if previous is None:
                raise ItemNotFound(session_id, item_id)
            item = await self._store(self.store.update_item_assignees(session_id, item_id, assigned))
            if item is None:
                raise ItemNotFound(session_id, item_id)
            return await self._commit(
                session_id,
                "item-assignees-updated",
                {
                    "item": item_dict(item),
                    "previousAssignees": sorted(previous.assignees),
                    "newAssignees": sorted(item.assignees),
                    "message": f"Assignees updated for {item.name}",
                },
            )

    # -- payments -------------------------------------------------------

    async def register_payment(
        self,
        session_id: str,
        amount: Any,
        user_id: Optional[str] = None,
        wallet_address: Optional[str] = None,
        token_address: Optional[str] = None,
    ) -> MutationResult:
        wallet = normalize_wallet(wallet_address)
        user_id = str(user_id).strip() if user_id else None
        processed = normalize_amount(amount)
        token = (token_address or self.settings.token_address).lower()
        if processed <= 0:
            raise InvalidAmount(received=amount, processed=processed)

        async with self.locks.hold(session_id):
            snapshot = await self._load(session_id)
            merchant_wallet = snapshot.session.merchant_wallet
            if not merchant_wallet:
                raise MerchantWalletNotConfigured(session_id)

            participant = None
            if wallet or user_id:
                participant = await self._store(
                    self.store.find_participant(session_id, user_id=user_id, wallet_address=wallet)
                )
            if participant is None:
                self._log.warning(
                    "payment.participant_not_found", session_id=session_id, user_id=user_id, wallet=wallet
                )
                raise ParticipantNotFound(session_id, user_id, wallet)

            for payment in snapshot.successful_payments():
                if payment.participant_id == participant.id:
                    raise DuplicatePayment(participant.id, payment.tx_hash)

            from_address = wallet or participant.wallet_address or "unknown"
            receipt = await self._pay(from_address, merchant_wallet, processed, token)
            payment = await self._store(
                self.store.create_payment(
                    session_id,
                    participant.id,
                    from_address,
                    merchant_wallet,
                    processed,
                    token,
                    PaymentStatus.SUCCESS,
                    receipt.tx_hash,
                )
            )
            self._log.info(
                "payment.registered",
                session_id=session_id,
                participant_id=participant.id,
                amount=processed,
                tx_hash=receipt.tx_hash,
            )
            return await self._commit(
                session_id,
                "payment-made",
                {
                    "payment": payment_dict(payment),
                    "participant": {
                        "id": participant.id,
                        "name": participant.name,
                        "userId": participant.user_id,
                    },
                    "merchantWallet": merchant_wallet,
                    "txHash": receipt.tx_hash,
                    "message": f"{participant.display_name} paid {processed:.2f}",
                },
            )

    async def _pay(self, from_address: str, to_address: str, amount: float, token: str) -> Receipt:
        try:
            return await asyncio.wait_for(
                self.ledger.pay(from_address, to_address, amount, token),
                timeout=self.settings.ledger_timeout,
            )
        except asyncio.TimeoutError as exc:
            self._log.warning("ledger.timeout", timeout=self.settings.ledger_timeout)
            raise LedgerUnavailable("Ledger call timed out", timeout=self.settings.ledger_timeout) from exc

    # -- splits and reads -----------------------------------------------

    async def calculate_splits(self, session_id: str, method: SplitMethod = SplitMethod.PROPORTIONAL) -> MutationResult:
        async with self.locks.hold(session_id):
            await self._load(session_id)
            return await self._commit(
                session_id,
                "splits-calculated",
                {"method": method.value, "message": f"Split calculated using {method.value} method"},
                method=method,
            )

    async def get_splits(self, session_id: str, method: SplitMethod = SplitMethod.PROPORTIONAL) -> SplitResult:
        snapshot = await self._load(session_id)
        return split_session(snapshot, method)

    async def get_session(self, session_id: str) -> dict[str, Any]:
        snapshot = await self._load(session_id)
        connected = self.broadcaster.connected(session_id)
        body = snapshot_dict(snapshot)
        body["realtime"] = {"connectedUsers": connected, "isActive": connected > 0}
        return body

    async def payment_status(self, session_id: str) -> dict[str, Any]:
        snapshot = await self._load(session_id)
        successful = snapshot.successful_payments()
        by_participant = {}
        for payment in successful:
            by_participant.setdefault(payment.participant_id, payment)

        participants = []
        for participant in snapshot.participants:
            payment = by_participant.get(participant.id)
            participants.append(
                {
                    "participantId": participant.id,
                    "userId": participant.user_id,
                    "name": participant.name,
                    "walletAddress": participant.wallet_address,
                    "hasPaid": payment is not None,
                    "amount": payment.amount if payment else 0,
                    "txHash": payment.tx_hash if payment else None,
                    "paidAt": payment.created_at.isoformat() if payment else None,
                }
            )

        total = len(snapshot.participants)
        paid = sum(1 for p in participants if p["hasPaid"])
        return {
            "sessionId": session_id,
            "merchantWallet": snapshot.session.merchant_wallet,
            "status": snapshot.session.status.value,
            "totalParticipants": total,
            "paidParticipants": paid,
            "totalCollected": sum(p.amount for p in successful),
            "totalAmount": snapshot.session.total_amount,
            "isFullyPaid": total > 0 and paid == total,
            "participants": participants,
        }

    async def count_sessions(self) -> int:
        return await self._store(self.store.count_sessions())

    def connected_users(self, session_id: str) -> dict[str, Any]:
        presence = self.broadcaster.presence.presence_of(session_id)
        if presence is None:
            return {"connectedUsers": 0, "users": [], "isActive": False, "lastActivity": None}
        members = self.broadcaster.presence.members_of(session_id)
        return {
            "connectedUsers": len(members),
            "users": [observer_dict(m) for m in members],
            "isActive": bool(members),
            "lastActivity": presence.last_activity.isoformat(),
        }

    # -- observers ------------------------------------------------------

    async def connect_observer(
        self,
        session_id: str,
        observer: Observer,
        user_id: Optional[str] = None,
        user_name: Optional[str] = None,
    ) -> None:
        async with self.locks.hold(session_id):
            await self.broadcaster.subscribe(session_id, observer, user_id, user_name)
            try:
                snapshot = await self._store(self.store.get_session(session_id))
            except StoreUnavailable as exc:
                self._log.warning("realtime.sync_failed", session_id=session_id, error=exc.message)
                return
            if snapshot is None or not snapshot.participants:
                return
            await self.broadcaster.send_to(
                observer.observer_id,
                SYNC_EVENT,
                {
                    "session": snapshot_dict(snapshot),
                    "splits": split_dict(split_session(snapshot)),
                    "connectedUsers": self.broadcaster.connected(session_id),
                },
            )

    async def disconnect_observer(self, observer_id: str) -> None:
        await self.broadcaster.unsubscribe(observer_id)
