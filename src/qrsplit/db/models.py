from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class PaymentStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(slots=True)
class Session:
    session_id: str
    merchant_id: str
    merchant_wallet: Optional[str] = None
    created_by: Optional[str] = None
    status: SessionStatus = SessionStatus.ACTIVE
    total_amount: float = 0.0
    participants_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class Participant:
    id: str
    session_id: str
    user_id: str
    name: Optional[str] = None
    wallet_address: Optional[str] = None
    added_by: Optional[str] = None
    is_operator: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @property
    def display_name(self) -> str:
        return self.name or f"User {self.user_id}"


@dataclass(slots=True)
class Item:
    id: str
    session_id: str
    name: str
    amount: float
    tax: float = 0.0
    tip: float = 0.0
    assignees: frozenset[str] = frozenset()
    created_at: datetime = field(default_factory=utcnow)

    @property
    def total(self) -> float:
        return self.amount + self.tax + self.tip


@dataclass(slots=True)
class Payment:
    id: str
    session_id: str
    participant_id: str
    from_address: str
    to_address: str
    amount: float
    token_address: str
    status: PaymentStatus
    tx_hash: Optional[str]
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class SessionSnapshot:
    session: Session
    participants: list[Participant] = field(default_factory=list)
    items: list[Item] = field(default_factory=list)
    payments: list[Payment] = field(default_factory=list)

    @property
    def session_id(self) -> str:
        return self.session.session_id

    def successful_payments(self) -> list[Payment]:
        return [p for p in self.payments if p.status == PaymentStatus.SUCCESS]

    def paid_participant_ids(self) -> set[str]:
        return {p.participant_id for p in self.successful_payments()}
