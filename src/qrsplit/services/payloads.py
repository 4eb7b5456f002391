"""JSON wire representations. Keys are camelCase to match the web client."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from qrsplit.db.models import Item, Participant, Payment, Session, SessionSnapshot
from qrsplit.services.presence import ObserverInfo
from qrsplit.services.split import ParticipantSplit, SplitResult


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def session_dict(session: Session) -> dict[str, Any]:
    return {
        "sessionId": session.session_id,
        "merchantId": session.merchant_id,
        "merchantWallet": session.merchant_wallet,
        "createdBy": session.created_by,
        "status": session.status.value,
        "totalAmount": session.total_amount,
        "participantsCount": session.participants_count,
        "createdAt": _iso(session.created_at),
        "updatedAt": _iso(session.updated_at),
    }


def participant_dict(participant: Participant) -> dict[str, Any]:
    return {
        "id": participant.id,
        "sessionId": participant.session_id,
        "userId": participant.user_id,
        "name": participant.name,
        "walletAddress": participant.wallet_address,
        "addedBy": participant.added_by,
        "isOperator": participant.is_operator,
        "createdAt": _iso(participant.created_at),
    }


def item_dict(item: Item) -> dict[str, Any]:
    return {
        "id": item.id,
        "sessionId": item.session_id,
        "name": item.name,
        "amount": item.amount,
        "tax": item.tax,
        "tip": item.tip,
        "assignees": sorted(item.assignees),
        "createdAt": _iso(item.created_at),
    }


def payment_dict(payment: Payment) -> dict[str, Any]:
    return {
        "id": payment.id,
        "sessionId": payment.session_id,
        "participantId": payment.participant_id,
        "fromAddress": payment.from_address,
        "toAddress": payment.to_address,
        "amount": payment.amount,
        "tokenAddress": payment.token_address,
        "status": payment.status.value,
        "txHash": payment.tx_hash,
        "createdAt": _iso(payment.created_at),
    }


def snapshot_dict(snapshot: SessionSnapshot) -> dict[str, Any]:
    body = session_dict(snapshot.session)
    body["participants"] = [participant_dict(p) for p in snapshot.participants]
    body["items"] = [item_dict(i) for i in snapshot.items]
    body["payments"] = [payment_dict(p) for p in snapshot.payments]
    return body


def _participant_split_dict(split: ParticipantSplit) -> dict[str, Any]:
    return {
        "participantId": split.participant_id,
        "userId": split.user_id,
        "name": split.name,
        "amount": split.amount,
        "percentage": split.percentage,
        "method": split.method.value,
        "items": [
            {"id": i.id, "name": i.name, "amount": i.amount, "total": i.total, "share": i.share}
            for i in split.items
        ],
    }


def split_dict(result: Optional[SplitResult]) -> Optional[dict[str, Any]]:
    if result is None:
        return None
    return {
        "method": result.method.value,
        "totalAmount": result.total_amount,
        "calculatedTotal": result.calculated_total,
        "difference": result.difference,
        "itemsTotal": result.items_total,
        "reconciled": result.reconciled,
        "participants": [_participant_split_dict(p) for p in result.participants],
        "summary": {
            "participantCount": result.summary.participant_count,
            "averageAmount": result.summary.average_amount,
            "highestAmount": result.summary.highest_amount,
            "lowestAmount": result.summary.lowest_amount,
        },
    }


def observer_dict(info: ObserverInfo) -> dict[str, Any]:
    return {
        "observerId": info.observer_id,
        "userId": info.user_id,
        "userName": info.user_name,
        "connectedAt": _iso(info.connected_at),
    }
