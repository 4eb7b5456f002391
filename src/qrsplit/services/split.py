from __future__ import annotations

import math
from dataclasses import dataclass, field
from decimal import Context, Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Sequence

from qrsplit.db.models import Item, Participant, SessionSnapshot
from qrsplit.logging import get_logger

log = get_logger(__name__)

CENT = Decimal("0.01")
# wide enough to quantize any finite float to cents
MONEY_CONTEXT = Context(prec=400, rounding=ROUND_HALF_UP)
RECONCILE_TOLERANCE = 0.005


class SplitMethod(str, Enum):
    EQUAL = "equal"
    PROPORTIONAL = "proportional"


@dataclass(slots=True)
class ItemShare:
    id: str
    name: str
    amount: float
    total: float
    share: float


@dataclass(slots=True)
class ParticipantSplit:
    participant_id: str
    user_id: str
    name: str
    amount: float
    percentage: float
    method: SplitMethod
    items: list[ItemShare] = field(default_factory=list)


@dataclass(slots=True)
class SplitSummary:
    participant_count: int = 0
    average_amount: float = 0.0
    highest_amount: float = 0.0
    lowest_amount: float = 0.0


@dataclass(slots=True)
class SplitResult:
    method: SplitMethod
    total_amount: float
    calculated_total: float
    difference: float
    items_total: float
    reconciled: bool
    participants: list[ParticipantSplit] = field(default_factory=list)
    summary: SplitSummary = field(default_factory=SplitSummary)


def round_money(value: float) -> float:
    if not math.isfinite(value):
        return 0.0
    rounded = float(Decimal(repr(value)).quantize(CENT, context=MONEY_CONTEXT))
    # Avoid emitting -0.0
    return rounded + 0.0


def equal_split(total: float, participants: Sequence[Participant]) -> list[ParticipantSplit]:
    count = len(participants)
    if count == 0:
        return []

    amount = round_money(total / count)
    percentage = round_money(100 / count)
    return [
        ParticipantSplit(
            participant_id=participant.id,
            user_id=participant.user_id,
            name=participant.display_name,
            amount=amount,
            percentage=percentage,
            method=SplitMethod.EQUAL,
        )
        for participant in participants
    ]


def proportional_split(items: Sequence[Item], participants: Sequence[Participant]) -> list[ParticipantSplit]:
    count = len(participants)
    totals: dict[str, float] = {participant.id: 0.0 for participant in participants}
    breakdown: dict[str, list[ItemShare]] = {participant.id: [] for participant in participants}
    grand_total = 0.0

    for item in items:
        item_total = item.total
        grand_total += item_total

        if item.assignees:
            consumers = [pid for pid in totals if pid in item.assignees]
            denominator = len(item.assignees)
        else:
            consumers = list(totals)
            denominator = count

        if denominator == 0:
            continue

        share = item_total / denominator
        for pid in consumers:
            totals[pid] += share
            breakdown[pid].append(
                ItemShare(
                    id=item.id,
                    name=item.name,
                    amount=round_money(item.amount),
                    total=round_money(item_total),
                    share=round_money(share),
                )
            )

    splits: list[ParticipantSplit] = []
    for participant in participants:
        amount = totals[participant.id]
        percentage = amount / grand_total * 100 if grand_total > 0 else 0.0
        splits.append(
            ParticipantSplit(
                participant_id=participant.id,
                user_id=participant.user_id,
                name=participant.display_name,
                amount=round_money(amount),
                percentage=round_money(percentage),
                method=SplitMethod.PROPORTIONAL,
                items=breakdown[participant.id],
            )
        )
    return splits


def compute_split(
    total: float,
    items: Sequence[Item],
    participants: Sequence[Participant],
    method: SplitMethod = SplitMethod.PROPORTIONAL,
) -> SplitResult:
    """
    Allocate a session total across its participants.

    Never raises: empty participant or item lists produce a zero-filled
    result. Amounts are rounded only when emitted; the residual rounding
    drift is reported in ``difference`` and not redistributed.
    """
    items_total = sum(item.total for item in items)
    reconciled = abs(total - items_total) <= RECONCILE_TOLERANCE
    if not reconciled:
        log.warning("split.total_mismatch", total_amount=total, items_total=items_total)

    if not participants:
        return SplitResult(
            method=method,
            total_amount=round_money(total),
            calculated_total=0.0,
            difference=round_money(total),
            items_total=round_money(items_total),
            reconciled=reconciled,
        )

    if method == SplitMethod.EQUAL:
        splits = equal_split(total, participants)
    else:
        splits = proportional_split(items, participants)

    amounts = [split.amount for split in splits]
    calculated_total = sum(amounts)
    result = SplitResult(
        method=method,
        total_amount=round_money(total),
        calculated_total=round_money(calculated_total),
        difference=round_money(total - calculated_total),
        items_total=round_money(items_total),
        reconciled=reconciled,
        participants=splits,
        summary=SplitSummary(
            participant_count=len(participants),
            average_amount=round_money(calculated_total / len(splits)),
            highest_amount=max(amounts),
            lowest_amount=min(amounts),
        ),
    )
    log.debug(
        "split.computed",
        method=method.value,
        participants=len(participants),
        calculated_total=result.calculated_total,
        difference=result.difference,
    )
    return result


def split_session(snapshot: SessionSnapshot, method: SplitMethod = SplitMethod.PROPORTIONAL) -> SplitResult:
    return compute_split(snapshot.session.total_amount, snapshot.items, snapshot.participants, method)
