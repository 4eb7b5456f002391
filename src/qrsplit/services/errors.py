from __future__ import annotations

import math
from typing import Any, Optional


class QRSplitError(Exception):
    code = "error"
    status_code = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def as_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


def _json_safe(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        return repr(value)
    return value


class InvalidAmount(QRSplitError):
    code = "invalid_amount"
    status_code = 400

    def __init__(self, received: Any, processed: float) -> None:
        super().__init__(
            "Amount must be a valid number greater than 0",
            received=_json_safe(received),
            processed=_json_safe(processed),
        )


class InvalidInput(QRSplitError):
    code = "invalid_input"
    status_code = 400


class NotFound(QRSplitError):
    code = "not_found"
    status_code = 404


class SessionNotFound(NotFound):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found", sessionId=session_id)


class ItemNotFound(NotFound):
    def __init__(self, session_id: str, item_id: str) -> None:
        super().__init__(
            f"Item {item_id} not found in session {session_id}",
            sessionId=session_id,
            itemId=item_id,
        )


class ParticipantNotFound(NotFound):
    code = "participant_not_found"

    def __init__(self, session_id: str, user_id: Optional[str], wallet_address: Optional[str]) -> None:
        super().__init__(
            "Participant not found",
            sessionId=session_id,
            triedUserId=user_id,
            triedWallet=wallet_address,
        )


class MerchantWalletNotConfigured(QRSplitError):
    code = "merchant_wallet_not_configured"
    status_code = 400

    def __init__(self, session_id: str) -> None:
        super().__init__(
            "Merchant wallet not configured for this session",
            sessionId=session_id,
        )


class IncompletePayment(QRSplitError):
    code = "incomplete_payment"
    status_code = 400

    def __init__(self, paid: int, total: int) -> None:
        super().__init__("Not all participants have paid", paid=paid, total=total)


class DuplicatePayment(QRSplitError):
    code = "duplicate_payment"
    status_code = 409

    def __init__(self, participant_id: str, tx_hash: Optional[str]) -> None:
        super().__init__(
            "Participant has already paid",
            participantId=participant_id,
            txHash=tx_hash,
        )


class StoreUnavailable(QRSplitError):
    code = "store_unavailable"
    status_code = 503


class LedgerUnavailable(QRSplitError):
    code = "ledger_unavailable"
    status_code = 503
