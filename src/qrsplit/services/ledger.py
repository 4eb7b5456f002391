"""Simulated settlement layer. No real chain is ever contacted."""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol

import httpx

from qrsplit.db.models import utcnow
from qrsplit.logging import get_logger
from qrsplit.services.errors import LedgerUnavailable


@dataclass(slots=True)
class Receipt:
    tx_hash: str
    from_address: str
    to_address: str
    amount: float
    token_address: str
    created_at: datetime = field(default_factory=utcnow)


class Ledger(Protocol):
    async def pay(self, from_address: str, to_address: str, amount: float, token_address: str) -> Receipt: ...


def generate_tx_hash() -> str:
    return "0x" + secrets.token_hex(32)


class MockLedger:
    def __init__(self) -> None:
        self.receipts: list[Receipt] = []
        self._log = get_logger(__name__)

    async def pay(self, from_address: str, to_address: str, amount: float, token_address: str) -> Receipt:
        receipt = Receipt(
            tx_hash=generate_tx_hash(),
            from_address=from_address,
            to_address=to_address,
            amount=amount,
            token_address=token_address,
        )
        self.receipts.append(receipt)
        self._log.info("ledger.mock.paid", tx_hash=receipt.tx_hash, amount=amount, to_address=to_address)
        return receipt


class HttpLedger:
    """Client for a mock ledger service exposing ``POST /pay``."""

    def __init__(self, base_url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._log = get_logger(__name__)

    async def pay(self, from_address: str, to_address: str, amount: float, token_address: str) -> Receipt:
        body = {"from": from_address, "to": to_address, "amount": amount, "token": token_address}
        try:
            response = await self._client.post("/pay", json=body)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            self._log.warning("ledger.http.failed", error=str(exc))
            raise LedgerUnavailable("Ledger request failed", reason=str(exc)) from exc

        tx_hash = payload.get("txHash") if isinstance(payload, dict) else None
        if not tx_hash:
            raise LedgerUnavailable("Ledger response missing transaction hash", response=payload)

        self._log.info("ledger.http.paid", tx_hash=tx_hash, amount=amount, to_address=to_address)
        return Receipt(
            tx_hash=str(tx_hash),
            from_address=from_address,
            to_address=to_address,
            amount=amount,
            token_address=token_address,
        )

    async def close(self) -> None:
        await self._client.aclose()
