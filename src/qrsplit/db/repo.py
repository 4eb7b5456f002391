from __future__ import annotations

from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Iterable, Optional
from uuid import uuid4

import asyncpg

from qrsplit.db.models import (
    Item,
    Participant,
    Payment,
    PaymentStatus,
    Session,
    SessionSnapshot,
    SessionStatus,
)
from qrsplit.logging import get_logger, sql_logger
from qrsplit.services.errors import SessionNotFound, StoreUnavailable
from qrsplit.utils.parse import dump_assignees, parse_assignees

CONNECTION_ERRORS = (OSError, asyncpg.PostgresConnectionError, asyncpg.InterfaceError)


class Database:
    def __init__(self, dsn: str, command_timeout: Optional[float] = None) -> None:
        self._dsn = dsn
        self._command_timeout = command_timeout
        self._pool: asyncpg.Pool | None = None
        self._conn: ContextVar[Optional[asyncpg.Connection]] = ContextVar(f"db-conn-{id(self)}", default=None)
        self._log = get_logger(__name__)

    async def connect(self) -> None:
        if self._pool is None:
            # asyncpg expects a postgresql/postgres scheme without "+asyncpg"
            dsn = self._dsn.replace("+asyncpg", "")
            try:
                self._pool = await asyncpg.create_pool(dsn, command_timeout=self._command_timeout)
            except CONNECTION_ERRORS as exc:
                raise StoreUnavailable("Database connection failed", reason=str(exc)) from exc
            self._log.info("db.pool.created")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            self._log.info("db.pool.closed")

    @asynccontextmanager
    async def transaction(self, isolation: Optional[str] = None, readonly: bool = False) -> AsyncIterator[None]:
        if self._conn.get() is not None:
            yield
            return

        await self._ensure_pool()
        assert self._pool
        try:
            async with self._pool.acquire() as conn:
                token = self._conn.set(conn)
                try:
                    async with conn.transaction(isolation=isolation, readonly=readonly):
                        sql_logger.info("sql.begin")
                        yield
                finally:
                    self._conn.reset(token)
        except CONNECTION_ERRORS as exc:
            raise StoreUnavailable("Database unavailable", reason=str(exc)) from exc

    async def fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        sql_logger.info("sql.fetch", query=query, args=args)
        return await self._run("fetch", query, *args)

    async def fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        sql_logger.info("sql.fetchrow", query=query, args=args)
        return await self._run("fetchrow", query, *args)

    async def fetchval(self, query: str, *args: Any) -> Any:
        sql_logger.info("sql.fetchval", query=query, args=args)
        return await self._run("fetchval", query, *args)

    async def execute(self, query: str, *args: Any) -> str:
        sql_logger.info("sql.execute", query=query, args=args)
        return await self._run("execute", query, *args)

    async def _run(self, method: str, query: str, *args: Any) -> Any:
        executor: Any = self._conn.get()
        if executor is None:
            await self._ensure_pool()
            executor = self._pool
        try:
            return await getattr(executor, method)(query, *args)
        except CONNECTION_ERRORS as exc:
            raise StoreUnavailable("Database unavailable", reason=str(exc)) from exc

    async def _ensure_pool(self) -> None:
        if self._pool is None:
            await self.connect()


def _session_from_row(row: Any) -> Session:
    return Session(
        session_id=row["session_id"],
        merchant_id=row["merchant_id"],
        merchant_wallet=row["merchant_wallet"],
        created_by=row["created_by"],
        status=SessionStatus(row["status"]),
        total_amount=float(row["total_amount"]),
        participants_count=int(row["participants_count"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _participant_from_row(row: Any) -> Participant:
    return Participant(
        id=row["id"],
        session_id=row["session_id"],
        user_id=row["user_id"],
        name=row["name"],
        wallet_address=row["wallet_address"],
        added_by=row["added_by"],
        is_operator=bool(row["is_operator"]),
        created_at=row["created_at"],
    )


def _item_from_row(row: Any) -> Item:
    return Item(
        id=row["id"],
        session_id=row["session_id"],
        name=row["name"],
        amount=float(row["amount"]),
        tax=float(row["tax"]),
        tip=float(row["tip"]),
        assignees=parse_assignees(row["assignees"]),
        created_at=row["created_at"],
    )


def _payment_from_row(row: Any) -> Payment:
    return Payment(
        id=row["id"],
        session_id=row["session_id"],
        participant_id=row["participant_id"],
        from_address=row["from_address"],
        to_address=row["to_address"],
        amount=float(row["amount"]),
        token_address=row["token_address"],
        status=PaymentStatus(row["status"]),
        tx_hash=row["tx_hash"],
        created_at=row["created_at"],
    )


class PostgresSessionStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def transaction(self):
        return self.db.transaction()

    def _snapshot(self):
        return self.db.transaction(isolation="repeatable_read", readonly=True)

    async def get_session(self, session_id: str) -> Optional[SessionSnapshot]:
        async with self._snapshot():
            row = await self.db.fetchrow("SELECT * FROM sessions WHERE session_id = $1", session_id)
            if row is None:
                return None
            participants = await self.db.fetch(
                "SELECT * FROM participants WHERE session_id = $1 ORDER BY created_at, id",
                session_id,
            )
            items = await self.db.fetch(
                "SELECT * FROM items WHERE session_id = $1 ORDER BY created_at, id",
                session_id,
            )
            payments = await self.db.fetch(
                "SELECT * FROM payments WHERE session_id = $1 ORDER BY created_at, id",
                session_id,
            )
        return SessionSnapshot(
            session=_session_from_row(row),
            participants=[_participant_from_row(r) for r in participants],
            items=[_item_from_row(r) for r in items],
            payments=[_payment_from_row(r) for r in payments],
        )

    async def create_session(
        self,
        session_id: str,
        merchant_id: str,
        merchant_wallet: Optional[str],
        created_by: Optional[str],
    ) -> Session:
        row = await self.db.fetchrow(
            """
            INSERT INTO sessions (session_id, merchant_id, merchant_wallet, created_by)
            VALUES ($1, $2, $3, $4)
            RETURNING *
            """,
            session_id,
            merchant_id,
            merchant_wallet,
            created_by,
        )
        assert row is not None
        return _session_from_row(row)

    async def get_item(self, session_id: str, item_id: str) -> Optional[Item]:
        row = await self.db.fetchrow(
            "SELECT * FROM items WHERE id = $1 AND session_id = $2",
            item_id,
            session_id,
        )
        return _item_from_row(row) if row else None

    async def create_item(
        self,
        session_id: str,
        name: str,
        amount: float,
        tax: float,
        tip: float,
        assignees: Iterable[str],
    ) -> Item:
        row = await self.db.fetchrow(
            """
            INSERT INTO items (id, session_id, name, amount, tax, tip, assignees)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING *
            """,
            uuid4().hex,
            session_id,
            name,
            amount,
            tax,
            tip,
            dump_assignees(assignees),
        )
        assert row is not None
        return _item_from_row(row)

    async def update_item_assignees(
        self,
        session_id: str,
        item_id: str,
        assignees: Iterable[str],
    ) -> Optional[Item]:
        row = await self.db.fetchrow(
            """
            UPDATE items SET assignees = $1
            WHERE id = $2 AND session_id = $3
            RETURNING *
            """,
            dump_assignees(assignees),
            item_id,
            session_id,
        )
        return _item_from_row(row) if row else None

    async def find_participant(
        self,
        session_id: str,
        *,
        user_id: Optional[str] = None,
        wallet_address: Optional[str] = None,
    ) -> Optional[Participant]:
        if not user_id and not wallet_address:
            return None
        row = await self.db.fetchrow(
            """
            SELECT * FROM participants
            WHERE session_id = $1
              AND (($2::text IS NOT NULL AND wallet_address = $2)
                   OR ($3::text IS NOT NULL AND user_id = $3))
            ORDER BY created_at, id
            LIMIT 1
            """,
            session_id,
            wallet_address,
            user_id,
        )
        return _participant_from_row(row) if row else None

    async def create_participant(
        self,
        session_id: str,
        user_id: str,
        name: Optional[str],
        wallet_address: Optional[str],
        added_by: Optional[str],
        is_operator: bool,
    ) -> Participant:
        row = await self.db.fetchrow(
            """
            INSERT INTO participants (id, session_id, user_id, name, wallet_address, added_by, is_operator)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING *
            """,
            uuid4().hex,
            session_id,
            user_id,
            name,
            wallet_address,
            added_by,
            is_operator,
        )
        assert row is not None
        return _participant_from_row(row)

    async def update_participant(
        self,
        participant_id: str,
        *,
        wallet_address: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Participant:
        row = await self.db.fetchrow(
            """
            UPDATE participants
            SET wallet_address = COALESCE($1, wallet_address),
                name = COALESCE($2, name)
            WHERE id = $3
            RETURNING *
            """,
            wallet_address,
            name,
            participant_id,
        )
        assert row is not None
        return _participant_from_row(row)

    async def _update_session(self, session_id: str, assignment: str, *args: Any) -> Session:
        row = await self.db.fetchrow(
            f"""
            UPDATE sessions SET {assignment}, updated_at = now()
            WHERE session_id = ${len(args) + 1}
            RETURNING *
            """,
            *args,
            session_id,
        )
        if row is None:
            raise SessionNotFound(session_id)
        return _session_from_row(row)

    async def increment_session_total(self, session_id: str, delta: float) -> Session:
        return await self._update_session(session_id, "total_amount = total_amount + $1", delta)

    async def increment_participants_count(self, session_id: str) -> Session:
        return await self._update_session(session_id, "participants_count = participants_count + 1")

    async def set_merchant_wallet(self, session_id: str, wallet_address: str) -> Session:
        return await self._update_session(session_id, "merchant_wallet = $1", wallet_address)

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
        row = await self.db.fetchrow(
            """
            INSERT INTO payments
                (id, session_id, participant_id, from_address, to_address, amount, token_address, status, tx_hash)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING *
            """,
            uuid4().hex,
            session_id,
            participant_id,
            from_address,
            to_address,
            amount,
            token_address,
            status.value,
            tx_hash,
        )
        assert row is not None
        return _payment_from_row(row)

    async def set_session_status(self, session_id: str, status: SessionStatus) -> Session:
        return await self._update_session(session_id, "status = $1", status.value)

    async def count_sessions(self) -> int:
        return int(await self.db.fetchval("SELECT count(*) FROM sessions"))
