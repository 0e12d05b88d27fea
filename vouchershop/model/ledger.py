# vouchershop/model/ledger.py
"""
Ledger store: one Transaction row per purchase attempt.

Rows are never deleted. Every state change is a conditional UPDATE so that
racing callback deliveries and the reaper serialize on the row instead of on
an in-process lock.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import bindparam, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..infra.sql import Gated, supports_row_locks
from .db import (
    PENDING, SUCCESSFUL, EXPIRED, NEGATIVE, NOTE_NO_INVENTORY,
)
from .inventory import _release_codes

TX_COLUMNS = """
    id, temp_id, transaction_id, bill_link_id, email, name, amount,
    discounted_amount, product_name, voucher_code, status, note,
    created_at, updated_at, used_at, expiry_date
"""


class _Conflict(Exception):
    """Raised inside a db.begin() block to roll it back."""


class LedgerStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------
    async def _one(self, where: str, params: Dict[str, Any],
                   order: str = "") -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text(f"""
                    SELECT {TX_COLUMNS} FROM transactions
                    WHERE {where}
                    {order}
                    LIMIT 1
                """), params)).mappings().first()
        return dict(row) if row else None

    async def get(self, pk: int) -> Optional[Dict[str, Any]]:
        return await self._one("id = :id", {"id": pk})

    async def by_temp_id(self, temp_id: str) -> Optional[Dict[str, Any]]:
        return await self._one("temp_id = :t", {"t": temp_id})

    async def by_transaction_id(
        self, transaction_id: str
    ) -> Optional[Dict[str, Any]]:
        return await self._one("transaction_id = :t", {"t": transaction_id})

    async def by_bill_link_id(
        self, bill_link_id: int
    ) -> Optional[Dict[str, Any]]:
        # a bill link can be paid more than once; newest attempt wins
        return await self._one(
            "bill_link_id = :b", {"b": int(bill_link_id)},
            order="ORDER BY created_at DESC, id DESC",
        )

    async def latest_pending_for(
        self, email: str, amount: int
    ) -> Optional[Dict[str, Any]]:
        # a row already linked to a gateway id belongs to that payment only
        return await self._one(
            "email = :email AND amount = :amount AND status = :pending"
            " AND transaction_id IS NULL",
            {"email": email, "amount": int(amount), "pending": PENDING},
            order="ORDER BY created_at DESC, id DESC",
        )

    # ------------------------------------------------------------------
    # inserts
    # ------------------------------------------------------------------
    async def insert(self, fields: Dict[str, Any]) -> Optional[int]:
        """
        Insert a transaction row. Returns the new id, or None when a unique
        key (temp_id / transaction_id) already exists.
        """
        row = {
            "temp_id": None,
            "transaction_id": None,
            "bill_link_id": None,
            "name": None,
            "discounted_amount": None,
            "product_name": None,
            "voucher_code": None,
            "status": PENDING,
            "note": None,
            "used_at": None,
            "expiry_date": None,
        }
        row.update(fields)
        row.setdefault("updated_at", row["created_at"])
        try:
            async with self.gated():
                async with self.db.begin():
                    new_id = (await self.db.execute(text("""
                        INSERT INTO transactions (
                          temp_id, transaction_id, bill_link_id, email, name,
                          amount, discounted_amount, product_name,
                          voucher_code, status, note, created_at, updated_at,
                          used_at, expiry_date
                        ) VALUES (
                          :temp_id, :transaction_id, :bill_link_id, :email,
                          :name, :amount, :discounted_amount, :product_name,
                          :voucher_code, :status, :note, :created_at,
                          :updated_at, :used_at, :expiry_date
                        )
                        RETURNING id
                    """), row)).scalar_one()
        except IntegrityError:
            # an idempotent replay racing the first write
            return None
        return int(new_id)

    # ------------------------------------------------------------------
    # state transitions
    # ------------------------------------------------------------------
    async def link_gateway_ids(
        self, pk: int, transaction_id: Optional[str],
        bill_link_id: Optional[int], now: float,
    ) -> bool:
        """Fill in gateway identifiers that are still unknown."""
        try:
            async with self.gated():
                async with self.db.begin():
                    result = await self.db.execute(text("""
                        UPDATE transactions
                        SET transaction_id = COALESCE(transaction_id, :tid),
                            bill_link_id = COALESCE(bill_link_id, :bid),
                            updated_at = :now
                        WHERE id = :id
                    """), {
                        "id": pk, "tid": transaction_id,
                        "bid": bill_link_id, "now": now,
                    })
        except IntegrityError:
            # the gateway id already belongs to another row
            return False
        return result.rowcount == 1

    async def mark_successful(
        self, pk: int, *,
        voucher_code: Optional[str],
        expected_code: Optional[str] = None,
        transaction_id: Optional[str],
        bill_link_id: Optional[int],
        now: float,
        expiry_date: Optional[float] = None,
        product_name: Optional[str] = None,
    ) -> bool:
        """
        PENDING -> SUCCESSFUL, binding `voucher_code` (None records
        NO_INVENTORY). Only applies while the row is PENDING and its
        voucher_code still equals `expected_code`; False means another
        writer got there first.
        """
        params = {
            "successful": SUCCESSFUL,
            "pending": PENDING,
            "code": voucher_code,
            "note": None if voucher_code else NOTE_NO_INVENTORY,
            "tid": transaction_id,
            "bid": bill_link_id,
            "product": product_name,
            "used_at": now if voucher_code else None,
            "expiry": expiry_date if voucher_code else None,
            "now": now,
            "id": pk,
        }
        if expected_code is None:
            code_guard = "voucher_code IS NULL"
        else:
            code_guard = "voucher_code = :expected"
            params["expected"] = expected_code
        async with self.gated():
            async with self.db.begin():
                result = await self.db.execute(text(f"""
                    UPDATE transactions
                    SET status = :successful,
                        voucher_code = :code,
                        note = :note,
                        transaction_id = COALESCE(transaction_id, :tid),
                        bill_link_id = COALESCE(bill_link_id, :bid),
                        product_name = COALESCE(product_name, :product),
                        used_at = :used_at,
                        expiry_date = :expiry,
                        updated_at = :now
                    WHERE id = :id AND status = :pending AND {code_guard}
                """), params)
        return result.rowcount == 1

    async def close_negative(
        self, pk: int, *,
        status: str,
        seen_status: str,
        seen_code: Optional[str],
        transaction_id: Optional[str],
        bill_link_id: Optional[int],
        now: float,
    ) -> bool:
        """
        Release the bound voucher (if any) and move the row to a negative
        terminal status, in one storage transaction. Applies only if the row
        still has the status and voucher_code the caller read; False means
        it changed underneath and nothing was written.
        """
        if status not in NEGATIVE:
            raise ValueError(f"not a negative status: {status}")
        guard = {"id": pk, "seen_status": seen_status}
        if seen_code is None:
            code_guard = "voucher_code IS NULL"
        else:
            code_guard = "voucher_code = :seen_code"
            guard["seen_code"] = seen_code
        lock = "FOR UPDATE" if supports_row_locks(self.db) else ""
        try:
            async with self.gated():
                async with self.db.begin():
                    # lock the row first so the release below cannot race a
                    # concurrent bind on backends with row locks
                    locked = (await self.db.execute(text(f"""
                        SELECT id FROM transactions
                        WHERE id = :id AND status = :seen_status
                          AND {code_guard}
                        {lock}
                    """), guard)).first()
                    if locked is None:
                        raise _Conflict()
                    if seen_code:
                        await _release_codes(self.db, (seen_code,))
                    result = await self.db.execute(text(f"""
                        UPDATE transactions
                        SET status = :status,
                            transaction_id = COALESCE(transaction_id, :tid),
                            bill_link_id = COALESCE(bill_link_id, :bid),
                            updated_at = :now
                        WHERE id = :id AND status = :seen_status
                          AND {code_guard}
                    """), {
                        **guard,
                        "status": status,
                        "tid": transaction_id,
                        "bid": bill_link_id,
                        "now": now,
                    })
                    if result.rowcount != 1:
                        raise _Conflict()
        except _Conflict:
            return False
        return True

    async def expire_stale_batch(
        self, cutoff: float, limit: int, now: float
    ) -> Tuple[List[int], List[str]]:
        """
        One reaper batch: PENDING rows created before `cutoff`, oldest first.
        Releases their vouchers with one set-based update, then flips them to
        EXPIRED with another, in a single storage transaction so a crash
        leaves either nothing or everything of the batch applied.
        """
        lock = "FOR UPDATE SKIP LOCKED" if supports_row_locks(self.db) else ""
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text(f"""
                    SELECT id, voucher_code FROM transactions
                    WHERE status = :pending AND created_at < :cutoff
                    ORDER BY created_at ASC, id ASC
                    LIMIT :lim
                    {lock}
                """), {
                    "pending": PENDING, "cutoff": cutoff, "lim": int(limit),
                })).all()
                if not rows:
                    return [], []

                ids = [int(r[0]) for r in rows]
                codes = [r[1] for r in rows if r[1]]
                await _release_codes(self.db, codes)

                stmt = text("""
                    UPDATE transactions
                    SET status = :expired, updated_at = :now
                    WHERE id IN :ids AND status = :pending
                """).bindparams(bindparam("ids", expanding=True))
                await self.db.execute(stmt, {
                    "expired": EXPIRED, "now": now,
                    "ids": tuple(ids), "pending": PENDING,
                })
        return ids, codes

    # ------------------------------------------------------------------
    # operator views (read-only)
    # ------------------------------------------------------------------
    async def list_transactions(
        self, *,
        page: int = 1,
        limit: int = 10,
        search: str = "",
        status: Optional[str] = None,
        start_ts: Optional[float] = None,
        end_ts: Optional[float] = None,
    ) -> Tuple[int, List[Dict[str, Any]]]:
        clauses: List[str] = []
        params: Dict[str, Any] = {}
        if search:
            clauses.append(
                "(LOWER(COALESCE(transaction_id, '')) LIKE :q"
                " OR LOWER(email) LIKE :q)"
            )
            params["q"] = f"%{search.lower()}%"
        if status:
            clauses.append("status = :status")
            params["status"] = status
        if start_ts is not None:
            clauses.append("created_at >= :start_ts")
            params["start_ts"] = start_ts
        if end_ts is not None:
            clauses.append("created_at <= :end_ts")
            params["end_ts"] = end_ts
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""

        page = max(1, int(page))
        limit = max(1, min(int(limit), 200))
        async with self.gated():
            async with self.db.begin():
                total = (await self.db.execute(
                    text(f"SELECT COUNT(*) FROM transactions {where}"), params
                )).scalar_one()
                rows = (await self.db.execute(text(f"""
                    SELECT {TX_COLUMNS} FROM transactions
                    {where}
                    ORDER BY created_at DESC, id DESC
                    LIMIT :lim OFFSET :off
                """), {
                    **params, "lim": limit, "off": (page - 1) * limit,
                })).mappings().all()
        return int(total), [dict(r) for r in rows]

    async def created_since(self, since: float) -> List[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text(f"""
                    SELECT {TX_COLUMNS} FROM transactions
                    WHERE created_at >= :since
                    ORDER BY created_at DESC
                """), {"since": since})).mappings().all()
        return [dict(r) for r in rows]
