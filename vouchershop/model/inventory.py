# vouchershop/model/inventory.py
"""
Inventory store: the voucher pool.

- candidate selection among unclaimed vouchers (lowest id first)
- atomic claim: UPDATE ... WHERE code=:code AND used=FALSE, won iff one row
  changed
- set-based release back into the pool
- read-only views for the storefront and operators
"""

from __future__ import annotations
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..infra.sql import Gated

VOUCHER_COLUMNS = """
    code, product_name, amount, discounted_amount, image,
    used, used_by, used_at, expiry_date
"""


# UN-GATED internal function
async def _release_codes(db: AsyncSession, codes: Sequence[str]) -> int:
    """
    Return vouchers to the pool and clear their usage metadata.
    Unconditional: the caller owns the binding.
    """
    codes = tuple(c for c in codes if c)
    if not codes:
        return 0
    stmt = text("""
        UPDATE vouchers
        SET used = FALSE, used_by = NULL, used_at = NULL, expiry_date = NULL
        WHERE code IN :codes
    """).bindparams(bindparam("codes", expanding=True))
    result = await db.execute(stmt, {"codes": codes})
    return int(result.rowcount or 0)


class InventoryStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def select_candidate(
        self, product_name: Optional[str], price: Optional[int] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Any unclaimed voucher for `product_name`. Without a product, match on
        the effective price instead. Ties go to the oldest row.
        """
        if product_name:
            where = "product_name = :key"
            key: Any = product_name
        elif price is not None:
            where = "COALESCE(discounted_amount, amount) = :key"
            key = int(price)
        else:
            return None
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text(f"""
                    SELECT {VOUCHER_COLUMNS} FROM vouchers
                    WHERE used = FALSE AND {where}
                    ORDER BY id ASC
                    LIMIT 1
                """), {"key": key})).mappings().first()
        return dict(row) if row else None

    async def claim(
        self, code: str, email: str, now: float, valid_for_seconds: float
    ) -> bool:
        async with self.gated():
            async with self.db.begin():
                result = await self.db.execute(text("""
                    UPDATE vouchers
                    SET used = TRUE, used_by = :email, used_at = :now,
                        expiry_date = :expiry
                    WHERE code = :code AND used = FALSE
                """), {
                    "code": code,
                    "email": email,
                    "now": now,
                    "expiry": now + valid_for_seconds,
                })
        return result.rowcount == 1

    async def stamp_claim(
        self, code: str, email: str, now: float, valid_for_seconds: float
    ) -> bool:
        """Fill in owner and dates on a voucher reserved without them."""
        async with self.gated():
            async with self.db.begin():
                result = await self.db.execute(text("""
                    UPDATE vouchers
                    SET used_by = :email,
                        used_at = COALESCE(used_at, :now),
                        expiry_date = COALESCE(expiry_date, :expiry)
                    WHERE code = :code AND used = TRUE
                """), {
                    "code": code,
                    "email": email,
                    "now": now,
                    "expiry": now + valid_for_seconds,
                })
        return result.rowcount == 1

    async def release(self, codes: Iterable[str]) -> int:
        async with self.gated():
            async with self.db.begin():
                return await _release_codes(self.db, tuple(codes))

    async def get_voucher(self, code: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text(f"""
                    SELECT {VOUCHER_COLUMNS} FROM vouchers WHERE code = :code
                """), {"code": code})).mappings().first()
        return dict(row) if row else None

    async def add_vouchers(
        self, rows: Iterable[Dict[str, Any]], now: float
    ) -> int:
        inserted = 0
        async with self.gated():
            async with self.db.begin():
                for r in rows:
                    result = await self.db.execute(text("""
                        INSERT INTO vouchers (
                          code, product_name, amount, discounted_amount,
                          image, used, created_at
                        ) VALUES (
                          :code, :product_name, :amount, :discounted_amount,
                          :image, FALSE, :created_at
                        )
                        ON CONFLICT (code) DO NOTHING
                    """), {
                        "code": r["code"],
                        "product_name": r["product_name"],
                        "amount": int(r["amount"]),
                        "discounted_amount": (
                            None if r.get("discounted_amount") is None
                            else int(r["discounted_amount"])
                        ),
                        "image": r.get("image"),
                        "created_at": now,
                    })
                    inserted += int(result.rowcount or 0)
        return inserted

    async def available_groups(self) -> List[Dict[str, Any]]:
        """Storefront view: one row per product/price, codes never exposed."""
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                    SELECT product_name, amount, discounted_amount,
                           MIN(image) AS image,
                           COUNT(*) AS available_count
                    FROM vouchers
                    WHERE used = FALSE
                    GROUP BY product_name, amount, discounted_amount
                    ORDER BY product_name ASC
                """))).mappings().all()
        return [dict(r) for r in rows]

    async def count_available(self, product_name: str) -> int:
        async with self.gated():
            async with self.db.begin():
                n = (await self.db.execute(text("""
                    SELECT COUNT(*) FROM vouchers
                    WHERE used = FALSE AND product_name = :p
                """), {"p": product_name})).scalar_one()
        return int(n)

    async def inventory_by_product(self) -> List[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                    SELECT product_name,
                           COUNT(*) AS total,
                           SUM(CASE WHEN used THEN 0 ELSE 1 END) AS available,
                           SUM(CASE WHEN used THEN 1 ELSE 0 END) AS used
                    FROM vouchers
                    GROUP BY product_name
                    ORDER BY product_name ASC
                """))).mappings().all()
        return [
            {
                "product_name": r["product_name"],
                "total": int(r["total"] or 0),
                "available": int(r["available"] or 0),
                "used": int(r["used"] or 0),
            }
            for r in rows
        ]
