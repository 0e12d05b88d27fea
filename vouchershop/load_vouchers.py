"""
Load voucher codes from a CSV file into the inventory.

    python -m vouchershop.load_vouchers --csv-file codes.csv

Columns: code, product_name, amount[, discounted_amount][, image].
Codes already present are skipped, so re-running a file is harmless.
"""
from __future__ import annotations
import argparse
import asyncio
import csv
import sys
from typing import Any, Dict, List

from .config import DATABASE_URL
from .helpers import now_ts
from .infra.sql import backend_name, make_async_engine
from .model.db import create_schema
from .model.inventory import InventoryStore

REQUIRED = ("code", "product_name", "amount")


def read_voucher_csv(path: str) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    with open(path, newline="", encoding="utf-8") as f:
        reader = csv.DictReader(f)
        missing = [c for c in REQUIRED if c not in (reader.fieldnames or [])]
        if missing:
            raise ValueError(f"{path}: missing column(s) {', '.join(missing)}")
        for lineno, r in enumerate(reader, start=2):
            code = (r.get("code") or "").strip()
            if not code:
                continue
            try:
                amount = int(r["amount"])
                discounted = (r.get("discounted_amount") or "").strip()
                discounted_amount = int(discounted) if discounted else None
            except ValueError:
                raise ValueError(f"{path}:{lineno}: invalid amount") from None
            rows.append({
                "code": code,
                "product_name": (r.get("product_name") or "").strip(),
                "amount": amount,
                "discounted_amount": discounted_amount,
                "image": (r.get("image") or "").strip() or None,
            })
    return rows


async def load(path: str, database_url: str) -> int:
    rows = read_voucher_csv(path)
    engine, SessionAsync, gated = make_async_engine(database_url)
    try:
        async with engine.begin() as conn:
            await create_schema(conn)
        async with SessionAsync() as session:
            store = InventoryStore(db=session, gated=gated)
            inserted = await store.add_vouchers(rows, now_ts())
    finally:
        await engine.dispose()
    print(f'read {len(rows)} voucher(s), inserted {inserted}, '
          f'skipped {len(rows) - inserted}')
    return inserted


def main():
    ap = argparse.ArgumentParser(
        description="Load voucher codes from CSV into the inventory"
    )
    ap.add_argument(
        "--csv-file", required=True, help="CSV file with voucher codes"
    )
    ap.add_argument(
        "--database-url", default=DATABASE_URL,
        help="Database URL (default: $DATABASE_URL)"
    )
    args = ap.parse_args()

    print(f'Loading into {backend_name(args.database_url)}...', flush=True)
    try:
        asyncio.run(load(args.csv_file, args.database_url))
    except (OSError, ValueError) as e:
        print(f"!! {e}", file=sys.stderr, flush=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
