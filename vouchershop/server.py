from __future__ import annotations
from collections import Counter
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional, Tuple
import logging
import math
import uuid

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .allocation import CLAIM_ATTEMPTS, AllocationEngine
from .config import (
    ADMIN_API_KEY, CALLBACK_SECRET, CRON_SECRET, DATABASE_URL,
    DB_AUTO_CREATE, EMAIL_FROM, EMAIL_SUBJECT, LOG_LEVEL, METRICS_RUN_ID,
    METRICS_URL, REAPER_BATCH_SIZE, REAPER_GRACE_SECONDS, REAPER_MAX_BATCHES,
    RESEND_API_KEY, RESEND_URL, VOUCHER_VALIDITY_DAYS,
)
from .errors import InvalidCallback, InvalidSignature
from .gateway import CallbackAdapter, FlipAdapter
from .helpers import (
    DAY_SECONDS, ct_equal, effective_price, from_date, is_valid_email,
    now_ts, redact_email, to_iso,
)
from .infra.sql import Gated, backend_name, make_async_engine
from .infra.timings import install_shutdown_flush, summary, timeit
from .model.db import NOTE_NO_INVENTORY, PENDING, STATUSES, SUCCESSFUL
from .model.db import create_schema
from .model.inventory import InventoryStore
from .model.ledger import LedgerStore
from .notifier import LogNotifier, Notifier, ResendNotifier
from .reaper import Reaper

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

engine, SessionAsync, gated = make_async_engine(DATABASE_URL)

adapter: CallbackAdapter = FlipAdapter(secret=CALLBACK_SECRET)

app = FastAPI(
    title="VoucherShop",
    default_response_class=ORJSONResponse,
)

# shutdown handler posting our timing aggregates, if a collector is set
install_shutdown_flush(app, METRICS_URL, METRICS_RUN_ID)


# ----------------------------
# Dependencies
# ----------------------------
def database() -> Tuple[async_sessionmaker, Gated]:
    return SessionAsync, gated


async def session(
    db=Depends(database),
) -> AsyncIterator[Tuple[AsyncSession, Gated]]:
    sessions, gate = db
    async with sessions() as s:
        yield s, gate


def inventory_store(s=Depends(session)) -> InventoryStore:
    return InventoryStore(db=s[0], gated=s[1])


def ledger_store(s=Depends(session)) -> LedgerStore:
    return LedgerStore(db=s[0], gated=s[1])


def notifier(request: Request) -> Notifier:
    n = getattr(request.app.state, "notifier", None)
    return n if n is not None else LogNotifier()


def allocation_engine(
    inventory: InventoryStore = Depends(inventory_store),
    ledger: LedgerStore = Depends(ledger_store),
    n: Notifier = Depends(notifier),
) -> AllocationEngine:
    return AllocationEngine(
        inventory=inventory,
        ledger=ledger,
        notifier=n,
        voucher_validity_days=VOUCHER_VALIDITY_DAYS,
    )


def reaper(ledger: LedgerStore = Depends(ledger_store)) -> Reaper:
    return Reaper(
        ledger,
        grace_seconds=REAPER_GRACE_SECONDS,
        batch_size=REAPER_BATCH_SIZE,
        max_batches=REAPER_MAX_BATCHES,
    )


def require_admin(request: Request) -> None:
    key = request.headers.get("x-api-key", "")
    if not ADMIN_API_KEY or not ct_equal(key, ADMIN_API_KEY):
        raise HTTPException(401, detail="unauthorized")


def require_cron(request: Request) -> None:
    auth = request.headers.get("authorization", "")
    if not CRON_SECRET or not ct_equal(auth, f"Bearer {CRON_SECRET}"):
        raise HTTPException(401, detail="unauthorized")


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    print('\n' * 3)
    print('=' * 50)
    print('VoucherShop is starting up...')
    print(f'   - Storage Backend: {backend_name(DATABASE_URL)}')
    print(f'   - Email:           {"Resend" if RESEND_API_KEY else "log"}')
    print('=' * 50)
    print('\n' * 3)


@app.on_event("startup")
async def _db_init():
    if DB_AUTO_CREATE:
        async with engine.begin() as conn:
            await create_schema(conn)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(max_connections=64, max_keepalive_connections=64),
    )
    if RESEND_API_KEY:
        app.state.notifier = ResendNotifier(
            app.state.http,
            api_key=RESEND_API_KEY,
            url=RESEND_URL,
            sender=EMAIL_FROM,
            subject=EMAIL_SUBJECT,
        )
    else:
        app.state.notifier = LogNotifier()


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


# ----------------------------
# Helpers
# ----------------------------
def _tx_view(row: Dict[str, Any]) -> Dict[str, Any]:
    paid = row["status"] == SUCCESSFUL
    return {
        "id": row["id"],
        "temp_id": row["temp_id"],
        "transaction_id": row["transaction_id"],
        "bill_link_id": row["bill_link_id"],
        "status": row["status"],
        "product_name": row["product_name"],
        "amount": row["amount"],
        "discounted_amount": row["discounted_amount"],
        # codes are only shown once they belong to the payer
        "voucher_code": row["voucher_code"] if paid else None,
        "note": row["note"],
        "created_at": to_iso(row["created_at"]),
        "updated_at": to_iso(row["updated_at"]),
        "expiry_date": to_iso(row["expiry_date"]),
    }


def _admin_tx_view(row: Dict[str, Any]) -> Dict[str, Any]:
    out = _tx_view(row)
    out["voucher_code"] = row["voucher_code"]
    out["email"] = row["email"]
    out["name"] = row["name"]
    return out


def _group_view(g: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "product_name": g["product_name"],
        "amount": int(g["amount"]),
        "discounted_amount": g["discounted_amount"],
        "price": effective_price(g["amount"], g["discounted_amount"]),
        "image": g["image"],
        "available_count": int(g["available_count"]),
    }


def _parse_day(value: Optional[str], end_of_day: bool) -> Optional[float]:
    if not value:
        return None
    try:
        return from_date(value, end_of_day=end_of_day)
    except ValueError:
        raise HTTPException(400, detail=f"invalid date: {value}") from None


# ----------------------------
# Gateway callback
# ----------------------------
@app.post("/payments/callback")
@app.post("/api/flip-callback")
async def payment_callback(
    request: Request,
    allocator: AllocationEngine = Depends(allocation_engine),
):
    payload = await request.body()
    headers = dict(request.headers)

    # the gateway retries anything but a 2xx, so everything is acknowledged
    try:
        event = adapter.event_from_request(payload, headers)
    except InvalidSignature:
        peer = request.client.host if request.client else "unknown"
        logger.warning("SECURITY: callback with bad signature from %s", peer)
        return {"success": True, "message": "Callback ignored"}
    except InvalidCallback as e:
        logger.warning("unusable callback: %s", e)
        return {"success": True, "message": f"Callback ignored: {e}"}

    logger.info(
        "callback %s status=%s amount=%s from %s",
        event.id, event.status, event.amount,
        redact_email(event.sender_email),
    )
    try:
        async with timeit("callback.process"):
            outcome = await allocator.process(event)
    except Exception:
        # transaction stays as it was; a later delivery or the reaper
        # settles it
        logger.exception("processing callback %s failed", event.id)
        return {
            "success": True,
            "transaction_id": event.id,
            "message": "Callback received; processing failed",
        }
    return outcome.to_dict()


# ----------------------------
# Storefront
# ----------------------------
@app.get("/api/vouchers")
async def list_vouchers(
    inventory: InventoryStore = Depends(inventory_store),
):
    async with timeit("inventory.groups"):
        groups = await inventory.available_groups()
    return {"items": [_group_view(g) for g in groups]}


@app.post("/api/purchases")
async def create_purchase(
    payload: dict,
    inventory: InventoryStore = Depends(inventory_store),
    ledger: LedgerStore = Depends(ledger_store),
):
    # callbacks carry lowercased emails; the heuristic match needs the same
    email = (payload.get("email") or "").strip().lower()
    name = (payload.get("name") or "").strip() or None
    product_name = (payload.get("product_name") or "").strip()

    if not is_valid_email(email):
        raise HTTPException(
            400, detail="email is required and must be a valid email address"
        )
    if not product_name:
        raise HTTPException(400, detail="product_name is required")

    now = now_ts()
    code: Optional[str] = None
    sample: Optional[Dict[str, Any]] = None
    # the voucher is held for the buyer until the gateway settles or the
    # reaper expires the purchase
    for _ in range(CLAIM_ATTEMPTS):
        async with timeit("inventory.select"):
            sample = await inventory.select_candidate(product_name)
        if sample is None:
            break
        async with timeit("inventory.claim"):
            claimed = await inventory.claim(
                sample["code"], email, now,
                VOUCHER_VALIDITY_DAYS * DAY_SECONDS,
            )
        if claimed:
            code = sample["code"]
            break
    if sample is None:
        raise HTTPException(409, detail="sold out")
    if code is None:
        raise HTTPException(409, detail="voucher unavailable, try again")

    price = effective_price(sample["amount"], sample["discounted_amount"])
    temp_id = f"TEMP-{uuid.uuid4().hex}"
    async with timeit("ledger.insert"):
        pk = await ledger.insert({
            "temp_id": temp_id,
            "email": email,
            "name": name,
            "amount": price,
            "discounted_amount": sample["discounted_amount"],
            "product_name": product_name,
            "voucher_code": code,
            "status": PENDING,
            "created_at": now,
        })
    if pk is None:
        await inventory.release([code])
        raise HTTPException(409, detail="duplicate purchase")
    logger.info(
        "purchase %s reserved voucher %s for %s",
        temp_id, code, redact_email(email),
    )

    return {
        "temp_id": temp_id,
        "status": PENDING,
        "product_name": product_name,
        "amount": price,
        "face_value": int(sample["amount"]),
        "reserved_until": to_iso(now + REAPER_GRACE_SECONDS),
    }


@app.get("/api/purchases/{temp_id}/validate")
async def validate_purchase(
    temp_id: str,
    ledger: LedgerStore = Depends(ledger_store),
):
    """Checked by the client right before redirecting to the gateway."""
    async with timeit("ledger.lookup"):
        row = await ledger.by_temp_id(temp_id)
    if row is None:
        raise HTTPException(404, detail="purchase not found")
    reserved_until = row["created_at"] + REAPER_GRACE_SECONDS
    valid = row["status"] == PENDING and now_ts() < reserved_until
    return {
        "temp_id": temp_id,
        "valid": valid,
        "status": row["status"],
        "reserved_until": (
            to_iso(reserved_until) if row["status"] == PENDING else None
        ),
    }


@app.get("/api/transactions/lookup")
async def lookup_transaction(
    transaction_id: Optional[str] = None,
    bill_link_id: Optional[int] = None,
    temp_id: Optional[str] = None,
    ledger: LedgerStore = Depends(ledger_store),
):
    async with timeit("ledger.lookup"):
        if transaction_id:
            row = await ledger.by_transaction_id(transaction_id)
        elif bill_link_id is not None:
            row = await ledger.by_bill_link_id(bill_link_id)
        elif temp_id:
            row = await ledger.by_temp_id(temp_id)
        else:
            raise HTTPException(
                400,
                detail="one of transaction_id, bill_link_id, temp_id needed",
            )
    if row is None:
        # callback still in flight -> let the client keep polling
        raise HTTPException(404, detail="not found yet")
    return _tx_view(row)


# ----------------------------
# Reaper trigger (external scheduler)
# ----------------------------
@app.api_route("/api/cron/release-vouchers", methods=["GET", "POST"])
async def release_vouchers(
    _: None = Depends(require_cron),
    r: Reaper = Depends(reaper),
):
    result = await r.sweep()
    return {"success": True, **result.to_dict()}


# ----------------------------
# Operator API
# ----------------------------
@app.get("/api/admin/inventory", dependencies=[Depends(require_admin)])
async def admin_inventory(
    inventory: InventoryStore = Depends(inventory_store),
):
    products = await inventory.inventory_by_product()
    return {
        "products": products,
        "total": sum(p["total"] for p in products),
        "available": sum(p["available"] for p in products),
        "used": sum(p["used"] for p in products),
    }


@app.get("/api/admin/transactions", dependencies=[Depends(require_admin)])
async def admin_transactions(
    page: int = 1,
    limit: int = 10,
    search: str = "",
    status: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    ledger: LedgerStore = Depends(ledger_store),
):
    if status:
        status = status.upper()
        if status not in STATUSES:
            raise HTTPException(400, detail=f"invalid status: {status}")
    total, rows = await ledger.list_transactions(
        page=page,
        limit=limit,
        search=search.strip(),
        status=status,
        start_ts=_parse_day(start_date, end_of_day=False),
        end_ts=_parse_day(end_date, end_of_day=True),
    )
    limit = max(1, min(limit, 200))
    return {
        "items": [_admin_tx_view(r) for r in rows],
        "total": total,
        "page": max(1, page),
        "limit": limit,
        "pages": math.ceil(total / limit) if total else 0,
    }


@app.get("/api/admin/statistics", dependencies=[Depends(require_admin)])
async def admin_statistics(
    days: int = 30,
    ledger: LedgerStore = Depends(ledger_store),
):
    days = max(1, min(days, 366))
    rows = await ledger.created_since(now_ts() - days * DAY_SECONDS)

    by_status = Counter(r["status"] for r in rows)
    paid = [r for r in rows if r["status"] == SUCCESSFUL]
    revenue = sum(int(r["amount"] or 0) for r in paid)
    unfulfilled = sum(1 for r in paid if r["note"] == NOTE_NO_INVENTORY)

    daily: Dict[str, Dict[str, int]] = {}
    for r in paid:
        day = datetime.fromtimestamp(
            r["created_at"], tz=timezone.utc
        ).strftime("%Y-%m-%d")
        d = daily.setdefault(day, {"count": 0, "revenue": 0})
        d["count"] += 1
        d["revenue"] += int(r["amount"] or 0)

    top = Counter(r["product_name"] or "unknown" for r in paid)
    return {
        "days": days,
        "total_transactions": len(rows),
        "by_status": {s: by_status.get(s, 0) for s in STATUSES},
        "revenue": revenue,
        "conversion_rate": (
            round(len(paid) * 100.0 / len(rows), 2) if rows else 0.0
        ),
        "unfulfilled": unfulfilled,
        "top_products": [
            {"product_name": p, "count": n} for p, n in top.most_common(5)
        ],
        "daily": [{"date": k, **v} for k, v in sorted(daily.items())],
    }


@app.post("/api/admin/vouchers", dependencies=[Depends(require_admin)])
async def admin_add_vouchers(
    payload: dict,
    inventory: InventoryStore = Depends(inventory_store),
):
    items = payload.get("vouchers")
    if not isinstance(items, list) or not items:
        raise HTTPException(400, detail="vouchers must be a non-empty list")

    rows = []
    for i, v in enumerate(items):
        if not isinstance(v, dict):
            raise HTTPException(400, detail=f"vouchers[{i}] is not an object")
        code = str(v.get("code") or "").strip()
        product = str(v.get("product_name") or "").strip()
        try:
            amount = int(v.get("amount"))
            discounted = v.get("discounted_amount")
            discounted = None if discounted in (None, "") else int(discounted)
        except (TypeError, ValueError):
            raise HTTPException(
                400, detail=f"vouchers[{i}]: invalid amount"
            ) from None
        if not code or not product or amount <= 0:
            raise HTTPException(
                400, detail=f"vouchers[{i}]: code, product_name, amount needed"
            )
        rows.append({
            "code": code,
            "product_name": product,
            "amount": amount,
            "discounted_amount": discounted,
            "image": v.get("image"),
        })

    inserted = await inventory.add_vouchers(rows, now_ts())
    logger.info(
        "loaded %d voucher(s), %d duplicate(s) skipped",
        inserted, len(rows) - inserted,
    )
    return {"inserted": inserted, "skipped": len(rows) - inserted}


@app.post("/api/admin/resend-voucher", dependencies=[Depends(require_admin)])
async def admin_resend_voucher(
    payload: dict,
    inventory: InventoryStore = Depends(inventory_store),
    ledger: LedgerStore = Depends(ledger_store),
    n: Notifier = Depends(notifier),
):
    transaction_id = (payload.get("transaction_id") or "").strip()
    if not transaction_id:
        raise HTTPException(400, detail="transaction_id is required")
    tx = await ledger.by_transaction_id(transaction_id)
    if tx is None:
        raise HTTPException(404, detail="transaction not found")
    if tx["status"] != SUCCESSFUL or not tx["voucher_code"]:
        raise HTTPException(409, detail="transaction has no voucher")

    voucher = await inventory.get_voucher(tx["voucher_code"])
    if voucher is None:
        raise HTTPException(404, detail="voucher not found")
    try:
        async with timeit("notifier.notify"):
            await n.notify(
                tx["email"], voucher, tx["transaction_id"], tx["amount"],
                name=tx["name"],
            )
    except httpx.HTTPError as e:
        logger.exception("resending voucher for %s failed", transaction_id)
        raise HTTPException(502, detail=f"email delivery failed: {e}") from e
    return {"success": True, "message": "Voucher resent"}


@app.get("/api/admin/timings", dependencies=[Depends(require_admin)])
async def admin_timings():
    return {"items": summary()}


@app.get("/health")
async def health():
    return {"status": "ok", "backend": backend_name(DATABASE_URL)}
