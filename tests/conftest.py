from __future__ import annotations
from typing import Any, Dict, List, Optional

import pytest

from vouchershop.allocation import AllocationEngine
from vouchershop.gateway import CallbackEvent
from vouchershop.infra.sql import make_async_engine
from vouchershop.model.db import PENDING, SUCCESSFUL, create_schema
from vouchershop.model.inventory import InventoryStore
from vouchershop.model.ledger import LedgerStore
from vouchershop.notifier import Notifier

T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = T0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.fail = False

    async def notify(self, recipient_email, voucher, transaction_id, amount,
                     name=None) -> None:
        if self.fail:
            raise RuntimeError("mail server down")
        self.sent.append({
            "to": recipient_email,
            "code": voucher["code"],
            "transaction_id": transaction_id,
            "amount": amount,
        })


@pytest.fixture
async def db(tmp_path):
    engine, SessionAsync, gated = make_async_engine(
        f"sqlite:///{tmp_path}/vouchers.db"
    )
    async with engine.begin() as conn:
        await create_schema(conn)
    yield engine, SessionAsync, gated
    await engine.dispose()


@pytest.fixture
async def session(db):
    _, SessionAsync, _ = db
    async with SessionAsync() as s:
        yield s


@pytest.fixture
def inventory(db, session):
    return InventoryStore(db=session, gated=db[2])


@pytest.fixture
def ledger(db, session):
    return LedgerStore(db=session, gated=db[2])


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def allocator(inventory, ledger, notifier, clock):
    return AllocationEngine(
        inventory=inventory, ledger=ledger, notifier=notifier, clock=clock,
    )


@pytest.fixture
async def make_allocator(db, notifier, clock):
    """Allocators with their own session, for racing deliveries."""
    _, SessionAsync, gated = db
    sessions = []

    def factory() -> AllocationEngine:
        s = SessionAsync()
        sessions.append(s)
        return AllocationEngine(
            inventory=InventoryStore(db=s, gated=gated),
            ledger=LedgerStore(db=s, gated=gated),
            notifier=notifier,
            clock=clock,
        )

    yield factory
    for s in sessions:
        await s.close()


@pytest.fixture
def seed(inventory, clock):
    async def _seed(product: str, n: int, amount: int = 10000,
                    discounted_amount: Optional[int] = None,
                    prefix: Optional[str] = None) -> List[str]:
        prefix = prefix or product.upper().replace(" ", "")
        codes = [f"{prefix}-{i:03d}" for i in range(1, n + 1)]
        await inventory.add_vouchers(
            [
                {
                    "code": c,
                    "product_name": product,
                    "amount": amount,
                    "discounted_amount": discounted_amount,
                }
                for c in codes
            ],
            clock(),
        )
        return codes
    return _seed


@pytest.fixture
def pending(ledger, clock):
    async def _pending(email: str = "a@x.com", amount: int = 10000,
                       product: Optional[str] = "Tea",
                       temp_id: Optional[str] = None,
                       created_at: Optional[float] = None,
                       **extra) -> int:
        fields = {
            "temp_id": temp_id,
            "email": email,
            "name": "Alice",
            "amount": amount,
            "product_name": product,
            "status": PENDING,
            "created_at": clock() if created_at is None else created_at,
        }
        fields.update(extra)
        return await ledger.insert(fields)
    return _pending


def callback(id: str = "TX1", status: str = SUCCESSFUL,
             amount: int = 10000, email: str = "a@x.com",
             **kw) -> CallbackEvent:
    return CallbackEvent(
        id=id, amount=amount, status=status, sender_email=email, **kw
    )


@pytest.fixture
def event():
    return callback
