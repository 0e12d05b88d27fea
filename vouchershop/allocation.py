"""
Allocation engine: turns a normalized gateway callback into a final
Transaction state and, for paid purchases, an exclusive voucher binding.

Claim (vouchers) and bind (transactions) are two separate storage writes.
Exclusivity comes from the conditional claim; exactly-once binding comes from
the conditional bind. When the bind fails or loses to a concurrent delivery
the claim is released again (compensation).
"""
from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, Optional
import logging

from .errors import AllocationError, StrandedVoucher
from .gateway import CallbackEvent
from .helpers import DAY_SECONDS, now_ts, redact_email
from .infra.timings import timeit
from .matcher import Matcher
from .model.db import (
    NEGATIVE, NOTE_NO_INVENTORY, PENDING, SUCCESSFUL, TERMINAL,
)
from .model.inventory import InventoryStore
from .model.ledger import LedgerStore
from .notifier import Notifier

logger = logging.getLogger(__name__)

# first candidate plus one retry after losing a claim race
CLAIM_ATTEMPTS = 2
# re-reads allowed when a negative transition races another writer
CLOSE_ATTEMPTS = 3


@dataclass
class AllocationOutcome:
    status: str
    message: str
    transaction_id: Optional[str] = None
    voucher_code: Optional[str] = None
    idempotent: bool = False
    voucher_released: bool = False
    unfulfilled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"success": True, **asdict(self)}


class AllocationEngine:
    def __init__(
        self, *,
        inventory: InventoryStore,
        ledger: LedgerStore,
        notifier: Notifier,
        matcher: Optional[Matcher] = None,
        clock: Callable[[], float] = now_ts,
        voucher_validity_days: int = 30,
    ) -> None:
        self.inventory = inventory
        self.ledger = ledger
        self.notifier = notifier
        self.matcher = matcher or Matcher(ledger)
        self.clock = clock
        self.valid_for = voucher_validity_days * DAY_SECONDS

    async def process(self, event: CallbackEvent) -> AllocationOutcome:
        if event.status == SUCCESSFUL:
            return await self.confirm(event)
        if event.status in NEGATIVE:
            return await self.close(event)
        return await self.observe_pending(event)

    # ------------------------------------------------------------------
    # PENDING -> SUCCESSFUL
    # ------------------------------------------------------------------
    async def confirm(self, event: CallbackEvent) -> AllocationOutcome:
        async with timeit("matcher.match"):
            tx = await self.matcher.match(event)
        if tx is None:
            tx = await self._adopt(event, PENDING)
            if tx is None:
                raise AllocationError(
                    f"could not record transaction for callback {event.id}"
                )

        if tx["status"] in TERMINAL:
            if tx["status"] != SUCCESSFUL:
                logger.warning(
                    "payment %s succeeded but transaction %s is already %s; "
                    "refund or manual fulfilment needed",
                    event.id, tx["id"], tx["status"],
                )
            return self._replay(tx, event)

        if tx["voucher_code"]:
            # reserved before payment; nothing to claim
            return await self._confirm_reserved(tx, event)

        voucher = await self._claim_for(tx, event)
        if voucher is None:
            return await self._confirm_unfulfilled(tx, event)
        return await self._bind(tx, event, voucher)

    async def _claim_for(
        self, tx: Dict[str, Any], event: CallbackEvent
    ) -> Optional[Dict[str, Any]]:
        product = tx["product_name"]
        price = None if product else event.amount
        for attempt in range(1, CLAIM_ATTEMPTS + 1):
            async with timeit("inventory.select"):
                candidate = await self.inventory.select_candidate(
                    product, price
                )
            if candidate is None:
                return None
            now = self.clock()
            async with timeit("inventory.claim"):
                won = await self.inventory.claim(
                    candidate["code"], event.sender_email, now, self.valid_for
                )
            if won:
                candidate.update(
                    used=True,
                    used_by=event.sender_email,
                    used_at=now,
                    expiry_date=now + self.valid_for,
                )
                return candidate
            logger.info(
                "lost claim race for voucher %s (attempt %d/%d)",
                candidate["code"], attempt, CLAIM_ATTEMPTS,
            )
        return None

    async def _bind(
        self, tx: Dict[str, Any], event: CallbackEvent,
        voucher: Dict[str, Any],
    ) -> AllocationOutcome:
        code = voucher["code"]
        try:
            async with timeit("ledger.bind"):
                bound = await self.ledger.mark_successful(
                    tx["id"],
                    voucher_code=code,
                    transaction_id=event.id,
                    bill_link_id=event.bill_link_id,
                    now=voucher["used_at"],
                    expiry_date=voucher["expiry_date"],
                    product_name=voucher["product_name"],
                )
        except Exception as exc:
            await self._compensate(code)
            raise AllocationError(
                f"binding voucher {code} to transaction {tx['id']} failed",
                voucher_code=code,
            ) from exc

        if not bound:
            # a concurrent delivery (or the reaper) settled this row first
            await self._compensate(code)
            current = await self.ledger.get(tx["id"])
            return self._replay(current, event)

        logger.info(
            "transaction %s (%s) SUCCESSFUL with voucher %s",
            tx["id"], event.id, code,
        )
        await self._notify(event, voucher, tx.get("name"))
        return AllocationOutcome(
            status=SUCCESSFUL,
            message="Transaction updated to SUCCESSFUL",
            transaction_id=event.id,
            voucher_code=code,
        )

    async def _confirm_reserved(
        self, tx: Dict[str, Any], event: CallbackEvent
    ) -> AllocationOutcome:
        code = tx["voucher_code"]
        now = self.clock()
        # rows reserved outside the purchase flow may lack owner and dates
        await self.inventory.stamp_claim(
            code, tx["email"], now, self.valid_for
        )
        voucher = await self.inventory.get_voucher(code)
        if voucher is None:
            logger.error(
                "transaction %s references unknown voucher %s", tx["id"], code
            )
            voucher = {
                "code": code,
                "product_name": tx["product_name"],
                "amount": tx["amount"],
                "discounted_amount": tx["discounted_amount"],
                "used_at": now,
                "expiry_date": None,
            }
        expiry = voucher.get("expiry_date") or now + self.valid_for
        voucher["expiry_date"] = expiry
        bound = await self.ledger.mark_successful(
            tx["id"],
            voucher_code=code,
            expected_code=code,
            transaction_id=event.id,
            bill_link_id=event.bill_link_id,
            now=now,
            expiry_date=expiry,
        )
        if not bound:
            return self._replay(await self.ledger.get(tx["id"]), event)
        logger.info(
            "transaction %s (%s) SUCCESSFUL with reserved voucher %s",
            tx["id"], event.id, code,
        )
        await self._notify(event, voucher, tx.get("name"))
        return AllocationOutcome(
            status=SUCCESSFUL,
            message="Transaction updated to SUCCESSFUL",
            transaction_id=event.id,
            voucher_code=code,
        )

    async def _confirm_unfulfilled(
        self, tx: Dict[str, Any], event: CallbackEvent
    ) -> AllocationOutcome:
        # the payment went through; running out of codes is not a failure
        done = await self.ledger.mark_successful(
            tx["id"],
            voucher_code=None,
            transaction_id=event.id,
            bill_link_id=event.bill_link_id,
            now=self.clock(),
        )
        if not done:
            return self._replay(await self.ledger.get(tx["id"]), event)
        logger.warning(
            "%s: payment %s succeeded but no voucher is available for "
            "product %r; transaction %s needs operator attention",
            NOTE_NO_INVENTORY, event.id, tx["product_name"], tx["id"],
        )
        return AllocationOutcome(
            status=SUCCESSFUL,
            message="Payment successful but no vouchers available",
            transaction_id=event.id,
            unfulfilled=True,
        )

    async def _compensate(self, code: str) -> None:
        try:
            async with timeit("inventory.release"):
                await self.inventory.release([code])
        except Exception as exc:
            logger.critical(
                "voucher %s is claimed but bound to no transaction and "
                "could not be released", code,
            )
            raise StrandedVoucher(
                f"voucher {code} stranded", voucher_code=code
            ) from exc
        logger.warning("released voucher %s after an unbound claim", code)

    # ------------------------------------------------------------------
    # PENDING/SUCCESSFUL -> CANCELLED/FAILED/EXPIRED
    # ------------------------------------------------------------------
    async def close(self, event: CallbackEvent) -> AllocationOutcome:
        async with timeit("matcher.match"):
            tx = await self.matcher.match(event)
        if tx is None:
            pk = await self._record(event, event.status)
            if pk is None:
                tx = await self.matcher.match_exact(event)
            if tx is None:
                if pk is None:
                    raise AllocationError(
                        f"could not record transaction for callback {event.id}"
                    )
                return AllocationOutcome(
                    status=event.status,
                    message=f"Transaction recorded as {event.status}",
                    transaction_id=event.id,
                )

        for _ in range(CLOSE_ATTEMPTS):
            if tx["status"] in NEGATIVE:
                return self._replay(tx, event)
            async with timeit("ledger.close"):
                closed = await self.ledger.close_negative(
                    tx["id"],
                    status=event.status,
                    seen_status=tx["status"],
                    seen_code=tx["voucher_code"],
                    transaction_id=event.id,
                    bill_link_id=event.bill_link_id,
                    now=self.clock(),
                )
            if closed:
                released = bool(tx["voucher_code"])
                logger.info(
                    "transaction %s (%s) %s -> %s%s",
                    tx["id"], event.id, tx["status"], event.status,
                    f", released voucher {tx['voucher_code']}"
                    if released else "",
                )
                return AllocationOutcome(
                    status=event.status,
                    message=f"Transaction updated to {event.status}",
                    transaction_id=event.id,
                    voucher_code=tx["voucher_code"],
                    voucher_released=released,
                )
            tx = await self.ledger.get(tx["id"])
        raise AllocationError(
            f"transaction {tx['id']} kept changing while closing as "
            f"{event.status}"
        )

    # ------------------------------------------------------------------
    # PENDING callbacks: remember the gateway ids, change nothing else
    # ------------------------------------------------------------------
    async def observe_pending(self, event: CallbackEvent) -> AllocationOutcome:
        tx = await self.matcher.match(event)
        if tx is None:
            return AllocationOutcome(
                status=PENDING,
                message="No matching transaction yet",
                transaction_id=event.id,
            )
        if tx["status"] != PENDING:
            return self._replay(tx, event)
        await self.ledger.link_gateway_ids(
            tx["id"], event.id, event.bill_link_id, self.clock()
        )
        return AllocationOutcome(
            status=PENDING,
            message="Awaiting final payment status",
            transaction_id=event.id,
        )

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    async def _adopt(
        self, event: CallbackEvent, status: str
    ) -> Optional[Dict[str, Any]]:
        pk = await self._record(event, status)
        if pk is None:
            return await self.matcher.match_exact(event)
        return await self.ledger.get(pk)

    async def _record(
        self, event: CallbackEvent, status: str
    ) -> Optional[int]:
        """
        Record a callback that matched nothing. The unique transaction_id
        collapses concurrent deliveries onto one row; None means another
        delivery inserted it first.
        """
        now = self.clock()
        pk = await self.ledger.insert({
            "transaction_id": event.id,
            "bill_link_id": event.bill_link_id,
            "email": event.sender_email,
            "name": "Customer",
            "amount": event.amount,
            "status": status,
            "created_at": now,
        })
        if pk is not None:
            logger.warning(
                "callback %s from %s matched no pending transaction; "
                "recorded as new transaction %s (%s)",
                event.id, redact_email(event.sender_email), pk, status,
            )
        return pk

    def _replay(
        self, tx: Optional[Dict[str, Any]], event: CallbackEvent
    ) -> AllocationOutcome:
        if tx is None:
            raise AllocationError(f"transaction for {event.id} disappeared")
        return AllocationOutcome(
            status=tx["status"],
            message="Transaction already processed",
            transaction_id=tx["transaction_id"] or event.id,
            voucher_code=tx["voucher_code"],
            idempotent=True,
            unfulfilled=tx["note"] == NOTE_NO_INVENTORY,
        )

    async def _notify(
        self, event: CallbackEvent, voucher: Dict[str, Any],
        name: Optional[str],
    ) -> None:
        try:
            async with timeit("notifier.notify"):
                await self.notifier.notify(
                    event.sender_email, voucher, event.id, event.amount,
                    name=name,
                )
        except Exception:
            # the allocation is committed; a lost email is resendable
            logger.exception(
                "voucher notification for %s (%s) failed",
                event.id, redact_email(event.sender_email),
            )
