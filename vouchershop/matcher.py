from __future__ import annotations
from typing import Any, Dict, Optional
import logging

from .gateway import CallbackEvent
from .helpers import redact_email
from .model.ledger import LedgerStore

logger = logging.getLogger(__name__)


class Matcher:
    """
    Finds the local Transaction a callback refers to.

    Order: echoed client token (temp_id), gateway transaction id, bill link
    id, then the (email, amount, PENDING, not yet linked to a gateway
    id) heuristic, newest first. The heuristic cannot tell apart two pending
    purchases of the same amount by the same payer; it picks the most recent
    one.
    """

    def __init__(self, ledger: LedgerStore) -> None:
        self.ledger = ledger

    async def match(self, event: CallbackEvent) -> Optional[Dict[str, Any]]:
        tx = await self.match_exact(event)
        if tx is not None:
            return tx
        tx = await self.ledger.latest_pending_for(
            event.sender_email, event.amount
        )
        if tx is not None:
            logger.info(
                "callback %s matched pending transaction %s by "
                "email/amount (temp_id=%s)",
                event.id, tx["id"], tx["temp_id"],
            )
        else:
            logger.info(
                "no transaction for callback %s (%s, amount %s)",
                event.id, redact_email(event.sender_email), event.amount,
            )
        return tx

    async def match_exact(
        self, event: CallbackEvent
    ) -> Optional[Dict[str, Any]]:
        if event.reference:
            tx = await self.ledger.by_temp_id(event.reference)
            if tx is not None:
                return tx
        tx = await self.ledger.by_transaction_id(event.id)
        if tx is not None:
            return tx
        if event.bill_link_id is not None:
            tx = await self.ledger.by_bill_link_id(event.bill_link_id)
            # same link, different payment
            if tx is not None and tx["transaction_id"] not in (None, event.id):
                return None
            return tx
        return None
