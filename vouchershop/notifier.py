from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import logging

import httpx

from .helpers import effective_price, redact_email, to_iso

logger = logging.getLogger(__name__)


def render_voucher_text(
    voucher: Dict[str, Any], transaction_id: Optional[str], amount: int,
    name: Optional[str] = None,
) -> str:
    face = int(voucher.get("amount") or 0)
    price = effective_price(face, voucher.get("discounted_amount"))
    lines = [
        f"Hi {name or 'Customer'},",
        "",
        "Thanks for your purchase. Here is your voucher:",
        "",
        f"  Product:      {voucher.get('product_name', '')}",
        f"  Code:         {voucher['code']}",
        f"  Transaction:  {transaction_id or '-'}",
        f"  Face value:   {face:,}",
        f"  Paid:         {amount or price:,}",
    ]
    if voucher.get("discounted_amount") is not None and face > 0:
        pct = round((face - price) * 100 / face)
        lines.append(f"  Discount:     {pct}%")
    expiry = to_iso(voucher.get("expiry_date"))
    if expiry:
        lines.append(f"  Valid until:  {expiry}")
    return "\n".join(lines) + "\n"


# ----------------------------
# Notifier Interface
# ----------------------------
class Notifier(ABC):
    """Best-effort delivery; callers swallow and log whatever this raises."""

    @abstractmethod
    async def notify(
        self,
        recipient_email: str,
        voucher: Dict[str, Any],
        transaction_id: Optional[str],
        amount: int,
        name: Optional[str] = None,
    ) -> None: ...


class LogNotifier(Notifier):
    """Used when no email API key is configured."""

    async def notify(self, recipient_email, voucher, transaction_id, amount,
                     name=None) -> None:
        logger.info(
            "voucher %s for transaction %s would be sent to %s",
            voucher.get("code"), transaction_id, redact_email(recipient_email),
        )


class ResendNotifier(Notifier):
    def __init__(self, http: httpx.AsyncClient, *, api_key: str, url: str,
                 sender: str, subject: str) -> None:
        self.http = http
        self.api_key = api_key
        self.url = url
        self.sender = sender
        self.subject = subject

    async def notify(self, recipient_email, voucher, transaction_id, amount,
                     name=None) -> None:
        r = await self.http.post(
            self.url,
            json={
                "from": self.sender,
                "to": recipient_email,
                "subject": self.subject,
                "text": render_voucher_text(
                    voucher, transaction_id, amount, name
                ),
            },
            headers={"authorization": f"Bearer {self.api_key}"},
        )
        r.raise_for_status()
        logger.info(
            "voucher email sent to %s (transaction %s)",
            redact_email(recipient_email), transaction_id,
        )
