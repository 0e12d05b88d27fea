from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import parse_qs
import hashlib
import hmac
import json
import math

from .errors import InvalidCallback, InvalidSignature
from .helpers import is_valid_email
from .model.db import CANCELLED, EXPIRED, FAILED, PENDING, SUCCESSFUL

# gateway spellings -> ledger status
_STATUS_ALIASES = {
    "SUCCESSFUL": SUCCESSFUL,
    "SUCCESS": SUCCESSFUL,
    "SUCCEEDED": SUCCESSFUL,
    "PAID": SUCCESSFUL,
    "PENDING": PENDING,
    "CANCELLED": CANCELLED,
    "CANCELED": CANCELLED,
    "FAILED": FAILED,
    "FAILURE": FAILED,
    "EXPIRED": EXPIRED,
}


def parse_amount(raw: Any) -> int:
    """Whole currency units. "10000.00" passes; 99.5 and blanks do not."""
    if raw is None or isinstance(raw, bool) or str(raw).strip() == "":
        raise InvalidCallback("missing amount")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise InvalidCallback("invalid amount") from None
    if not math.isfinite(value) or not value.is_integer():
        raise InvalidCallback(f"amount must be a whole number: {raw}")
    return int(value)


def normalize_status(raw: Any) -> str:
    key = str(raw or "").strip().upper()
    try:
        return _STATUS_ALIASES[key]
    except KeyError:
        raise InvalidCallback(f"unknown payment status: {raw!r}") from None


@dataclass(frozen=True)
class CallbackEvent:
    """Canonical gateway notification."""
    id: str
    amount: int
    status: str
    sender_email: str
    bill_link_id: Optional[int] = None
    # client token echoed back by the gateway (our temp_id), if any
    reference: Optional[str] = None
    payment_method: Optional[str] = None


# ----------------------------
# Callback Adapter Interface
# ----------------------------
class CallbackAdapter(ABC):
    @abstractmethod
    def verify(self, payload: bytes, headers: Dict[str, str]) -> None: ...

    # raw body -> gateway dict
    @abstractmethod
    def parse(self, payload: bytes, content_type: str) -> Dict[str, Any]: ...

    @abstractmethod
    def normalize(self, body: Dict[str, Any]) -> CallbackEvent: ...

    def event_from_request(
        self, payload: bytes, headers: Dict[str, str]
    ) -> CallbackEvent:
        self.verify(payload, headers)
        body = self.parse(payload, headers.get("content-type", ""))
        return self.normalize(body)


# ----------------------------
# Flip implementation
# ----------------------------
class FlipAdapter(CallbackAdapter):
    """
    Flip posts either plain JSON or a form with the JSON document in a
    `data` field. Both shapes, and the field spellings seen over time,
    collapse into one CallbackEvent.
    """

    SIGNATURE_HEADERS = ("x-callback-signature", "x-flip-signature")

    def __init__(self, secret: str = "") -> None:
        self.secret = secret

    def verify(self, payload: bytes, headers: Dict[str, str]) -> None:
        if not self.secret:
            return
        sig = next(
            (headers[h] for h in self.SIGNATURE_HEADERS if headers.get(h)),
            None,
        )
        expected = hmac.new(
            self.secret.encode(), payload, hashlib.sha256
        ).hexdigest()
        if not sig or not hmac.compare_digest(expected, sig.strip().lower()):
            raise InvalidSignature("invalid callback signature")

    def parse(self, payload: bytes, content_type: str) -> Dict[str, Any]:
        text = payload.decode("utf-8", errors="replace")
        if "application/x-www-form-urlencoded" in content_type:
            form = parse_qs(text, keep_blank_values=True)
            data = (form.get("data") or [""])[0]
            if not data:
                raise InvalidCallback("no 'data' parameter in form")
            text = data
        try:
            body = json.loads(text)
        except json.JSONDecodeError:
            raise InvalidCallback("callback body is not JSON") from None
        if not isinstance(body, dict):
            raise InvalidCallback("callback body is not an object")
        return body

    def normalize(self, body: Dict[str, Any]) -> CallbackEvent:
        tx_id = str(body.get("id") or body.get("transaction_id") or "").strip()
        email = str(
            body.get("sender_email") or body.get("email") or ""
        ).strip().lower()
        if not tx_id or not email:
            raise InvalidCallback("missing required fields")
        if not is_valid_email(email):
            raise InvalidCallback("invalid sender_email")

        amount = parse_amount(body.get("amount"))

        bill_link_id = body.get("bill_link_id")
        if bill_link_id in ("", None):
            bill_link_id = None
        else:
            try:
                bill_link_id = int(bill_link_id)
            except (TypeError, ValueError):
                raise InvalidCallback("invalid bill_link_id") from None

        reference = body.get("reference") or body.get("temp_id")
        return CallbackEvent(
            id=tx_id,
            amount=amount,
            status=normalize_status(body.get("status")),
            sender_email=email,
            bill_link_id=bill_link_id,
            reference=str(reference) if reference else None,
            payment_method=body.get("payment_method"),
        )
