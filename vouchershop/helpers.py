import time
import re
from datetime import datetime, timezone
import hmac
from typing import Optional

DAY_SECONDS = 24 * 60 * 60


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def from_date(day: str, end_of_day: bool = False) -> float:
    """'2025-01-31' -> epoch seconds at 00:00:00 (or 23:59:59) UTC."""
    d = datetime.strptime(day, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    ts = d.timestamp()
    return ts + DAY_SECONDS - 1 if end_of_day else ts


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def redact_email(email: Optional[str]) -> str:
    if not email or "@" not in email:
        return "***"
    user, domain = email.split("@", 1)
    if len(user) <= 2:
        return f"**@{domain}"
    return f"{user[:2]}***@{domain}"


def effective_price(amount: int | None, discounted_amount: int | None) -> int:
    if discounted_amount is not None:
        return int(discounted_amount)
    return int(amount or 0)
