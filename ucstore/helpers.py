import time
import re
from datetime import datetime, timezone
import hmac
from decimal import Decimal, InvalidOperation
from typing import Any, Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def clean(value: Any) -> Optional[str]:
    """Strip form/JSON input down to a non-empty string or None."""
    if value is None:
        return None
    value = str(value).strip()
    return value or None


# largest value an Integer column holds on both SQLite and PostgreSQL
MAX_INT = 2**31 - 1


def as_positive_int(value: Any) -> Optional[int]:
    try:
        n = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return n if 0 < n <= MAX_INT else None


def as_positive_number(value: Any) -> Optional[float]:
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, TypeError, ValueError):
        return None
    if not d.is_finite() or d <= 0:
        return None
    return float(d)
