from __future__ import annotations

import datetime as dt
import re
from typing import Optional

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def iso(ts: Optional[dt.datetime] = None) -> str:
    value = ts or utcnow()
    return value.replace(microsecond=0).isoformat()


DB_INT_MIN = -(2**63)
DB_INT_MAX = 2**63 - 1


def to_int(value: object, default: Optional[int] = None) -> Optional[int]:
    """Parse an id-like value; anything outside a signed 64-bit column maps to ``default``."""
    if value is None or isinstance(value, bool):
        return default
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    if not DB_INT_MIN <= parsed <= DB_INT_MAX:
        return default
    return parsed


def valid_email(value: str) -> bool:
    return bool(EMAIL_RE.match(value or ""))
