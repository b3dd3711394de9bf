"""
Record helpers shared by the report modules.

AMPECO payloads carry the same fact under several field names depending on
tenant and endpoint version.  Each such fact gets an ordered key list below;
``first_present`` walks it in order so the precedence stays visible and testable.
"""

import math
from datetime import datetime, timezone, tzinfo
from typing import Any, Iterable, Mapping, Optional

# ---------------------------------------------------------------------------
# Candidate keys, highest priority first
# ---------------------------------------------------------------------------

TRANSACTION_DATE_KEYS = ("createdAt", "finalizedAt", "lastUpdatedAt", "created_at")
TRANSACTION_AMOUNT_KEYS = ("totalAmount", "amount")

INVOICE_EMAIL_KEYS = ("email", "invoiceEmail", "billingEmail", "emailAddress")
PROFILE_EMAIL_KEYS = ("email", "emailAddress", "contactEmail", "username")

PERIOD_START_KEYS = ("startedAt", "start")
PERIOD_END_KEYS = ("stoppedAt", "end")
PERIOD_ENERGY_KEYS = ("energy", "energyConsumed")

SAMPLE_START_KEYS = ("start", "startedAt", "from", "periodStart")
SAMPLE_END_KEYS = ("end", "stoppedAt", "to", "periodEnd")
SAMPLE_ENERGY_KEYS = ("energyConsumed", "energyConsumption.total", "energy", "consumedEnergy")

SESSION_USER_KEYS = ("userId", "authorization.userId")


def _lookup(record: Mapping[str, Any], key: str) -> Any:
    value: Any = record
    for part in key.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value


def first_present(record: Optional[Mapping[str, Any]], keys: Iterable[str]) -> Any:
    """Return the first value among *keys* that is neither None nor an empty string.

    Keys may be dotted paths into nested dicts (``energyConsumption.total``).
    """
    if not isinstance(record, Mapping):
        return None
    for key in keys:
        value = _lookup(record, key)
        if value is None or value == "":
            continue
        return value
    return None


def first_number(record: Optional[Mapping[str, Any]], keys: Iterable[str]) -> Optional[float]:
    """Like first_present, but skips values that are not finite numbers."""
    if not isinstance(record, Mapping):
        return None
    for key in keys:
        n = safe_number(_lookup(record, key))
        if n is not None:
            return n
    return None


def safe_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) else None


def parse_timestamp(value: Any, default_tz: Optional[tzinfo] = None) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` accepted) into an aware datetime.

    Naive values are interpreted in *default_tz* (UTC when omitted).
    Returns None for empty or malformed input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if s.endswith("Z") or s.endswith("z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=default_tz or timezone.utc)
    return dt


def looks_like_email(value: Any) -> bool:
    return isinstance(value, str) and "@" in value and not value.startswith("@")


def clamp_int(value: Any, lo: int, hi: int, default: int) -> int:
    """Clamp a query value into [lo, hi]; non-numeric input yields *default*."""
    n = safe_number(value)
    if n is None:
        return default
    return max(lo, min(hi, int(n)))
