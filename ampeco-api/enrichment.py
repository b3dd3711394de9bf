"""
Transaction filtering and per-user invoice-preference enrichment.

Pipeline for the "clients without invoices" report:
  1. keep finalized, non-zero transactions paid with a masked card
     ("mastercard **** 4263")
  2. look up each distinct user's invoice-details once (thread pool, cached
     for the request), and the user profile only when invoice-details has no
     email
  3. keep transactions whose user explicitly has ``requireInvoice: false``

A missing invoice-details record or a failed lookup excludes the user: lack
of data never counts as "opted out".
"""

import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Pattern, Tuple

from ampeco_client import UpstreamError, user_invoice_details_path, user_profile_path
from fields import (
    INVOICE_EMAIL_KEYS,
    PROFILE_EMAIL_KEYS,
    TRANSACTION_AMOUNT_KEYS,
    TRANSACTION_DATE_KEYS,
    first_number,
    first_present,
    looks_like_email,
)

logger = logging.getLogger("ampeco-api.enrichment")

FINALIZED = "finalized"

# Outcome of one user's lookup
KEPT = "kept"
REQUIRES_INVOICE = "requireInvoiceTrue"
MISSING_DETAILS = "missingInvoiceDetails"
FETCH_FAILED = "invoiceFetchErrors"

COUNTER_KEYS = (
    "missingUserId",
    "invoiceFetchErrors",
    "missingInvoiceDetails",
    "requireInvoiceTrue",
    "profileFetchErrors",
    "emailMissing",
    "workerErrors",
)


# ---------------------------------------------------------------------------
# Filter
# ---------------------------------------------------------------------------

def filter_transactions(transactions: List[Dict[str, Any]],
                        pattern: Pattern) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
    """Apply the amount / status / payment-method filter.

    Returns (kept, drop_counts) where drop_counts is keyed by reason.
    """
    drops = {"zeroAmount": 0, "notFinalized": 0, "paymentMethodMismatch": 0}
    kept = []
    for t in transactions:
        amount = first_number(t, TRANSACTION_AMOUNT_KEYS)
        if amount is None or amount == 0:
            drops["zeroAmount"] += 1
            continue
        if str(t.get("status") or "") != FINALIZED:
            drops["notFinalized"] += 1
            continue
        if not pattern.search(str(t.get("paymentMethod") or "")):
            drops["paymentMethodMismatch"] += 1
            continue
        kept.append(t)
    return kept, drops


# ---------------------------------------------------------------------------
# Per-request lookup cache
# ---------------------------------------------------------------------------

class UserLookupCache:
    """Memoizes (value, error) per (kind, user_id) for one request.

    Two workers racing on the same key may both fetch; the first stored
    result wins.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._data: Dict[Tuple[str, str], Tuple[Any, Optional[str]]] = {}

    def __len__(self):
        with self._lock:
            return len(self._data)

    def fetch(self, kind: str, user_id: str, loader: Callable[[], Any]) -> Tuple[Any, Optional[str]]:
        key = (kind, user_id)
        with self._lock:
            if key in self._data:
                return self._data[key]
        try:
            entry = (loader(), None)
        except UpstreamError as e:
            logger.warning("%s lookup for user %s failed: %s", kind, user_id, e)
            entry = (None, str(e))
        with self._lock:
            return self._data.setdefault(key, entry)


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------

@dataclass
class UserLookup:
    outcome: str
    invoice_details: Optional[Dict[str, Any]] = None
    email: Optional[str] = None
    profile_error: bool = False
    error: Optional[str] = None


def _unwrap(payload: Any) -> Optional[Dict[str, Any]]:
    """Some tenants wrap single resources in {"data": {...}}."""
    if not isinstance(payload, dict):
        return None
    inner = payload.get("data")
    if isinstance(inner, dict) and "requireInvoice" not in payload:
        return inner
    return payload


def _email_from(record: Optional[Dict[str, Any]], keys) -> Optional[str]:
    if not record:
        return None
    for key in keys:
        value = first_present(record, (key,))
        if looks_like_email(value):
            return value
    return None


def lookup_user(client, user_id: str, cache: UserLookupCache) -> UserLookup:
    details_raw, error = cache.fetch(
        "invoice-details", user_id,
        lambda: client.get_json(user_invoice_details_path(user_id)),
    )
    if error:
        return UserLookup(FETCH_FAILED, error=error)

    details = _unwrap(details_raw)
    if not details:
        return UserLookup(MISSING_DETAILS)
    if details.get("requireInvoice") is not False:
        return UserLookup(REQUIRES_INVOICE, invoice_details=details)

    email = _email_from(details, INVOICE_EMAIL_KEYS)
    profile_error = False
    if email is None:
        profile_raw, perr = cache.fetch(
            "profile", user_id,
            lambda: client.get_json(user_profile_path(user_id)),
        )
        profile_error = perr is not None
        email = _email_from(_unwrap(profile_raw), PROFILE_EMAIL_KEYS)

    return UserLookup(KEPT, invoice_details=details, email=email, profile_error=profile_error)


# ---------------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------------

@dataclass
class EnrichmentResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    unique_users: int = 0
    counters: Dict[str, int] = field(default_factory=lambda: dict.fromkeys(COUNTER_KEYS, 0))


def _output_row(t: Dict[str, Any], lookup: UserLookup) -> Dict[str, Any]:
    return {
        "transactionId": t.get("id"),
        "userId": t.get("userId"),
        "status": t.get("status"),
        "totalAmount": t.get("totalAmount", t.get("amount")),
        "paymentMethod": t.get("paymentMethod"),
        "transactionDate": first_present(t, TRANSACTION_DATE_KEYS),
        "createdAt": first_present(t, ("createdAt", "created_at")),
        "requireInvoice": False,
        "userEmail": lookup.email,
        "invoiceDetails": lookup.invoice_details,
    }


def enrich(client, transactions: List[Dict[str, Any]], *, concurrency: int = 10,
           cache: Optional[UserLookupCache] = None) -> EnrichmentResult:
    """Keep the transactions of users who opted out of invoicing, with their email."""
    cache = cache or UserLookupCache()
    result = EnrichmentResult()

    # dict keeps first-seen order
    seen: Dict[str, None] = {}
    for t in transactions:
        uid = t.get("userId")
        if uid is None or uid == "":
            result.counters["missingUserId"] += 1
            continue
        seen.setdefault(str(uid), None)
    user_ids = list(seen)
    result.unique_users = len(user_ids)

    lookups: Dict[str, UserLookup] = {}
    if user_ids:
        with ThreadPoolExecutor(max_workers=max(1, concurrency)) as pool:
            futures = {pool.submit(lookup_user, client, uid, cache): uid for uid in user_ids}
            for fut in as_completed(futures):
                uid = futures[fut]
                try:
                    lookups[uid] = fut.result()
                except Exception as e:
                    logger.exception("Lookup worker for user %s crashed", uid)
                    result.counters["workerErrors"] += 1
                    lookups[uid] = UserLookup(FETCH_FAILED, error=str(e))

    for uid, lookup in lookups.items():
        if lookup.outcome != KEPT:
            result.counters[lookup.outcome] += 1
            continue
        if lookup.profile_error:
            result.counters["profileFetchErrors"] += 1
        if lookup.email is None:
            result.counters["emailMissing"] += 1

    for t in transactions:
        uid = t.get("userId")
        if uid is None or uid == "":
            continue
        lookup = lookups.get(str(uid))
        if lookup is not None and lookup.outcome == KEPT:
            result.rows.append(_output_row(t, lookup))

    logger.info("Enriched %d transactions over %d users: %d kept",
                len(transactions), len(user_ids), len(result.rows))
    return result


def compile_payment_regex(pattern: Optional[str], default: str) -> Pattern:
    """Compile the caller's pattern, or the default.  Raises re.error when invalid."""
    source = pattern.strip() if isinstance(pattern, str) and pattern.strip() else default
    return re.compile(source)
