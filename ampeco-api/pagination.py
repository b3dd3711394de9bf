"""
Cursor pagination over AMPECO listing endpoints.

AMPECO listings return ``{"data": [...], "meta": {"next_cursor": ...},
"links": {"next": ...}}``.  The first page is requested with an explicit
cursor marker ("null" or empty) which switches the endpoint into cursor mode.

Sweeps: the listing can shift while we page through it (records inserted or
finalized mid-walk), so a cursor walk may skip or repeat rows.  ``fetch_all``
can re-walk from page 1 up to ``sweep_passes`` times, merging by record id
(first occurrence wins) and stopping as soon as a pass adds nothing new.
This narrows the gap; it does not guarantee a complete snapshot.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger("ampeco-api.pagination")

MAX_PER_PAGE = 100


@dataclass(frozen=True)
class PageLimits:
    """Caller-supplied safety caps, already clamped."""
    per_page: int = MAX_PER_PAGE
    max_pages: int = 200
    max_items: int = 20000
    sweep_passes: int = 1

    def as_kwargs(self) -> Dict[str, int]:
        return {
            "per_page": self.per_page,
            "max_pages": self.max_pages,
            "max_items": self.max_items,
            "sweep_passes": self.sweep_passes,
        }


@dataclass
class PaginationResult:
    records: List[Dict[str, Any]] = field(default_factory=list)
    pages_fetched: int = 0
    sweeps_run: int = 0
    truncated: bool = False
    cycle_detected: bool = False
    missing_id: int = 0


def next_pointer(payload: Any) -> Tuple[Optional[str], Optional[str]]:
    """Return ("cursor", value), ("url", value) or (None, None)."""
    if not isinstance(payload, dict):
        return None, None
    meta = payload.get("meta")
    if isinstance(meta, dict):
        cursor = meta.get("next_cursor")
        if cursor not in (None, "", "null"):
            return "cursor", str(cursor)
    links = payload.get("links")
    if isinstance(links, dict):
        nxt = links.get("next")
        if isinstance(nxt, str) and nxt:
            return "url", nxt
    return None, None


def _page_records(payload: Any) -> List[Any]:
    if isinstance(payload, dict):
        data = payload.get("data")
        return data if isinstance(data, list) else []
    if isinstance(payload, list):
        return payload
    return []


def fetch_all(
    client,
    path: str,
    params: Optional[Dict[str, Any]] = None,
    *,
    per_page: int = MAX_PER_PAGE,
    max_pages: int = 200,
    max_items: int = 20000,
    sweep_passes: int = 1,
    first_cursor: str = "null",
    id_key: str = "id",
) -> PaginationResult:
    """Walk every page of *path* and return the merged records.

    ``max_pages`` caps each pass, ``max_items`` caps the merged result; hitting
    either while the upstream still has data sets ``truncated``.  A pointer
    repeated on consecutive pages ends the pass with ``cycle_detected``.
    """
    per_page = max(1, min(MAX_PER_PAGE, int(per_page)))
    result = PaginationResult()
    seen: Dict[str, Dict[str, Any]] = {}

    for sweep in range(1, max(1, int(sweep_passes)) + 1):
        result.sweeps_run = sweep
        added = _walk(client, path, params, per_page, max_pages, max_items,
                      first_cursor, id_key, seen, result, count_missing=(sweep == 1))
        if result.truncated:
            break
        if sweep > 1 and added == 0:
            break
        if sweep == 1 and not seen:
            break
        logger.debug("Sweep %d of %s added %d records", sweep, path, added)

    result.records = list(seen.values())
    return result


def _walk(client, path, params, per_page, max_pages, max_items, first_cursor,
          id_key, seen, result: PaginationResult, count_missing: bool) -> int:
    """One pass from page 1.  Returns how many new ids it added."""
    query: Optional[Dict[str, Any]] = dict(params or {})
    query["per_page"] = per_page
    query["cursor"] = first_cursor
    target = path
    last_pointer: Optional[str] = None
    pages = 0
    added = 0

    while True:
        if pages >= max_pages:
            logger.warning("Pagination of %s stopped at max_pages=%d", path, max_pages)
            result.truncated = True
            return added

        payload = client.get_json(target, params=query)
        pages += 1
        result.pages_fetched += 1

        for rec in _page_records(payload):
            rid = rec.get(id_key) if isinstance(rec, dict) else None
            if rid is None or rid == "":
                if count_missing:
                    result.missing_id += 1
                continue
            key = str(rid)
            if key in seen:
                continue
            if len(seen) >= max_items:
                logger.warning("Pagination of %s stopped at max_items=%d", path, max_items)
                result.truncated = True
                return added
            seen[key] = rec
            added += 1

        kind, pointer = next_pointer(payload)
        if pointer is None:
            return added
        if pointer == last_pointer:
            logger.warning("Pagination of %s returned the same pointer twice, stopping: %s",
                           path, pointer)
            result.cycle_detected = True
            return added
        last_pointer = pointer

        if kind == "cursor":
            if query is None:
                query = dict(params or {})
                query["per_page"] = per_page
            query["cursor"] = pointer
            target = path
        else:
            # links.next already carries every query parameter
            target = client.resolve(pointer)
            query = None
