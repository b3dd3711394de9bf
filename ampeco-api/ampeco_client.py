"""
AMPECO public API client.

Thin wrapper over a ``requests.Session`` carrying the bearer token.  Every
GET goes through ``get_json`` which:
  - gives each attempt its own timeout (nothing is shared between attempts)
  - retries 429 / 5xx and connection failures with capped exponential backoff
  - fails fast on other 4xx and on non-JSON bodies

Backoff after failed attempt *n* (1-based):
    min(backoff_cap, backoff_base * 2 ** (n - 1))
With the defaults (0.3 s base, 5 s cap, 4 attempts) that is 0.3, 0.6, 1.2 s.
"""

import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import quote, urljoin

import requests

from report_config import ReportConfig

logger = logging.getLogger("ampeco-api.client")

BODY_PREVIEW_CHARS = 500

SESSIONS_PATH = "/public-api/resources/sessions/v1.0"
TRANSACTIONS_PATH = "/public-api/resources/transactions/v1.0"
USERS_PATH = "/public-api/resources/users/v1.0"


class UpstreamError(Exception):
    """An AMPECO request failed (HTTP error, bad body, or transport failure)."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = "",
                 url: str = "", attempts: int = 1):
        super().__init__(message)
        self.status = status
        self.body = body
        self.url = url
        self.attempts = attempts

    @property
    def retryable(self) -> bool:
        return self.status is None or is_retryable_status(self.status)


def is_retryable_status(status: int) -> bool:
    return status == 429 or 500 <= status <= 599


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Seconds to wait after failed attempt *attempt* (1-based)."""
    return min(cap, base * (2 ** (attempt - 1)))


def sessions_path() -> str:
    return SESSIONS_PATH


def session_consumption_stats_path(session_id) -> str:
    return f"{SESSIONS_PATH}/{quote(str(session_id), safe='')}/consumption-stats"


def transactions_path() -> str:
    return TRANSACTIONS_PATH


def user_invoice_details_path(user_id) -> str:
    return f"{USERS_PATH}/{quote(str(user_id), safe='')}/invoice-details"


def user_profile_path(user_id) -> str:
    return f"{USERS_PATH}/{quote(str(user_id), safe='')}"


class AmpecoClient:
    """HTTP client for the AMPECO public API."""

    def __init__(self, config: ReportConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.base = config.base_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update({
            "accept": "application/json",
            "authorization": f"Bearer {config.token}",
        })

    def close(self):
        self.session.close()

    def resolve(self, path_or_url: str) -> str:
        """Absolute URLs pass through; paths resolve against the API base."""
        if path_or_url.startswith(("http://", "https://")):
            return path_or_url
        return urljoin(self.base + "/", path_or_url)

    def get_json(self, path_or_url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET and decode JSON, retrying transient failures.

        Returns None for an empty 2xx body.  Raises UpstreamError otherwise.
        """
        url = self.resolve(path_or_url)
        max_attempts = max(1, self.config.http_max_attempts)
        last_error: Optional[UpstreamError] = None

        for attempt in range(1, max_attempts + 1):
            try:
                r = self.session.get(url, params=params, timeout=self.config.http_timeout)
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                last_error = UpstreamError(
                    f"AMPECO request failed: {e}", url=url, attempts=attempt,
                )
                logger.warning("GET %s transport error, attempt %d/%d: %s",
                               url, attempt, max_attempts, e)
            else:
                text = r.text or ""
                if 200 <= r.status_code < 300:
                    if not text.strip():
                        return None
                    try:
                        return r.json()
                    except ValueError:
                        raise UpstreamError(
                            f"Non-JSON response: {text[:BODY_PREVIEW_CHARS]}",
                            status=r.status_code, body=text[:BODY_PREVIEW_CHARS],
                            url=url, attempts=attempt,
                        )

                status_line = f"HTTP {r.status_code} {r.reason or ''}".rstrip()
                last_error = UpstreamError(
                    f"{status_line}: {text[:BODY_PREVIEW_CHARS]}",
                    status=r.status_code, body=text[:BODY_PREVIEW_CHARS],
                    url=url, attempts=attempt,
                )
                if not last_error.retryable:
                    raise last_error
                logger.warning("GET %s -> HTTP %d, attempt %d/%d",
                               url, r.status_code, attempt, max_attempts)

            if attempt < max_attempts:
                time.sleep(backoff_delay(attempt, self.config.backoff_base, self.config.backoff_cap))

        raise last_error
