"""
Request dependencies: configuration, upstream client, and shared-secret access control.
"""

import hmac
import logging
from typing import Iterator

from fastapi import Depends, HTTPException, Request, status

from ampeco_client import AmpecoClient
from report_config import ReportConfig, load_config

logger = logging.getLogger("ampeco-api.middleware")


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------

def get_config() -> ReportConfig:
    """Load the active configuration.  Raises ConfigurationError (-> 500)."""
    return load_config()


def get_client(config: ReportConfig = Depends(get_config)) -> Iterator[AmpecoClient]:
    """One AMPECO client (and HTTP session) per request."""
    client = AmpecoClient(config)
    try:
        yield client
    finally:
        client.close()


def require_api_key(request: Request, config: ReportConfig = Depends(get_config)) -> None:
    """When INTERNAL_API_KEY is set, require it via x-api-key header or apiKey query."""
    expected = config.internal_api_key
    if not expected:
        return

    got = request.headers.get("x-api-key") or request.query_params.get("apiKey") or ""
    if not hmac.compare_digest(got.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Rejected %s %s: bad or missing API key", request.method, request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
