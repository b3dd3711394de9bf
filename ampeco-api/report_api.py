"""
AMPECO Reports API
==================
FastAPI service providing:
  - Station session report with day/night tariff split (JSON for n8n, XLSX)
  - Non-invoiced clients report from finalized card transactions
  - Monthly per-user energy report for a list of stations

Every response is JSON (or an XLSX attachment on explicit success); failures
use the envelope {"ok": false, "error": "..."}.

Environment variables (see report_config.py for the full list):
  AMPECO_BEARER_TOKEN - AMPECO API token (required)
  AMPECO_BASE_URL     - AMPECO tenant     (default: https://cp.ikrautas.lt)
  INTERNAL_API_KEY    - shared secret for callers (optional)
  AMPECO_API_PORT     - Port to bind      (default: 8100)
  LOG_LEVEL           - logging level     (default: INFO)
"""

import logging
import os
from datetime import datetime, timezone

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ampeco_client import UpstreamError
from middleware import get_config, require_api_key
from models import ErrorResponse, HealthResponse
from report_config import ConfigurationError, ReportConfig

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("ampeco-api")

PORT = int(os.environ.get("AMPECO_API_PORT", "8100"))

# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AMPECO Reports API",
    description="Charging session, tariff and invoicing reports over the AMPECO public API.",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------

def _error(status_code: int, message: str, headers=None, status=None, **extra) -> JSONResponse:
    body = ErrorResponse(error=message, status=status).model_dump(exclude_none=True)
    return JSONResponse(
        status_code=status_code,
        content={**body, **extra},
        headers=headers,
    )


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error("Configuration error: %s", exc)
    return _error(500, str(exc), missing=exc.missing)


@app.exception_handler(UpstreamError)
async def upstream_error_handler(request: Request, exc: UpstreamError):
    logger.error("Upstream failure on %s: %s", request.url.path, exc)
    return _error(502, str(exc), status=exc.status)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return _error(400, "Invalid request parameters", details=jsonable_encoder(exc.errors()))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s", request.url.path)
    return _error(500, str(exc) or exc.__class__.__name__)


# ---------------------------------------------------------------------------
# Mount report routers
# ---------------------------------------------------------------------------
from sessions import router as sessions_router
from transactions import router as transactions_router
from monthly_report import router as monthly_report_router

app.include_router(sessions_router)
app.include_router(transactions_router)
app.include_router(monthly_report_router)


# ---- Config ----

@app.get("/api/config", dependencies=[Depends(require_api_key)])
def config_endpoint(config: ReportConfig = Depends(get_config)):
    """Report defaults for callers; the token is never echoed."""
    return {
        "baseUrl": config.base_url,
        "timezone": config.timezone,
        "stations": [s.as_dict() for s in config.stations],
        "paymentRegex": config.payment_regex,
        "clockAlignedInterval": config.clock_aligned_interval,
        "apiKeyRequired": bool(config.internal_api_key),
    }


# ---- Health ----

@app.get("/health", response_model=HealthResponse)
@app.get("/api/health", response_model=HealthResponse)
def health():
    return HealthResponse(status="ok", timestamp=datetime.now(timezone.utc).isoformat())


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    logger.info("=" * 60)
    logger.info("AMPECO Reports API v%s", app.version)
    logger.info("Port: %d", PORT)
    logger.info("=" * 60)

    uvicorn.run(app, host="0.0.0.0", port=PORT, log_level="info")
