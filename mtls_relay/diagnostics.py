"""
Diagnostics Surface
===================

Read-only snapshots of certificate and process state for health probes and
operators. Snapshots are computed on every call and never touch the
credential itself, so they work precisely when the certificate failed to load.

Endpoints:
----------
- GET /health: status ("ok" or "degraded"), certificate presence and size
- GET /debug:  health fields plus API-key flag, upstream target, runtime version
"""

import platform
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from .config import UPSTREAM_HOST, UPSTREAM_PORT, Settings
from .identity import ClientIdentity
from .models import DebugResponse, HealthResponse

diagnostics_router = APIRouter()

HEALTH_PATH = "/health"
DEBUG_PATH = "/debug"
DIAGNOSTICS_PATHS = frozenset({HEALTH_PATH, DEBUG_PATH})


def utc_timestamp() -> str:
    """Current time as ISO-8601 UTC with millisecond precision, e.g. 2024-01-01T00:00:00.000Z"""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def health_snapshot(identity: ClientIdentity) -> HealthResponse:
    return HealthResponse(
        status="degraded" if identity.load_error else "ok",
        timestamp=utc_timestamp(),
        hasCertificate=identity.has_certificate,
        hasPassword=identity.has_password,
        certSize=identity.cert_size,
        error=identity.load_error,
    )


def debug_snapshot(settings: Settings, identity: ClientIdentity) -> DebugResponse:
    return DebugResponse(
        timestamp=utc_timestamp(),
        hasCertificate=identity.has_certificate,
        hasPassword=identity.has_password,
        hasApiKey=settings.api_key_required,
        certSize=identity.cert_size,
        skatHost=UPSTREAM_HOST,
        skatPort=UPSTREAM_PORT,
        pythonVersion=platform.python_version(),
        error=identity.load_error,
    )


@diagnostics_router.get(HEALTH_PATH, response_model=HealthResponse, response_model_exclude_none=True)
async def health(request: Request) -> HealthResponse:
    return health_snapshot(request.app.state.identity)


@diagnostics_router.get(DEBUG_PATH, response_model=DebugResponse, response_model_exclude_none=True)
async def debug(request: Request) -> DebugResponse:
    """Debug endpoint to inspect relay configuration without calling SKAT."""
    return debug_snapshot(request.app.state.settings, request.app.state.identity)
