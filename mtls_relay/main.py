"""
FastAPI Relay Application Factory
=================================

This is the main entry point for the mTLS relay that sits between callers
that cannot present a client certificate and the SKAT eIndkomst gateway.

Architecture:
    Edge Function → Relay (this service, plain HTTP) → SKAT (mTLS, port 444)

Routes:
    - OPTIONS *     : CORS preflight
    - GET /health   : Health check (degraded when the certificate failed to load)
    - GET /debug    : Extended diagnostics
    - POST /proxy   : Forward the body to SKAT (X-API-Key required if configured)

Environment Variables:
    - OCES3_CERTIFICATE_BASE64: Base64-encoded PKCS#12 client certificate bundle
    - OCES3_CERTIFICATE_PASSWORD: Bundle passphrase
    - PROXY_API_KEY: Optional shared secret for the X-API-Key header
    - PORT: Listen port (default: 3000)
    - HOST: Listen interface (default: 0.0.0.0)
    - LOG_LEVEL: Logging level (default: INFO)
    - UPSTREAM_TIMEOUT_SECONDS: Outbound call timeout (default: 120)

Running the Service:
    Development:
        uvicorn mtls_relay.main:app --reload --port 3000

    Production:
        mtls-relay
"""

import asyncio
import logging
import sys
import threading
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI

from . import __version__
from .config import UPSTREAM_HOST, UPSTREAM_PORT, Settings, get_settings
from .diagnostics import diagnostics_router
from .gate import RequestGate, RequestGateMiddleware
from .identity import load_identity
from .proxy import ForwardingEngine, proxy_router

logger = logging.getLogger("mtls_relay.main")


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


# =============================================================================
# Process-wide safety net
# =============================================================================

def _log_loop_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    exc = context.get("exception")
    logger.error(
        f"Unhandled rejection: {context.get('message', exc)}",
        exc_info=exc,
    )


def _log_uncaught_exception(exc_type, exc, tb) -> None:
    logger.error(f"Uncaught exception: {exc}", exc_info=(exc_type, exc, tb))


def _log_thread_exception(args: threading.ExceptHookArgs) -> None:
    logger.error(
        f"Uncaught exception in thread {args.thread.name if args.thread else '?'}: {args.exc_value}",
        exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
    )


def install_crash_guards() -> None:
    """Log and swallow anything that escapes request handling; never exit."""
    asyncio.get_running_loop().set_exception_handler(_log_loop_exception)
    sys.excepthook = _log_uncaught_exception
    threading.excepthook = _log_thread_exception


def log_startup_banner(app: FastAPI) -> None:
    settings: Settings = app.state.settings
    identity = app.state.identity

    logger.info("========================================")
    logger.info(f"mTLS relay for SKAT running on port {settings.PORT}")
    logger.info(f"Certificate loaded: {identity.has_certificate} ({identity.cert_size} bytes)")
    logger.info(f"Password configured: {identity.has_password}")
    logger.info(f"API key required: {settings.api_key_required}")
    logger.info(f"Target: {UPSTREAM_HOST}:{UPSTREAM_PORT}")
    if identity.load_error:
        logger.warning(f"WARNING: {identity.load_error}")
    logger.info("========================================")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup: install crash guards, log the configuration banner.
    Shutdown: close the outbound mTLS client.
    """
    install_crash_guards()
    log_startup_banner(app)

    yield

    logger.info("Shutting down relay")
    await app.state.engine.aclose()
    logger.info("Relay shutdown complete")


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Application factory function.

    Loads the client identity once and shares it (read-only) with the gate,
    the forwarding engine and the diagnostics routes.

    Args:
        settings: Settings to use instead of the environment
        transport: Outbound httpx transport override (used by tests)

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    identity = load_identity(settings)

    app = FastAPI(
        title="mTLS Relay",
        description="Mutual-TLS forwarding relay for the SKAT eIndkomst gateway",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    app.state.settings = settings
    app.state.identity = identity
    app.state.engine = ForwardingEngine(settings, identity, transport=transport)

    app.add_middleware(RequestGateMiddleware, gate=RequestGate(settings, identity))

    app.include_router(diagnostics_router, tags=["System"])
    app.include_router(proxy_router, tags=["Proxy"])

    return app


def run() -> None:
    """Console entry point: serve the relay with uvicorn on HOST:PORT."""
    settings = get_settings()

    uvicorn.run(
        "mtls_relay.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


app = create_app()


if __name__ == "__main__":
    run()
