"""
FastAPI application - Main entry point
"""

from dotenv import load_dotenv

load_dotenv()

import logging
import os
import time
from datetime import datetime
from typing import Optional
from urllib.parse import urlparse

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import src.api.endpoints.payments as payments_module
from src.api.endpoints.payments import payments_api, validation_message
from src.database.payment_store import InMemoryPaymentStore, PaymentStore
from src.error_handler import ErrorHandler, PaymentError
from src.integrations.clients.mocks.daraja import DarajaMockClient
from src.integrations.contracts.interfaces import PaymentGateway
from src.integrations.policy.payment_service import PaymentService
from src.utils.config_loader import ServerConfig, load_daraja_config, load_server_config

SERVICE_NAME = "mpesa-daraja"
SERVICE_VERSION = "1.0.0"

# Setup logging
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

error_handler = ErrorHandler()


# ============================================================================
# DEPENDENCY INJECTION
# ============================================================================

def _should_use_real_integrations() -> bool:
    mode = os.getenv("INTEGRATIONS_MODE", "").strip().lower()
    if mode in {"real", "live"}:
        return True
    if mode in {"mock", "test"}:
        return False
    return bool(os.getenv("MPESA_CONSUMER_KEY"))


def build_gateway() -> PaymentGateway:
    if _should_use_real_integrations():
        from src.integrations.clients.real_http.daraja import DarajaClient

        return DarajaClient(load_daraja_config())

    logger.warning("Daraja credentials not configured; using the mock gateway client")
    return DarajaMockClient()


def build_store() -> PaymentStore:
    # Use a SQL store when DATABASE_URL is set, else the in-memory store
    if os.getenv("DATABASE_URL"):
        from src.database.payment_store_sql import SqlPaymentStore

        return SqlPaymentStore(connection_string=os.environ["DATABASE_URL"])
    return InMemoryPaymentStore()


def create_app(
    service: Optional[PaymentService] = None,
    store: Optional[PaymentStore] = None,
    server_config: Optional[ServerConfig] = None,
) -> FastAPI:
    server_config = server_config or load_server_config()
    if service is None:
        store = store or build_store()
        service = PaymentService(store, build_gateway())

    app = FastAPI(
        title="M-Pesa Daraja Payments API",
        description="STK push payments with callback reconciliation",
        version=SERVICE_VERSION,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log every request with timing."""
        start = time.perf_counter()
        response = await call_next(request)
        duration = round((time.perf_counter() - start) * 1000, 1)
        logger.info("[Request] %s %s %s %sms", request.method, request.url.path, response.status_code, duration)
        return response

    payments_module.payment_service = service
    app.include_router(payments_api, prefix="/api/payments", tags=["Payments"])

    # ------------------------------------------------------------------------
    # Service endpoints
    # ------------------------------------------------------------------------

    @app.get("/", tags=["Health"])
    async def root():
        return {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "environment": server_config.app_env,
            "timestamp": datetime.now().isoformat(),
            "endpoints": {
                "health": "GET /health",
                "ready": "GET /health/ready",
                "payments": "GET/POST /api/payments",
                "query": "POST /api/payments/query",
                "validation": "GET /api/payments/validation",
                "callback": "POST /api/payments/callback (Daraja webhook)",
            },
        }

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Liveness probe."""
        return {"status": "ok", "service": SERVICE_NAME}

    @app.get("/health/ready", tags=["Health"])
    async def readiness_check():
        """Readiness: checks Daraja credentials by requesting an access token."""
        try:
            await service.gateway.authenticate()
        except PaymentError as e:
            logger.error("[Health] Daraja token check failed: %s", e)
            content = {"status": "unhealthy", "service": SERVICE_NAME, "daraja": "token_failed"}
            if not server_config.is_production:
                content["detail"] = str(e)[:200]
            return JSONResponse(status_code=503, content=content)
        return {"status": "ok", "service": SERVICE_NAME, "daraja": "connected"}

    # ------------------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        # Unparsable JSON bodies are rejected before the route runs.
        return JSONResponse(status_code=400, content={"success": False, "error": validation_message(exc)})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        message = "Not found" if exc.status_code == 404 else str(exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": message})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        return JSONResponse(
            status_code=500,
            content=error_handler.handle_exception(exc, context={"path": request.url.path}),
        )

    # ------------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------------

    @app.on_event("startup")
    async def startup_event():
        """Initialize on startup"""
        logger.info("Starting %s (gateway=%s)...", SERVICE_NAME, type(service.gateway).__name__)

        db_url = os.getenv("DATABASE_URL", "")
        if db_url:
            parsed = urlparse(db_url)
            logger.info("DATABASE_URL target: scheme=%s host=%s db=%s",
                        parsed.scheme, parsed.hostname, (parsed.path or "").lstrip("/"))
        else:
            logger.info("DATABASE_URL not set; using in-memory payment store")

        if store is not None:
            store.create_tables()
            logger.info("Payment tables initialized")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("src.api.main:app", host="0.0.0.0", port=load_server_config().port)
