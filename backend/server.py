from fastapi import FastAPI, APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import logging
import time
from pathlib import Path
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
import traceback

# Load environment variables first
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Import configuration
from config import Settings, get_settings, get_cors_config, validate_environment

# Import logging and error tracking
from logging_config import setup_logging, get_logger, set_request_context, clear_request_context
from sentry_integration import init_sentry, capture_exception

# Import database and routers
from database import connection as db_connection
from database import init_engine, init_db, dispose_engine
from reconciliation.endpoints import reconciliation_router, transactions_router, invoices_router
from reconciliation.repository import InMemoryReconciliationRepository, SqlReconciliationRepository
from reconciliation.services import ReconciliationService

logger = get_logger(__name__)


async def build_service(settings: Settings) -> ReconciliationService:
    """Create the reconciliation service on the configured storage backend."""
    if settings.uses_memory_storage:
        logger.warning("Using in-memory storage; data is lost on restart")
        repository = InMemoryReconciliationRepository()
    else:
        session_factory = init_engine(
            settings.get_database_url(),
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
        )
        await init_db()
        logger.info("PostgreSQL connection established")
        repository = SqlReconciliationRepository(session_factory)

    return ReconciliationService.from_settings(repository, settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler"""
    settings: Settings = app.state.settings

    # Startup
    logger.info("=" * 60)
    logger.info("Starting Invoice Reconciliation API...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Storage Backend: {settings.STORAGE_BACKEND}")
    logger.info(f"Debug Mode: {settings.debug_enabled}")
    logger.info("=" * 60)

    # Validate environment
    env_status = validate_environment()
    if not env_status["valid"]:
        for error in env_status["errors"]:
            logger.error(f"Configuration Error: {error}")
        if settings.is_production:
            raise RuntimeError("Cannot start in production with invalid configuration")

    for warning in env_status.get("warnings", []):
        logger.warning(f"Configuration Warning: {warning}")

    if app.state.reconciliation_service is None:
        try:
            app.state.reconciliation_service = await build_service(settings)
        except Exception as e:
            logger.error(f"Failed to initialize storage: {e}")
            raise

    service: ReconciliationService = app.state.reconciliation_service
    await service.rebuild_invoice_index()

    logger.info("Invoice Reconciliation API started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Invoice Reconciliation API...")
    await service.worker.wait_all()
    await dispose_engine()


def create_app(service: Optional[ReconciliationService] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        service: Pre-built reconciliation service (tests); built from settings at startup otherwise
        settings: Settings override; the cached environment settings by default
    """
    settings = settings or get_settings()

    # Use JSON format in production, plain text in development
    setup_logging(
        level=settings.LOG_LEVEL,
        json_format=settings.is_production,
        service_name="invoice-recon"
    )

    # Initialize Sentry error tracking
    if settings.SENTRY_DSN:
        init_sentry(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            traces_sample_rate=0.1 if settings.is_production else 0.0,
        )

    app = FastAPI(
        title=settings.API_TITLE,
        description="""
        ## Invoice Reconciliation API

        Matches bank statement transactions against outstanding invoices.

        ### Reconciliation (/api/reconciliation)
        - Upload bank statements; batches are ingested in the background
        - Poll batch progress and statistics
        - Page through transactions by status or search text
        - Bulk confirm auto-matched transactions

        ### Transactions (/api/transactions)
        - Confirm, reject, manually match or mark external
        - Match audit trail

        ### Invoices (/api/invoices)
        - CSV upload and invoice index rebuild
        """,
        version=settings.API_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs" if settings.debug_enabled else None,
        redoc_url="/api/redoc" if settings.debug_enabled else None,
    )

    app.state.settings = settings
    app.state.reconciliation_service = service
    app.state.upload_dir = settings.UPLOAD_DIR
    app.state.upload_max_bytes = settings.UPLOAD_MAX_SIZE_MB * 1024 * 1024

    # Create a router with the /api prefix
    api_router = APIRouter(prefix="/api")

    # ==================== HEALTH CHECK ENDPOINTS ====================

    @api_router.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """
        Detailed health check for load balancers and uptime monitors.

        Returns:
        - 200: All systems operational
        - 503: Database or reconciliation service unavailable
        """
        health_status = {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": settings.API_VERSION,
            "environment": settings.ENVIRONMENT,
            "storage_backend": settings.STORAGE_BACKEND,
            "checks": {}
        }

        recon_service: Optional[ReconciliationService] = request.app.state.reconciliation_service
        if recon_service is None:
            health_status["status"] = "unhealthy"
            health_status["checks"]["reconciliation"] = {"status": "not_initialized"}
        else:
            health_status["checks"]["reconciliation"] = {
                "status": "ready",
                "indexed_amounts": recon_service.index.amount_count,
                "indexed_invoices": recon_service.index.invoice_count,
                "active_batches": len(recon_service.worker.active_batches),
            }

        # Check PostgreSQL connection
        if db_connection.engine is not None:
            try:
                from sqlalchemy import text

                async with db_connection.engine.begin() as conn:
                    result = await conn.execute(text("SELECT 1"))
                    result.fetchone()

                health_status["checks"]["database"] = {
                    "status": "connected",
                    "type": "postgresql"
                }
            except Exception as e:
                logger.error(f"Database health check failed: {e}")
                health_status["status"] = "unhealthy"
                health_status["checks"]["database"] = {
                    "status": "disconnected",
                    "error": str(e)
                }

        # Check configuration
        env_status = validate_environment()
        health_status["checks"]["configuration"] = {
            "status": "valid" if env_status["valid"] else "invalid",
            "warnings": len(env_status.get("warnings", [])),
            "errors": len(env_status.get("errors", []))
        }

        # Return appropriate status code
        if health_status["status"] == "unhealthy":
            raise HTTPException(status_code=503, detail=health_status)

        return health_status

    api_router.include_router(reconciliation_router)
    api_router.include_router(transactions_router)
    api_router.include_router(invoices_router)

    app.include_router(api_router)

    # ==================== MIDDLEWARE ====================

    # CORS middleware with production-safe configuration
    app.add_middleware(
        CORSMiddleware,
        **get_cors_config()
    )

    # Request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests with timing information"""
        start_time = time.time()

        # Generate request ID
        request_id = request.headers.get("X-Request-ID", f"req-{int(start_time * 1000)}")
        set_request_context(request_id)

        if settings.debug_enabled:
            logger.debug(f"[{request_id}] {request.method} {request.url.path}")

        try:
            response = await call_next(request)

            process_time = time.time() - start_time

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))

            if settings.debug_enabled or response.status_code >= 400:
                logger.info(f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({process_time:.3f}s)")

            return response
        except Exception as e:
            logger.error(f"[{request_id}] Request failed: {str(e)}")
            raise
        finally:
            clear_request_context()

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle uncaught exceptions"""
        logger.error(f"Unhandled exception: {exc}")
        capture_exception(exc, path=request.url.path)
        if settings.debug_enabled:
            logger.error(traceback.format_exc())

        # Don't expose internal errors in production
        if settings.is_production:
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal server error"}
            )
        return JSONResponse(
            status_code=500,
            content={
                "detail": str(exc),
                "type": type(exc).__name__,
            }
        )

    return app


# Create the main app
app = create_app()
