from fastapi import FastAPI, APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import time
import uuid
from pathlib import Path
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
import traceback

# Load environment variables first
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from sqlalchemy import text

# Import configuration
from config import get_settings, validate_environment

# Import logging and error tracking
from logging_config import setup_logging, get_logger, set_request_context, clear_request_context
from sentry_integration import init_sentry, set_tag

from database import init_db, get_engine, get_session_factory
from rules_engine.store import (
    ConfigurationUnavailable, RuleSource, RuleStore, SqlRuleSource, StaticRuleSource
)
from rules_engine.endpoints.rules_api import router as rules_router
from reconciliation.store import InMemoryRecordStore, RecordStore
from reconciliation.endpoints.reconciliation_api import router as reconciliation_router

logger = get_logger(__name__)


def default_rule_source(settings) -> RuleSource:
    if settings.DATABASE_URL:
        return SqlRuleSource(get_session_factory())
    return StaticRuleSource(path=settings.RULES_CONFIG_PATH or None)


def create_app(
    rule_source: Optional[RuleSource] = None,
    record_store: Optional[RecordStore] = None,
) -> FastAPI:
    """
    Build the API.

    Without DATABASE_URL the app runs on in-memory stores; tests pass
    their own rule source and record store.
    """
    settings = get_settings()

    # JSON logs in production, plain text in development
    setup_logging(
        level=settings.LOG_LEVEL,
        json_format=settings.is_production,
        service_name="rule-engine"
    )

    if settings.SENTRY_DSN:
        init_sentry(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            release=settings.API_VERSION,
            traces_sample_rate=0.1 if settings.is_production else 0.0,
        )
        set_tag("service", "rule-engine")

    if record_store is None and not settings.DATABASE_URL:
        record_store = InMemoryRecordStore()

    rule_store = RuleStore(rule_source or default_rule_source(settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler"""
        logger.info("=" * 60)
        logger.info("Starting Rule Evaluation & Matching Engine...")
        logger.info(f"Environment: {settings.ENVIRONMENT}")
        logger.info(f"Debug Mode: {settings.debug_enabled}")
        logger.info("=" * 60)

        env_status = validate_environment()
        if not env_status["valid"]:
            for error in env_status["errors"]:
                logger.error(f"Configuration Error: {error}")
            if settings.is_production:
                raise RuntimeError("Cannot start in production with invalid configuration")

        for warning in env_status.get("warnings", []):
            logger.warning(f"Configuration Warning: {warning}")

        if settings.DATABASE_URL:
            try:
                await init_db(create_tables=settings.DB_CREATE_TABLES)
                logger.info("PostgreSQL connection established")
            except Exception as e:
                logger.error(f"Failed to initialize database: {e}")
                raise

        # Start degraded rather than not at all: eligibility returns the
        # neutral result until a refresh succeeds
        try:
            await rule_store.load()
        except ConfigurationUnavailable as e:
            logger.error(f"Starting without rules: {e}")

        logger.info("Rule engine API started successfully")

        yield

        logger.info("Shutting down rule engine API...")
        if settings.DATABASE_URL:
            await get_engine().dispose()

    app = FastAPI(
        title=settings.API_TITLE,
        description="""
        Rule evaluation and matching engine.

        ### Rules (/api/rules)
        - Eligibility/pricing evaluation for a business context
        - Price breakdown
        - Record pair scoring
        - Rule refresh and invalidation (internal)

        ### Reconciliation (/api/reconciliation)
        - Batch matching of bills/invoices to payments/receipts (internal)
        - Suggestion confirm/reject (internal)
        """,
        version=settings.API_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs" if settings.debug_enabled else None,
        redoc_url="/api/redoc" if settings.debug_enabled else None,
    )
    app.state.rule_store = rule_store
    app.state.record_store = record_store

    api_router = APIRouter(prefix="/api")

    # ==================== HEALTH CHECK ENDPOINTS ====================

    @api_router.get("/", tags=["Health"])
    async def root():
        """Basic health check - returns 200 if service is running"""
        return {
            "message": settings.API_TITLE,
            "status": "healthy",
            "version": settings.API_VERSION,
            "environment": settings.ENVIRONMENT,
        }

    @api_router.get("/health", tags=["Health"])
    async def health_check():
        """
        Detailed health check for load balancers and uptime monitors.

        Returns:
        - 200: All systems operational (rules may still be degraded)
        - 503: Database unavailable
        """
        health_status = {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": settings.API_VERSION,
            "environment": settings.ENVIRONMENT,
            "checks": {}
        }

        if settings.DATABASE_URL:
            try:
                async with get_engine().begin() as conn:
                    result = await conn.execute(text("SELECT 1"))
                    result.fetchone()
                health_status["checks"]["database"] = {"status": "connected", "type": "postgresql"}
            except Exception as e:
                logger.error(f"Database health check failed: {e}")
                health_status["status"] = "unhealthy"
                health_status["checks"]["database"] = {"status": "disconnected", "error": str(e)}
        else:
            health_status["checks"]["database"] = {"status": "not_configured", "type": "memory"}

        rules_status = rule_store.status()
        health_status["checks"]["rules"] = {
            "status": "loaded" if rules_status["loaded"] else "degraded",
            "version": rules_status.get("version"),
        }

        env_status = validate_environment()
        health_status["checks"]["configuration"] = {
            "status": "valid" if env_status["valid"] else "invalid",
            "warnings": len(env_status.get("warnings", [])),
            "errors": len(env_status.get("errors", []))
        }

        if health_status["status"] == "unhealthy":
            raise HTTPException(status_code=503, detail=health_status)

        return health_status

    api_router.include_router(rules_router)
    api_router.include_router(reconciliation_router)
    app.include_router(api_router)

    @app.get("/health", tags=["Health"])
    async def liveness_check():
        """Liveness probe. Returns 200 if the process is running."""
        return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}

    # ==================== MIDDLEWARE ====================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.is_development else [],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests with timing information"""
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID", f"req-{uuid.uuid4().hex[:12]}")
        set_request_context(request_id=request_id)

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

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle uncaught exceptions"""
        logger.error(f"Unhandled exception: {exc}")
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


app = create_app()
