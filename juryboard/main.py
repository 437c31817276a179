"""
juryboard/main.py
Application entry point: lifespan wiring, middleware and error handlers
"""
import os
import logging
import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from slowapi.errors import RateLimitExceeded

from juryboard.config import settings, feature_flags
from juryboard.core.rate_limit import limiter
from juryboard.database import init_db, close_db, AsyncSessionLocal
from juryboard.errors import ErrorCode, APIError, RateLimitError, error_envelope, internal_error_response
from juryboard.realtime.connection_manager import ConnectionManager, set_connection_manager
from juryboard.realtime.redis_adapter import create_broadcast_adapter
from juryboard.routes import router
from juryboard.services.aggregation_engine import AggregateCache, set_aggregate_cache
from juryboard.services.automation_engine import AutomationEngine, set_automation_engine
from juryboard.services.broadcast_gateway import BroadcastGateway, make_live_report_listener, set_broadcast_gateway
from juryboard.services.score_ledger import ScoreLedger, set_score_ledger
from juryboard.tasks.automation_scheduler import start_automation_scheduler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting application...")
    try:
        await init_db()
        logger.info("Database connected successfully")
    except Exception as e:
        logger.error(f"Failed to connect to database: {str(e)}")
        raise

    cache = AggregateCache(AsyncSessionLocal)
    set_aggregate_cache(cache)

    adapter = await create_broadcast_adapter(
        use_redis=feature_flags.FEATURE_REDIS_BROADCAST,
        redis_url=settings.REDIS_URL,
    )
    gateway = BroadcastGateway(adapter)
    set_broadcast_gateway(gateway)
    set_connection_manager(ConnectionManager(adapter))

    ledger = ScoreLedger(cache)
    set_score_ledger(ledger)
    if feature_flags.FEATURE_LIVE_REPORTS:
        ledger.add_listener(make_live_report_listener(AsyncSessionLocal, cache, gateway))

    engine = None
    scheduler_task = None
    if feature_flags.FEATURE_AUTOMATION_ENGINE:
        engine = AutomationEngine(AsyncSessionLocal, aggregate_cache=cache, gateway=gateway)
        set_automation_engine(engine)
        ledger.add_listener(engine.on_score_written)
        scheduler_task = start_automation_scheduler(engine, settings.AUTOMATION_TICK_SECONDS)
        logger.info("✓ Automation engine started")

    yield

    logger.info("Shutting down application...")
    if scheduler_task is not None:
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            pass
    if engine is not None:
        await engine.drain()
        set_automation_engine(None)
    try:
        await gateway.close()
        await close_db()
        logger.info("Database connection closed")
    except Exception as e:
        logger.error(f"Error during shutdown: {str(e)}")


app = FastAPI(
    title="Juryboard API",
    description="Scoring ledger, ranked reports and competition automation",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT == "development" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT == "development" else None,
    lifespan=lifespan
)

# Attach rate limiter to the app
app.state.limiter = limiter
logger.info("✓ Rate limiter configured")

origins = [
    "http://localhost:3000",
    "http://localhost:8000",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:8000",
]
origins.extend(settings.ALLOWED_ORIGINS)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["*"],
)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(f"Rate limit exceeded on {request.url.path}: {exc.detail}")
    return RateLimitError().to_response()


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")

    error_details = []
    for error in exc.errors():
        error_details.append({
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "type": error.get("type")
        })

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_envelope(
            "Validation Error",
            "Request validation failed",
            ErrorCode.VALIDATION_ERROR,
            {"errors": error_details},
        )
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(f"HTTP exception on {request.url.path}: {exc.detail}")

    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content=exc.detail)

    code = ErrorCode.NOT_FOUND if exc.status_code == 404 else ErrorCode.INTERNAL_ERROR
    if 400 <= exc.status_code < 500 and exc.status_code != 404:
        code = ErrorCode.VALIDATION_ERROR
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope("Error", str(exc.detail), code)
    )


@app.exception_handler(APIError)
async def api_error_handler(request: Request, exc: APIError):
    logger.warning(f"API error on {request.url.path}: {exc.code} - {exc.message}")
    return exc.to_response()


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    return internal_error_response(exc, request.url.path)


@app.get("/health", tags=["Health"])
async def health_check():
    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT,
        "automation_engine": feature_flags.FEATURE_AUTOMATION_ENGINE,
        "live_reports": feature_flags.FEATURE_LIVE_REPORTS,
        "version": "1.0.0"
    }


app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 8000))
    reload = settings.ENVIRONMENT == "development"

    logger.info(f"Starting server on {host}:{port}")
    logger.info(f"Environment: {settings.ENVIRONMENT}")

    uvicorn.run(
        "juryboard.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info"
    )
