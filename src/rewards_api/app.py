from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from rewards_api.core.settings import settings
from rewards_api.db.session import OperationTimeout, TransientStoreError, async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .services.errors import LoyaltyError
from .services.loyalty import LoyaltyOperations
from .workers import ExpirySweepWorker, SyncOutboxWorker


APP_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    operations: LoyaltyOperations = getattr(app.state, "operations", None) or LoyaltyOperations.from_settings(
        async_session
    )
    sync_worker = SyncOutboxWorker(operations.sync.outbox, operations.sync)
    expiry_worker = ExpirySweepWorker(operations)

    app.state.operations = operations
    app.state.sync_worker = sync_worker
    app.state.expiry_worker = expiry_worker

    sync_enabled = settings.sync_worker_enabled
    if sync_enabled:
        sync_worker.start()
        logger.info(
            "Sync outbox worker enabled",
            interval_seconds=sync_worker.interval_seconds,
            worker_id=sync_worker.worker_id,
        )
    else:
        logger.info("Sync outbox worker disabled", reason="sync_worker_enabled is false")

    expiry_enabled = settings.expiry_sweep_enabled
    if expiry_enabled:
        expiry_worker.start()
        logger.info("Expiry sweep worker enabled", interval_seconds=expiry_worker.interval_seconds)
    else:
        logger.info("Expiry sweep worker disabled", reason="expiry_sweep_enabled is false")

    try:
        yield
    finally:
        if sync_enabled and sync_worker.is_running:
            await sync_worker.stop()
        if expiry_enabled and expiry_worker.is_running:
            await expiry_worker.stop()
        await operations.effects.drain()


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(LoyaltyError)
    async def _loyalty_error(request: Request, exc: LoyaltyError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"code": exc.code, "detail": exc.message})

    @app.exception_handler(OperationTimeout)
    async def _timeout(request: Request, exc: OperationTimeout) -> JSONResponse:
        return JSONResponse(status_code=504, content={"code": "operation_timeout", "detail": str(exc)})

    @app.exception_handler(TransientStoreError)
    async def _transient(request: Request, exc: TransientStoreError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"code": "store_unavailable", "detail": str(exc)})


def create_app(*, operations: LoyaltyOperations | None = None, enable_tracing: bool = True) -> FastAPI:
    """Application factory for the rewards API."""
    configure_logging(
        service_name="rewards-api",
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
    )

    app = FastAPI(
        title="Rewards API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    if operations is not None:
        app.state.operations = operations

    if enable_tracing:
        configure_tracing(
            app,
            service_name="rewards-api",
            service_version=APP_VERSION,
            environment=settings.environment,
        )

    _register_error_handlers(app)
    app.include_router(api_router)

    return app
