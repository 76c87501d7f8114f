import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from marketplace import __version__
from marketplace.core.config import get_settings
from marketplace.core.exceptions import (
    AppError,
    app_exception_handler,
    generic_exception_handler,
    validation_exception_handler,
)
from marketplace.core.logging import bind_request_id, configure_logging, get_logger
from marketplace.routers import admin, deposits, orders, payments, wallet, withdrawals
from marketplace.services.container import Services, build_services
from marketplace.worker.sweeper import ExpirySweeper

settings = get_settings()
configure_logging(debug=settings.debug)
log = get_logger(__name__)


def create_app(services: Services | None = None, run_sweeper: bool | None = None) -> FastAPI:
    """Build the API. Tests pass their own services (memory store, fakes, fixed clock)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.sentry_dsn:
            import sentry_sdk
            sentry_sdk.init(dsn=settings.sentry_dsn, environment=settings.env, traces_sample_rate=0.1)
            log.info("startup", msg="Sentry enabled")
        app.state.services = services or build_services()
        await app.state.services.store.init()
        log.info("startup", msg="Store ready", backend=settings.store_backend)
        app.state.sweeper = ExpirySweeper(app.state.services)
        sweeping = settings.sweeper_enabled if run_sweeper is None else run_sweeper
        if sweeping:
            app.state.sweeper.start()
        try:
            yield
        finally:
            await app.state.sweeper.stop()
            await app.state.services.close()
            log.info("shutdown")

    app = FastAPI(
        title="Marketplace Orders API",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_id_middleware(request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        bind_request_id(request_id)
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        log.info(
            "request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )
        response.headers["X-Request-ID"] = request_id
        return response

    app.add_exception_handler(AppError, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    # Routers
    app.include_router(orders.router, prefix="/v1/orders", tags=["orders"])
    app.include_router(payments.router, prefix="/v1/payments", tags=["payments"])
    app.include_router(deposits.router, prefix="/v1/deposits", tags=["deposits"])
    app.include_router(withdrawals.router, prefix="/v1/withdrawals", tags=["withdrawals"])
    app.include_router(wallet.router, prefix="/v1/wallet", tags=["wallet"])
    app.include_router(admin.router, prefix="/v1/admin", tags=["admin"])

    @app.get("/health")
    async def health():
        """Health check for load balancers and monitoring."""
        return {"status": "ok"}

    return app


app = create_app()
