import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .context import EngineContext
from .db import check_db_connection, create_db_and_tables, engine
from .errors import ErrorCode, OrderError
from .routes import Services, kitchen_router, orders_router, vouchers_router
from .settings import settings
from .settlement import SettlementService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _error_response(error: OrderError) -> JSONResponse:
    return JSONResponse(
        status_code=error.status_code,
        content={"success": False, "error": error.to_dict()},
    )


def create_app(ctx: EngineContext | None = None) -> FastAPI:
    ctx = ctx or EngineContext.default(engine, settings)

    app = FastAPI(
        title="POS Order Engine",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.ctx = ctx
    app.state.services = Services.build(ctx)

    # Parse CORS origins from environment (comma-separated)
    cors_origins_list = [
        origin.strip()
        for origin in ctx.settings.cors_origins.split(",")
        if origin.strip()
    ]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(orders_router)
    app.include_router(vouchers_router)
    app.include_router(kitchen_router)

    @app.exception_handler(OrderError)
    async def order_error_handler(request: Request, exc: OrderError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        if errors:
            location = ".".join(str(part) for part in errors[0].get("loc", ()) if part != "body")
            message = f"{location}: {errors[0].get('msg')}" if location else errors[0].get("msg")
        else:
            message = "Invalid request"
        return _error_response(OrderError(ErrorCode.INVALID_REQUEST, message))

    @app.on_event("startup")
    def on_startup() -> None:
        logger.info("Starting order engine...")
        create_db_and_tables(ctx.engine)
        # Close sessions left open by a previous day; never block startup on it
        try:
            SettlementService(ctx).cleanup_stale_sessions()
        except Exception as e:
            logger.warning(f"Stale session cleanup failed: {e}", exc_info=True)

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        logger.info("Stopping order engine...")
        ctx.alerts.close()

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/health/db")
    def health_db() -> dict:
        """Check database connection."""
        try:
            check_db_connection(ctx.engine)
        except Exception as e:
            logger.error(f"Database health check failed: {e}", exc_info=True)
            return JSONResponse(status_code=503, content={"status": "error", "database": "unreachable"})
        return {"status": "ok", "database": "connected"}

    return app


app = create_app()
