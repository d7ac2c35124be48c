from fastapi import FastAPI, HTTPException, Request
from contextlib import asynccontextmanager
import structlog

from core.config import settings
from core.database import db_manager
from core.logging_config import configure_logging
from core.migration_runner import run_plugin_migrations
from core.MongoORJSONResponse import MongoORJSONResponse
from plugins.rent.plugin import init_plugin as init_rent_plugin
from utils.exceptions import LedgerError

logger = structlog.get_logger()

PLUGINS = {"rent": init_rent_plugin}


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info("starting", app=settings.APP_NAME, env=settings.APP_ENV)

    if not db_manager.is_initialized:
        await db_manager.initialize()
    adb = db_manager.database
    app.state.adb = adb

    for name in PLUGINS:
        await run_plugin_migrations(name, adb)

    health = await db_manager.health_check()
    if health["status"] != "healthy":
        raise RuntimeError(f"Database unhealthy: {health}")
    logger.info("started", database=health.get("database"))

    yield

    await db_manager.close()
    logger.info("shutdown")


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description="Rent payment ledger and reconciliation",
        version="1.0.0",
        lifespan=lifespan,
        default_response_class=MongoORJSONResponse,
    )

    for name, init in PLUGINS.items():
        plugin = init(app)
        app.include_router(plugin["router"])
        logger.debug("plugin_registered", plugin=name)

    @app.exception_handler(LedgerError)
    async def ledger_exception_handler(request: Request, exc: LedgerError):
        logger.warning(
            "ledger_error",
            kind=exc.kind,
            detail=exc.message,
            path=request.url.path,
            method=request.method,
            **exc.context,
        )
        return MongoORJSONResponse(
            status_code=exc.http_status,
            content={"error": exc.kind, "detail": exc.message},
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        logger.warning(
            "http_exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=request.url.path,
            method=request.method,
        )
        return MongoORJSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.get("/health")
    async def health():
        return await db_manager.health_check()

    return app


app = create_app()
