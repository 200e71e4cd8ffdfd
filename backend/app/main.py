import logging
import logging.config

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.api.metrics import router as metrics_router
from app.api.routes import router as api_router
from app.config import Settings, get_settings
from app.database import build_engine, build_session_factory
from app.services import RealtimeHub, build_transport
from relaychat.realtime.transport import RedisTransport


LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        }
    },
    "handlers": {
        "default": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        }
    },
    "root": {
        "handlers": ["default"],
        "level": "INFO",
    },
    "loggers": {
        "relaychat.realtime.transport": {
            "handlers": ["default"],
            "level": "INFO",
            "propagate": False,
        }
    },
}


logging.config.dictConfig(LOGGING_CONFIG)

logger = logging.getLogger(__name__)


def _describe_validation_error(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "body")
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts) or "Invalid request"


def create_app(
    settings: Settings | None = None,
    *,
    session_factory: sessionmaker[Session] | None = None,
    transport: RedisTransport | None = None,
) -> FastAPI:
    """Build the API with explicitly constructed storage and messaging handles."""

    settings = settings or get_settings()
    if session_factory is None:
        session_factory = build_session_factory(build_engine(settings))
    hub = RealtimeHub(settings, transport or build_transport(settings), session_factory)

    app = FastAPI(title=settings.app_name, debug=settings.debug)
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.realtime = hub

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(origin).rstrip("/") for origin in settings.cors_origins],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": _describe_validation_error(exc)},
        )

    @app.exception_handler(SQLAlchemyError)
    async def _storage_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Storage error while handling %s", request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
        )

    @app.get("/", tags=["system"])
    def read_root() -> dict[str, str]:
        return {"message": "Chat Server is running"}

    @app.get("/health", tags=["system"])
    def health_check() -> dict[str, str]:
        """Simple health check endpoint."""
        return {
            "status": "ok",
            "environment": settings.environment,
            "realtime": "connected" if hub.started else "unavailable",
        }

    @app.on_event("startup")
    async def _startup() -> None:
        await hub.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await hub.stop()

    app.include_router(api_router, prefix="/api")
    app.include_router(metrics_router)
    return app


app = create_app()


def run() -> None:
    """Serve the API with uvicorn on the configured port."""

    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=get_settings().port)
