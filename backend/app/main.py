"""Ponto de entrada principal da aplicação FastAPI."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes.health import router as health_router
from app.channels.inbound.router import router as inbound_router
from app.core.config import settings
from app.core.logging import configure_logging, get_logger, resolve_log_level
from app.core.middleware import RequestLoggingMiddleware
from app.core.tasks import background_tasks

SHUTDOWN_DRAIN_TIMEOUT_SECONDS = 60.0


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    log = get_logger("app")
    settings.validate_required()
    log.info("app.started", extra={"environment": settings.environment})
    yield
    log.info("app.draining", extra={"pending": len(background_tasks)})
    await background_tasks.drain(timeout=SHUTDOWN_DRAIN_TIMEOUT_SECONDS)


def create_app() -> FastAPI:
    """Cria e configura a instância do FastAPI."""
    default_log_level = logging.DEBUG if settings.environment != "production" else logging.INFO
    log_level = resolve_log_level(settings.log_level, default=default_log_level)
    per_logger_files: dict[str, str] = {}
    if settings.log_file_path:
        log_dir = Path(settings.log_file_path).parent
        per_logger_files = {
            "app.request": str(log_dir / "request.log"),
            "app.channels.inbound": str(log_dir / "inbound.log"),
            "app.batches": str(log_dir / "batches.log"),
        }

    configure_logging(
        level=log_level,
        log_file=settings.log_file_path,
        per_logger_files=per_logger_files,
    )

    app = FastAPI(title="Inbound Agent API", version="0.1.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health_router)
    app.include_router(inbound_router)

    @app.get("/info", tags=["info"])
    def info() -> dict[str, str | None]:
        return {
            "environment": settings.environment,
            "gemini_model": settings.gemini_model,
        }

    return app


app = create_app()
