import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from application.app_context import AppContext, build_app_context
from domain.errors import StorageError, ValidationError
from infrastructure.config.settings import Settings, get_settings
from infrastructure.observability.logging import setup_logging
from .route.messages import router

logger = structlog.get_logger(__name__)

ContextFactory = Callable[[Settings], Awaitable[AppContext]]


def create_app(
    settings: Optional[Settings] = None,
    context_factory: ContextFactory = build_app_context,
) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings)

        context = await context_factory(settings)
        app.state.context = context

        cleanup = asyncio.create_task(
            context.memory_store.run_cleanup_loop(settings.cleanup_interval_seconds, context.substrate)
        )
        logger.info("Service started", service=settings.service_name)

        try:
            yield
        finally:
            cleanup.cancel()
            try:
                await cleanup
            except asyncio.CancelledError:
                pass
            await context.close()
            logger.info("Service stopped")

    app = FastAPI(title="pup", lifespan=lifespan)
    app.include_router(router)

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.error("Datastore unavailable", path=request.url.path, operation=exc.operation, error=str(exc))
        return JSONResponse(status_code=503, content={"detail": "Datastore unavailable"})

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    return app
