from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.v1.router import v1_router
from app.core.config import get_settings
from app.core.deps import get_services
from app.core.http_errors import install_error_handlers
from app.core.logging import configure_logging
from app.core.middleware import RequestIdMiddleware
from app.db.session import SessionLocal
from app.services.runtime import start_background_workers, stop_background_workers


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    tasks = []
    if settings.run_background_workers:
        tasks = start_background_workers(get_services(), SessionLocal)
    try:
        yield
    finally:
        if tasks:
            await stop_background_workers(tasks)


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
        lifespan=lifespan,
    )
    # Middleware: Request ID
    app.add_middleware(RequestIdMiddleware, header_name=settings.request_id_header)

    # Domain errors -> HTTP
    install_error_handlers(app)

    # API v1
    app.include_router(v1_router, prefix=settings.api_prefix)

    return app


app = create_app()
