from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from webanalyzer.config.logging import get_logger, setup_logging
from webanalyzer.config.settings import settings
from webanalyzer.core.exceptions import (
    RequestContextMiddleware,
    WebAnalyzerException,
    general_exception_handler,
    http_exception_handler,
    request_validation_exception_handler,
    web_analyzer_exception_handler,
)
from webanalyzer.healthz import router as health_router
from webanalyzer.infra.database import close_database, get_database
from webanalyzer.jobs.routes import router as jobs_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.db_auto_create:
        await get_database(settings).create_all()
    logger.info("API started", environment=settings.environment, port=settings.port)
    yield
    await close_database()
    logger.info("API stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    # Initialize structured logging
    setup_logging()

    app = FastAPI(
        title=settings.app_name,
        description="Asynchronous web page analysis: submit a URL, poll for results",
        version=settings.version,
        debug=settings.debug,
        openapi_url="/openapi.json" if settings.debug else None,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    if settings.cors_enabled:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    app.add_exception_handler(WebAnalyzerException, web_analyzer_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(health_router)
    app.include_router(jobs_router)

    @app.get("/", tags=["meta"])
    async def index() -> dict:
        return {
            "service": settings.app_name,
            "version": settings.version,
            "endpoints": {
                "analyse": "POST /api/analyse",
                "results": "GET /api/results/{job_id}",
                "liveness": "GET /health/live",
                "readiness": "GET /health/ready",
            },
        }

    return app


# Create the app instance
app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(
        "webanalyzer.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )


if __name__ == "__main__":
    main()
