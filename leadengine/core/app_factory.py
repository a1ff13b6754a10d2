"""
Application Factory Pattern
Creates FastAPI app instances with configurable settings for different environments.
"""
import logging
import sys
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from leadengine.core.config import get_settings
from leadengine.core.errors import PipelineError
from leadengine.core.http_client import close_http_client
from leadengine.core.logging import setup_logging

logger = logging.getLogger(__name__)


class AppConfig:
    """Configuration for FastAPI application."""

    def __init__(
        self,
        environment: Optional[str] = None,
        title: str = "Lead Engine",
        description: str = "Lead engagement pipeline: moderation, conversations and qualification tracking",
        version: str = "1.0.0",
        enable_docs: Optional[bool] = None
    ):
        self.environment = (environment or get_settings().environment).lower()
        self.title = title
        self.description = description
        self.version = version
        self.enable_docs = enable_docs if enable_docs is not None else (self.environment != "production")
        self.docs_url = "/docs" if self.enable_docs else None
        self.redoc_url = "/redoc" if self.enable_docs else None


def setup_routers(app: FastAPI) -> List[str]:
    """Setup API routers."""
    from leadengine.api._registry import ROUTERS

    loaded_routers = []
    for router in ROUTERS:
        app.include_router(router)
        loaded_routers.append(router.prefix.replace('/api/v1/', '') or 'root')
        logger.info("Router '{}' loaded".format(router.prefix))
    return loaded_routers


def setup_exception_handlers(app: FastAPI) -> None:
    """Translate pipeline error codes into HTTP statuses."""

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        if exc.http_status >= 500:
            logger.error("Unhandled pipeline error on {}: {}".format(request.url.path, exc.message))
        return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})


def setup_health_endpoints(app: FastAPI, config: AppConfig, loaded_routers: List[str]) -> None:
    """Setup health check and metrics endpoints."""

    @app.get("/health")
    async def health_check():
        settings = get_settings()
        return {
            "status": "healthy",
            "version": config.version,
            "environment": config.environment,
            "python_version": "{}.{}.{}".format(
                sys.version_info.major, sys.version_info.minor, sys.version_info.micro
            ),
            "routers": loaded_routers,
            "services": {
                "openai": "available" if settings.openai_api_key else "missing_key",
                "reddit": "configured" if settings.reddit_client_id else "not_configured",
            },
        }

    @app.get("/metrics")
    async def metrics():
        """Prometheus scrape endpoint."""
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """
    Create FastAPI application with factory pattern.

    Args:
        config: Optional configuration object

    Returns:
        Configured FastAPI application
    """
    if config is None:
        config = AppConfig()

    setup_logging()
    logger.info("Creating FastAPI application")
    logger.info("Environment: {}".format(config.environment))

    app = FastAPI(
        title=config.title,
        description=config.description,
        version=config.version,
        docs_url=config.docs_url,
        redoc_url=config.redoc_url,
    )

    loaded_routers = setup_routers(app)
    setup_exception_handlers(app)
    setup_health_endpoints(app, config, loaded_routers)

    @app.on_event("shutdown")
    async def shutdown():
        await close_http_client()

    logger.info("Application created with {} routers".format(len(loaded_routers)))
    return app
