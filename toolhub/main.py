"""
toolhub backend: REST API over the MCP connection manager and tool aggregator.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI

from toolhub.core.middleware import AuthMiddleware
from toolhub.core.otel_config import setup_opentelemetry
from toolhub.infrastructure.app_factory import AppFactory
from toolhub.modules.config import config_manager
from toolhub.routes.health_routes import router as health_router
from toolhub.routes.mcp_routes import router as mcp_router
from toolhub.version import VERSION

# Load environment variables from the parent directory
load_dotenv(dotenv_path="../.env")

otel_config = setup_opentelemetry("toolhub", VERSION, config_manager.app_settings.log_level)

logger = logging.getLogger(__name__)


def create_app(factory: Optional[AppFactory] = None) -> FastAPI:
    """Build the FastAPI app.

    Args:
        factory: Pre-wired AppFactory (tests). When None, one is created at
            startup from the current settings.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        app_factory = factory or AppFactory()
        app.state.app_factory = app_factory
        logger.info("Starting toolhub %s", VERSION)

        await app_factory.initialize()
        settings = app_factory.config_manager.app_settings
        logger.info(
            "Registry backend: %s, idle timeout: %ss",
            settings.registry_backend,
            settings.mcp_idle_timeout,
        )

        yield

        logger.info("Shutting down toolhub, closing MCP connections")
        await app_factory.shutdown()

    app = FastAPI(
        title="toolhub",
        description="Connection manager and tool aggregation for MCP tool servers",
        version=VERSION,
        lifespan=lifespan,
    )
    if factory is not None:
        app.state.app_factory = factory

    settings = (factory.config_manager if factory is not None else config_manager).app_settings
    app.add_middleware(
        AuthMiddleware,
        debug_mode=settings.debug_mode,
        auth_header_name=settings.auth_user_header,
        test_user=settings.test_user,
    )

    app.include_router(health_router)
    app.include_router(mcp_router)

    otel_config.instrument_fastapi(app)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=config_manager.app_settings.port)
