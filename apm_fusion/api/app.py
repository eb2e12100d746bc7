"""APM fusion API application factory.

This module creates and configures the FastAPI application with all routers
and middleware.
"""

import logging

from fastapi import FastAPI

from apm_fusion import __version__
from apm_fusion.api.middleware import configure_middleware
from apm_fusion.api.routers import apm_router, health_router
from apm_fusion.telemetry import setup_logging

logger = logging.getLogger(__name__)


def create_app(title: str = "APM Fusion API") -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        title: Application title

    Returns:
        Configured FastAPI application
    """
    setup_logging()

    app = FastAPI(title=title, version=__version__)
    configure_middleware(app)

    app.include_router(health_router)
    app.include_router(apm_router)

    logger.info(f"{title} initialized")
    return app
