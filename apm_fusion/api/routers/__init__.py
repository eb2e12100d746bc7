"""APM fusion API routers module."""

from .apm import router as apm_router
from .health import router as health_router

__all__ = [
    "apm_router",
    "health_router",
]
