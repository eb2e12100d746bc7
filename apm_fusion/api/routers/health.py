"""Health endpoints."""

import logging

from fastapi import APIRouter

from apm_fusion import __version__

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint for connectivity testing."""
    return {"status": "ok", "version": __version__}
