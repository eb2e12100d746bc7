"""Run the APM fusion API with uvicorn."""

import logging
import os

import uvicorn

from apm_fusion.api import create_app

logger = logging.getLogger(__name__)

app = create_app()

if __name__ == "__main__":
    # Run on PORT (default 8001)
    port = int(os.getenv("PORT", 8001))
    logger.info(f"Starting APM Fusion API on http://0.0.0.0:{port}")
    uvicorn.run(app, host="0.0.0.0", port=port)
