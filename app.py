"""
Qurban Upload Application Entry Point
------------------------------------
This file serves as the entry point for the API server.
"""

import logging

from qurban_upload.config import get_settings
from qurban_upload.main import create_app

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger(__name__)

app = create_app(settings=settings)

# If this file is run directly, start the server
if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting Qurban Upload API on port {settings.port}")
    uvicorn.run("app:app", host="0.0.0.0", port=settings.port, reload=True)
