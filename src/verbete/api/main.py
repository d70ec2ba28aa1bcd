"""Verbete API service entry point.

Provides the application instance for ASGI servers (uvicorn) and a run()
function for the ``verbete-api`` console script.
"""

import logging

from verbete.api import create_app
from verbete.core.settings import get_settings

logger = logging.getLogger(__name__)

# What uvicorn references: verbete.api.main:app
app = create_app()


def run() -> None:
    """Run the API server using uvicorn."""
    import uvicorn

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting Verbete API on %s:%d", settings.api_host, settings.api_port)

    uvicorn.run(
        "verbete.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


if __name__ == "__main__":
    run()
