"""ASGI entry point.

uvicorn references docintake.api.main:app; run() is the console script.
"""

import logging

from docintake.api import create_app

logger = logging.getLogger(__name__)

app = create_app()


def run() -> None:
    """Run the API server using uvicorn."""
    import uvicorn

    from docintake.core.settings import get_settings

    settings = get_settings()
    logger.info("Starting document intake API on %s:%d", settings.api_host, settings.api_port)

    uvicorn.run(
        "docintake.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


if __name__ == "__main__":
    run()
