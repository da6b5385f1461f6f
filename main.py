"""
Word-problem simulator entry point.

Serve the HTTP API with uvicorn.
"""

import logging

import uvicorn

from simulator.config import get_settings


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("backend.app.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
