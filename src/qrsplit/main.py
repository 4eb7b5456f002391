from __future__ import annotations

import asyncio

import uvicorn

from qrsplit.config import get_settings
from qrsplit.logging import configure_logging, get_logger
from qrsplit.server import create_app


async def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    app = create_app(settings)

    log = get_logger(__name__)
    log.info("api.start", host=settings.host, port=settings.port)
    server = uvicorn.Server(uvicorn.Config(app, host=settings.host, port=settings.port, log_config=None))
    try:
        await server.serve()
    finally:
        log.info("api.stop")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
