"""Process entry points: ``pulse-worker`` (job runner) and ``pulse-api`` (HTTP)."""

import asyncio
import logging

import uvicorn

from . import handlers  # noqa: F401  (registers job handlers)
from .api import create_app
from .config import Config
from .health import start_health_server
from .logging import setup_logging
from .registry import registered_types
from .worker import Worker

logger = logging.getLogger(__name__)


def _configured() -> Config:
    config = Config.from_env()
    setup_logging(config.log_format)
    return config


async def _serve_worker(config: Config) -> None:
    health_server = await start_health_server(config.health_port, config.database_url)
    try:
        await Worker(config).run()
    finally:
        health_server.close()
        await health_server.wait_closed()


def main() -> None:
    config = _configured()
    logger.info(
        "Pulse worker starting (health_port=%d, log_format=%s, job_types=%s)",
        config.health_port,
        config.log_format,
        ", ".join(registered_types()),
    )
    asyncio.run(_serve_worker(config))


def api_main() -> None:
    config = _configured()
    logger.info("Pulse API listening on port %d", config.api_port)
    uvicorn.run(create_app(config), host="0.0.0.0", port=config.api_port, log_config=None)


if __name__ == "__main__":
    main()
