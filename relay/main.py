"""
Relay process entrypoint.

Resolves configuration, initialises logging and serves the FastAPI app with
uvicorn.  The store and registry are built here and injected into the app.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from . import RelayConfig
from .api.server import create_app
from .api.state import RelayState
from .utils.logging import configure_logging, resolve_level

LOG = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(state: RelayState) -> AsyncIterator[None]:
    LOG.info("Relay lifespan starting")
    try:
        yield
    finally:
        LOG.info(
            "Relay lifespan shutting down sessions=%d subscriptions=%d",
            len(state.store),
            state.registry.subscription_count(),
        )


async def serve(config: RelayConfig) -> None:
    """
    Run the relay inside an asyncio loop until uvicorn is told to exit.
    """

    import uvicorn

    configure_logging(config.log_level)
    relay_state = RelayState()

    @asynccontextmanager
    async def app_lifespan(_app) -> AsyncIterator[None]:
        async with lifespan(relay_state):
            yield

    app = create_app(state=relay_state, config=config, lifespan=app_lifespan)
    server_config = uvicorn.Config(
        app=app,
        host=config.host,
        port=config.port,
        log_config=None,
        log_level=config.log_level.lower(),
        reload=False,
    )
    server = uvicorn.Server(config=server_config)
    LOG.info("Signalling relay listening on http://%s:%d", config.host, config.port)
    await server.serve()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="WebRTC signalling relay")
    parser.add_argument("--config", type=Path, default=None, help="YAML configuration file")
    parser.add_argument("--host", default=None, help="bind host for the API server")
    parser.add_argument("--port", type=int, default=None, help="bind port for the API server")
    parser.add_argument("--log-level", default=None, help="root log level, e.g. DEBUG")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> RelayConfig:
    config = RelayConfig.load(args.config)
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.log_level:
        config.log_level = logging.getLevelName(resolve_level(args.log_level))
    return config


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    config = build_config(args)

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        LOG.info("Relay interrupted by user.")


if __name__ == "__main__":
    run()
