"""
pairchat process entrypoint.

Resolves configuration, initialises logging and serves the control API; the
session itself is driven through that API.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import signal
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from . import MODES, PairchatConfig
from .api.server import create_app
from .supervisor import ConnectionSupervisor
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)


def load_config(path: Optional[str] = None, *, mode: Optional[str] = None) -> PairchatConfig:
    config = PairchatConfig.from_yaml(path) if path else PairchatConfig()
    if mode:
        config = dataclasses.replace(config, mode=mode)
    return config


async def serve(config: PairchatConfig, host: str = "127.0.0.1", port: int = 8765, log_level: str = "info") -> None:
    """
    Build the supervisor and serve its control API until a signal arrives.

    Parameters
    ----------
    config:
        Resolved pairchat configuration.
    host, port:
        Address uvicorn binds the control API to.
    log_level:
        Passed through to uvicorn's own loggers.
    """

    import uvicorn

    supervisor = ConnectionSupervisor(config)
    if not supervisor.matchmaking_available:
        LOG.info("Pool mode unavailable: %s", supervisor.availability.reason)  # type: ignore[union-attr]

    @asynccontextmanager
    async def app_lifespan(_app) -> AsyncIterator[None]:
        LOG.info("pairchat starting (mode=%s, data_dir=%s)", supervisor.mode, config.data_dir)
        try:
            yield
        finally:
            LOG.info("pairchat shutting down")

    app = create_app(supervisor=supervisor, config=config, lifespan=app_lifespan)
    server_config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_config=None,
        log_level=log_level.lower(),
        reload=False,
    )
    server = uvicorn.Server(config=server_config)

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, shutting down server...", signum)
        server.should_exit = True

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    await server.serve()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="pairchat peer session server")
    parser.add_argument("--config", default=None, help="YAML configuration file")
    parser.add_argument("--host", default="127.0.0.1", help="bind host for the API server")
    parser.add_argument("--port", type=int, default=8765, help="bind port for the API server")
    parser.add_argument("--mode", choices=MODES, default=None, help="signaling mode used by 'next'")
    parser.add_argument("--log-level", default="INFO", help="root log level")
    return parser.parse_args(argv)


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level)
    config = load_config(args.config, mode=args.mode)

    try:
        asyncio.run(serve(config=config, host=args.host, port=args.port, log_level=args.log_level))
    except KeyboardInterrupt:
        LOG.info("pairchat interrupted by user.")


if __name__ == "__main__":
    run()
