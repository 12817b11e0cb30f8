"""
Relay process entrypoint.

Resolves configuration (YAML profile, optional config file, CLI overrides),
initialises logging and serves the FastAPI application with uvicorn.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from .api.server import create_app
from .api.state import RelayState
from .config import RelayConfig
from .errors import ConfigError
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(state: RelayState) -> AsyncIterator[None]:
    """
    Async lifespan context used by the FastAPI application.
    """

    LOG.info(
        "Relay lifespan starting (profile=%s, max_members=%d)",
        state.config.profile,
        state.config.max_members,
    )
    try:
        yield
    finally:
        LOG.info("Relay lifespan shutting down (peers=%d)", len(state.registry))


async def serve(config: RelayConfig) -> None:
    """
    Run the relay inside an asyncio loop.

    Parameters
    ----------
    config:
        Resolved relay configuration; ``host`` and ``port`` are the bind
        address for uvicorn.
    """

    import uvicorn

    configure_logging(config.log_level)
    relay_state = RelayState(config)

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
        ws_ping_interval=config.ws_ping_interval,
        ws_ping_timeout=config.ws_ping_timeout,
        reload=False,
    )
    server = uvicorn.Server(config=server_config)

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, shutting down relay...", signum)
        server.should_exit = True

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    await server.serve()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="WebRTC signaling relay")
    parser.add_argument("--profile", default="default", help="configuration profile to load")
    parser.add_argument("--config", default=None, help="YAML file with profiles (defaults to the bundled one)")
    parser.add_argument("--host", default=None, help="bind host for the relay")
    parser.add_argument("--port", type=int, default=None, help="bind port for the relay")
    parser.add_argument("--max-members", type=int, default=None, help="peers allowed per session")
    parser.add_argument(
        "--idle-timeout",
        type=float,
        default=None,
        help="seconds before an idle session expires (0 disables expiry)",
    )
    parser.add_argument("--log-level", default=None, help="logging level (DEBUG, INFO, ...)")
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> RelayConfig:
    config = RelayConfig.from_profile(args.profile, args.config)
    return config.override(
        host=args.host,
        port=args.port,
        max_members=args.max_members,
        session_idle_timeout=args.idle_timeout,
        log_level=args.log_level,
    )


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    try:
        config = load_config(args)
    except ConfigError as exc:
        raise SystemExit(f"invalid configuration: {exc}") from exc

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        LOG.info("Relay interrupted by user.")


if __name__ == "__main__":
    run()
