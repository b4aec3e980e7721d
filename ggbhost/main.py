"""
Host process entrypoint.

Resolves configuration, initialises logging and runs the control API under
uvicorn.  The instance pool is shut down on every exit path so no browser
process outlives the server.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from .animation.export import AnimationExporter
from .api.server import create_app
from .config import HostConfig, load_config
from .runtime.pool import InstancePool
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(pool: InstancePool, warm: int = 0) -> AsyncIterator[None]:
    """
    Start the pool reaper (and optionally pre-launch instances), then make
    sure every instance is torn down when the application stops.
    """

    LOG.info("Host lifespan starting")
    pool.start()
    if warm > 0:
        try:
            await pool.warm_up(warm)
        except Exception:  # pragma: no cover - defensive
            LOG.exception("Warm-up failed; instances will launch on first request.")
    try:
        yield
    finally:
        LOG.info("Host lifespan shutting down")
        await pool.cleanup()


async def serve(
    config: HostConfig,
    host: str = "127.0.0.1",
    port: int = 8080,
    warm: int = 0,
) -> None:
    """
    Run the control API inside an asyncio loop.

    Parameters
    ----------
    config:
        Resolved host configuration.
    host, port:
        Bind address for the FastAPI/uvicorn server.
    warm:
        Number of engine instances to launch before serving.
    """

    import uvicorn

    config.ensure_directories()
    pool = InstancePool.from_config(config)
    exporter = AnimationExporter.from_config(config, pool)
    if not await exporter.encoder.check_available():
        LOG.warning("ffmpeg not found at '%s'; GIF/video exports will fail.", config.encoder.ffmpeg)

    @asynccontextmanager
    async def app_lifespan(_app) -> AsyncIterator[None]:
        async with lifespan(pool, warm=warm):
            yield

    app = create_app(pool=pool, exporter=exporter, config=config, lifespan=app_lifespan)
    server_config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_config=None,
        log_level="info",
        reload=False,
    )
    server = uvicorn.Server(config=server_config)

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, shutting down server...", signum)
        server.should_exit = True

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    try:
        await server.serve()
    finally:
        # the lifespan already ran when uvicorn shut down cleanly; this is a no-op then
        await pool.cleanup()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Engine host server")
    parser.add_argument("--profile", default=None, help="config profile to load (default: $GGBHOST_PROFILE or 'default')")
    parser.add_argument("--host", default="127.0.0.1", help="bind host for the API server")
    parser.add_argument("--port", type=int, default=8080, help="bind port for the API server")
    parser.add_argument("--warm", type=int, default=0, help="engine instances to launch at startup")
    parser.add_argument("--log-level", default=None, help="log level (default: $LOG_LEVEL or INFO)")
    return parser.parse_args(argv)


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level)
    config = load_config(args.profile)
    LOG.info("Using profile '%s' (exports in %s)", config.profile, config.export_dir)

    try:
        asyncio.run(serve(config=config, host=args.host, port=args.port, warm=args.warm))
    except KeyboardInterrupt:
        LOG.info("Host interrupted by user.")


if __name__ == "__main__":
    run()
