"""
Main entry point for the CreatorScope API server.
"""

import argparse
import sys

import uvicorn

from . import __version__
from .config.settings import get_settings
from .observability.logging import get_logger, setup_logging

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="CreatorScope API server")
    parser.add_argument("--host", default=None, help="Host to bind to")
    parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    parser.add_argument("--workers", type=int, default=None, help="Number of workers")
    parser.add_argument("--log-level", default=None, help="Override CS_OBSERVABILITY__LOG_LEVEL")
    parser.add_argument("--version", action="store_true", help="Show version")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Parse arguments and run the server until it stops."""
    args = build_parser().parse_args(argv)

    if args.version:
        print(f"CreatorScope v{__version__}")
        return

    settings = get_settings()
    setup_logging(args.log_level or settings.observability.log_level)

    reload = args.reload or settings.api.reload
    logger.info(
        "CreatorScope starting",
        environment=settings.environment,
        scraper=settings.scraper.base_url,
        tracing_enabled=settings.observability.enable_tracing,
    )

    uvicorn.run(
        "creatorscope.api.server:app",
        host=args.host or settings.api.host,
        port=args.port or settings.api.port,
        reload=reload,
        workers=1 if reload else (args.workers or settings.api.workers),
    )


def cli_main():
    """CLI entry point."""
    try:
        main()
        sys.exit(0)
    except KeyboardInterrupt:
        print("\nCreatorScope shutdown")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Startup failed: {e}")
        print(f"Startup failed: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    cli_main()
