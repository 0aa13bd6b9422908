"""calbridge entry point.

Changes:
  - 2026-10-09: ``serve`` reads host/port defaults from settings.
  - 2026-10-08: Added Rich logging for console output.
"""

import argparse
import logging

from calbridge import __version__
from calbridge.config import get_settings
from calbridge.logging_setup import setup_logging

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="calbridge",
        description="calbridge - OAuth broker for the calendar tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m calbridge serve                     Start the broker on the configured host/port
  python -m calbridge serve --port 3001         Start on another port
  python -m calbridge serve --dev               Start with auto-reload (dev mode)
""",
    )
    parser.add_argument(
        "command",
        choices=["serve"],
        help="Subcommand: 'serve' starts the broker",
    )
    parser.add_argument("--host", default=None, help="Host to bind (default: from settings)")
    parser.add_argument(
        "--port", "-p", type=int, default=None, help="Port to bind (default: from settings)"
    )
    parser.add_argument(
        "--dev", action="store_true", help="Development mode with auto-reload"
    )
    parser.add_argument(
        "--version", "-v", action="version", version=f"%(prog)s {__version__}"
    )

    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(level="DEBUG" if args.dev else settings.log_level)

    host = args.host or settings.host
    port = args.port or settings.port

    try:
        if args.command == "serve":
            from calbridge.api.serve import run_api_server

            run_api_server(host=host, port=port, dev=args.dev, settings=settings)
    except KeyboardInterrupt:
        logger.info("calbridge stopped.")


if __name__ == "__main__":
    main()
