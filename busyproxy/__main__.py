"""Command-line entry for busyproxy."""

from __future__ import annotations

import argparse
import sys
from typing import NoReturn

from . import render_file, run_server


def _create_parser() -> argparse.ArgumentParser:
    """Create argument parser for the busyproxy CLI.

    Returns:
        Configured argument parser
    """
    parser = argparse.ArgumentParser(
        prog="busyproxy",
        description="Busy ICS proxy - publish only the busy blocks of a calendar",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m busyproxy                              # Serve on 0.0.0.0:3000
  python -m busyproxy --port 8080 --config busyproxy.yaml
  python -m busyproxy --render calendar.ics        # Busy feed for the next 8 weeks
  python -m busyproxy --render calendar.ics --from 2025-10-01 --to 2025-11-01
        """,
    )

    parser.add_argument("--host", metavar="HOST", help="Bind address (default: 0.0.0.0, or BUSYPROXY_HOST)")
    parser.add_argument(
        "--port",
        type=int,
        metavar="PORT",
        help="Port number for the web server (default: 3000, or BUSYPROXY_PORT / PORT)",
    )
    parser.add_argument("--config", metavar="PATH", help="YAML or JSON config file (default: ./busyproxy.yaml)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--render", metavar="PATH", help="Render a local ICS file to stdout instead of serving")
    parser.add_argument("--from", dest="from_", metavar="ISO", help="Window start for --render (default: now)")
    parser.add_argument("--to", metavar="ISO", help="Window end for --render (default: start + window_weeks)")

    return parser


def main() -> NoReturn:
    """Run the busyproxy CLI."""
    parser = _create_parser()
    args = parser.parse_args()

    if (args.from_ or args.to) and not args.render:
        parser.error("--from/--to require --render")

    if args.render:
        sys.exit(render_file(args))

    run_server(args)
    sys.exit(0)


if __name__ == "__main__":
    main()
