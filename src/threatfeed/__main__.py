# Threatfeed - Command line entry point
#
#   threatfeed serve [--host H] [--port P] [--schedulers]
#   threatfeed run-aging
#   threatfeed stats [--period daily] [--analytics-days N]

import argparse
import json
import logging
import sys

from . import __version__
from .core import (
    AuditEventType,
    AuditSeverity,
    FeedSettings,
    get_audit_logger,
    get_settings,
    reset_settings,
)


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def main(argv=None) -> int:
    """Main entry point for threatfeed."""
    parser = argparse.ArgumentParser(
        prog="threatfeed",
        description="Threatfeed - crypto threat-intelligence feed service",
    )
    parser.add_argument("--version", action="version", version=f"threatfeed v{__version__}")
    parser.add_argument("--env-file", default=None, help="Load settings from this .env file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    serve.add_argument(
        "--schedulers", action="store_true", help="Start aging, stats and adapter schedulers"
    )

    sub.add_parser("run-aging", help="Run one aging job (correlation retry, sweep, stats, digests)")

    stats = sub.add_parser("stats", help="Generate a stats rollup")
    stats.add_argument(
        "--period", default="daily", choices=["hourly", "daily", "weekly", "monthly"]
    )
    stats.add_argument(
        "--analytics-days", type=int, default=0, help="Also print analytics over N days"
    )

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = get_settings()
    if args.env_file:
        settings = FeedSettings.from_env(args.env_file)
    if args.command == "serve" and args.schedulers:
        settings.start_schedulers = True
    reset_settings(settings)

    get_audit_logger().log_event(
        AuditEventType.SYSTEM_START,
        AuditSeverity.INFO,
        f"threatfeed {args.command}",
        details={"version": __version__, "command": args.command},
    )

    if args.command == "serve":
        from .api.main import start_api_server

        start_api_server(host=args.host, port=args.port)
        return 0

    from .feed.models import StatsPeriod
    from .feed.service import ThreatFeedService

    service = ThreatFeedService(settings)
    try:
        service.initialize(actor="cli")
        if args.command == "run-aging":
            _print(service.run_aging_job())
        else:
            _print(service.generate_stats(StatsPeriod(args.period)))
            if args.analytics_days > 0:
                _print(service.stats.analytics(args.analytics_days))
    finally:
        service.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
