"""
Command line entry point with subcommands.
"""
import argparse
import dataclasses
import json
import logging
import sys
from typing import List, Optional

from . import __version__
from .config import HubConfig
from .logging_config import setup_logging

logger = logging.getLogger(__name__)

_SECRET_FIELDS = {"chat_token", "smtp_password", "bot_token"}


def _load_config(args: argparse.Namespace) -> HubConfig:
    return HubConfig.load(args.config_file) if args.config_file else HubConfig.load()


def handle_serve(args: argparse.Namespace) -> int:
    """
    Run the HTTP server and background sweeps until interrupted.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    from .hub import IncidentHub

    config = _load_config(args)
    if args.port:
        config.port = args.port
    setup_logging(
        level="DEBUG" if args.debug else config.log_level,
        log_file=config.log_file,
        json_format=config.log_json,
    )

    try:
        hub = IncidentHub.from_config(config)
    except ValueError as e:
        print(f"ERROR: {e}")
        return 1

    hub.start()
    try:
        logger.info(f"Starting {config.system_name} on {config.host}:{config.port}")
        hub.create_app().run(host=config.host, port=config.port, threaded=True)
    finally:
        hub.stop()
    return 0


def handle_version(args: argparse.Namespace) -> int:
    print(f"incident-hub version {__version__}")
    if args.verbose:
        print(f"\nPython: {sys.version}")
    return 0


def handle_config(args: argparse.Namespace) -> int:
    """
    Show or validate the effective configuration.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    config = _load_config(args)

    if args.action == "validate":
        try:
            config.validate()
        except ValueError as e:
            print(f"ERROR: {e}")
            return 1
        print("✓ Configuration is valid")
        return 0

    shown = dataclasses.asdict(config)
    for name in _SECRET_FIELDS:
        if shown.get(name):
            shown[name] = "***"
    print(json.dumps(shown, indent=2))
    return 0


def create_parser() -> argparse.ArgumentParser:
    """
    Create and configure the argument parser with subcommands.

    Returns:
        Configured ArgumentParser
    """
    parser = argparse.ArgumentParser(
        prog="incident-hub",
        description="incident-hub: alert correlation, incident lifecycle and notifications",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s serve --config incident-hub.yaml
  %(prog)s config validate
  %(prog)s version
""",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--debug", action="store_true", help="Debug logging")
    parser.add_argument("-c", "--config", dest="config_file", help="Path to YAML or TOML config file")

    subparsers = parser.add_subparsers(title="commands")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP server")
    serve_parser.add_argument("--port", type=int, help="Override the configured port")
    serve_parser.set_defaults(func=handle_serve)

    config_parser = subparsers.add_parser("config", help="Show or validate configuration")
    config_parser.add_argument("action", choices=["show", "validate"], nargs="?", default="show")
    config_parser.set_defaults(func=handle_config)

    version_parser = subparsers.add_parser("version", help="Show version information")
    version_parser.set_defaults(func=handle_version)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)

    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
