"""
Main application entry point
Starts the recording proxy or runs a CA/session management command
"""

import argparse
import sys

import structlog
import yaml
from pydantic import ValidationError

from sessionproxy.core.config import ApplicationConfig
from sessionproxy.core.exceptions import SessionProxyError
from sessionproxy.core.logging import configure_logging
from sessionproxy.cli.session_manager import (
    ca_info_command,
    export_session_command,
    init_ca_command,
    list_sessions_command,
)
from sessionproxy.interception.proxy_server import ProxyServer

logger = structlog.get_logger()


def parse_arguments(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Intercepting HTTP/HTTPS proxy with session recording",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                                Start the proxy
  python main.py --port 9090                    Start the proxy on another port
  python main.py --init-ca                      Generate the root CA
  python main.py --ca-info                      Show the root CA
  python main.py --list-sessions                List recorded sessions
  python main.py --export session_20250101_120000.json -o report.md
        """
    )

    parser.add_argument(
        "--config",
        metavar="FILE",
        help="YAML configuration file (default: config/default.yaml)"
    )

    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Diagnostic log level (default: INFO)"
    )

    parser.add_argument(
        "--log-dir",
        default="logs",
        help="Directory for diagnostic logs (default: logs)"
    )

    # CA Management
    parser.add_argument(
        "--init-ca",
        action="store_true",
        help="Generate the root CA if it does not exist"
    )

    parser.add_argument(
        "--ca-info",
        action="store_true",
        help="Show details of the root CA"
    )

    # Session Management
    parser.add_argument(
        "--list-sessions",
        action="store_true",
        help="List recorded session documents"
    )

    parser.add_argument(
        "--export",
        metavar="SESSION",
        help="Export a recorded session as Markdown"
    )

    parser.add_argument(
        "-o", "--output",
        metavar="FILE",
        help="Report path for --export (default: <session>.md)"
    )

    # Proxy Options
    parser.add_argument(
        "--host",
        help="Host to bind the proxy (default: from config, 0.0.0.0)"
    )

    parser.add_argument(
        "-p", "--port",
        type=int,
        help="Port to bind the proxy (default: from config, 8080)"
    )

    return parser.parse_args(argv)


def run_cli_command(args, config: ApplicationConfig):
    """Execute CLI commands"""
    if args.init_ca:
        return init_ca_command(config)
    elif args.ca_info:
        return ca_info_command(config)
    elif args.list_sessions:
        return list_sessions_command(config)
    elif args.export:
        return export_session_command(config, args.export, args.output)

    return None


def main(argv=None) -> int:
    args = parse_arguments(argv)
    configure_logging(args.log_level, args.log_dir)

    proxy_overrides = {}
    if args.host:
        proxy_overrides["host"] = args.host
    if args.port is not None:
        proxy_overrides["port"] = args.port

    try:
        config = ApplicationConfig(args.config, proxy=proxy_overrides)
    except (ValidationError, ValueError, yaml.YAMLError) as e:
        logger.error("Invalid configuration", error=str(e))
        return 2

    exit_code = run_cli_command(args, config)
    if exit_code is not None:
        return exit_code

    server = ProxyServer(config)
    try:
        server.run()
    except SessionProxyError as e:
        logger.error("Proxy failed to start", error=str(e))
        return 1

    logger.info("Session saved", session=server.session_name, session_dir=str(config.logging.session_dir))
    return 0


if __name__ == "__main__":
    sys.exit(main())
