"""
Main CLI entry point for webscan.

Usage:
    webscan <subcommand> [options]

Subcommands:
    collect   - Load a page and print its lifecycle events as JSON lines
    evaluate  - Load a page and print the value of a JavaScript expression
"""

import argparse
import sys
from typing import List, Optional

from webscan.config import Configuration
from webscan.logging_setup import setup_logging


def create_parent_parser() -> argparse.ArgumentParser:
    """
    Create parent parser with global options shared across all subcommands.

    Options left unset do not override the environment or ~/.webscanrc.
    """
    parent = argparse.ArgumentParser(add_help=False)

    # Browser options
    parent.add_argument(
        "--chrome-host",
        help="Chrome host (default: localhost)",
    )
    parent.add_argument(
        "--chrome-port",
        type=int,
        help="Chrome debugging port (default: 9222)",
    )
    parent.add_argument(
        "--chrome-path",
        help="Chrome/Chromium executable to launch when none is running",
    )
    parent.add_argument(
        "--headful",
        dest="headless",
        action="store_false",
        default=None,
        help="Show the browser window when launching one",
    )

    # Collection options
    parent.add_argument(
        "--timeout",
        type=float,
        help="Expression evaluation timeout in seconds (default: 60.0)",
    )
    parent.add_argument(
        "--wait-for",
        type=int,
        help="Settle delay after the load event in milliseconds (default: 1000)",
    )
    parent.add_argument(
        "--tab-url",
        help="Page to open new tabs on (used with --use-tab-url)",
    )
    parent.add_argument(
        "--use-tab-url",
        action="store_true",
        default=None,
        help="Open the tab on --tab-url instead of about:blank",
    )
    parent.add_argument(
        "--header",
        action="append",
        dest="headers",
        metavar="NAME:VALUE",
        help="Default header for out-of-band fetches (repeatable)",
    )
    parent.add_argument(
        "--override-invalid-cert",
        action="store_true",
        default=None,
        help="Accept invalid TLS certificates",
    )

    # Logging options
    parent.add_argument(
        "--log-format",
        choices=["json", "text"],
        help="Log output format on stderr (default: text)",
    )
    parent.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )

    # Mutual exclusion group for verbosity
    verbosity_group = parent.add_mutually_exclusive_group()
    verbosity_group.add_argument(
        "--quiet",
        action="store_true",
        help="Only log errors",
    )
    verbosity_group.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose debug output",
    )

    return parent


def create_main_parser(parent: argparse.ArgumentParser) -> argparse.ArgumentParser:
    """Create main parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog="webscan",
        description="Collect a web page through the Chrome DevTools Protocol",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Print every lifecycle event of a page
  webscan collect https://example.com/

  # Only the fetches, with more time for late requests
  webscan collect https://example.com/ --wait-for 3000 | grep '"fetch::'

  # Evaluate an expression once the page is loaded
  webscan evaluate https://example.com/ "document.title"

For more information on subcommands, run: webscan <subcommand> --help
        """,
    )

    subparsers = parser.add_subparsers(
        dest="subcommand",
        title="subcommands",
        required=True,
    )

    from . import collect_cmd, evaluate_cmd

    collect_cmd.register_subcommand(subparsers, parent)
    evaluate_cmd.register_subcommand(subparsers, parent)

    return parser


def parse_header_args(values: Optional[List[str]]) -> Optional[dict]:
    """Turn repeated ``NAME:VALUE`` options into a header dict."""
    if not values:
        return None

    headers = {}
    for value in values:
        name, sep, header_value = value.partition(":")
        if not sep or not name.strip():
            raise argparse.ArgumentTypeError(f"Invalid header (expected NAME:VALUE): {value}")
        headers[name.strip()] = header_value.strip()
    return headers


def build_configuration(args: argparse.Namespace) -> Configuration:
    """Precedence: CLI flags > env vars > config file > defaults."""
    config = Configuration()
    config.load_from_file("~/.webscanrc")
    config.load_from_env()

    cli_overrides = {
        "chrome_host": getattr(args, "chrome_host", None),
        "chrome_port": getattr(args, "chrome_port", None),
        "chrome_path": getattr(args, "chrome_path", None),
        "headless": getattr(args, "headless", None),
        "timeout": getattr(args, "timeout", None),
        "wait_for": getattr(args, "wait_for", None),
        "tab_url": getattr(args, "tab_url", None),
        "use_tab_url": getattr(args, "use_tab_url", None),
        "headers": parse_header_args(getattr(args, "headers", None)),
        "override_invalid_cert": getattr(args, "override_invalid_cert", None),
        "log_level": getattr(args, "log_level", None),
        "log_format": getattr(args, "log_format", None),
    }
    config.merge(**{k: v for k, v in cli_overrides.items() if v is not None})

    if getattr(args, "quiet", False):
        config.log_level = "ERROR"
    elif getattr(args, "verbose", False):
        config.log_level = "DEBUG"

    return config


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for CLI.

    Returns:
        Exit code (0 for success, 1 for errors, 130 when interrupted)
    """
    parent = create_parent_parser()
    parser = create_main_parser(parent)

    args = parser.parse_args(argv)

    try:
        config = build_configuration(args)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))

    setup_logging(
        format_type=config.log_format,
        level=config.log_level.upper() if isinstance(config.log_level, str) else "INFO",
        quiet=getattr(args, "quiet", False),
        verbose=getattr(args, "verbose", False),
    )

    args.config = config

    if hasattr(args, "func"):
        try:
            return args.func(args)
        except KeyboardInterrupt:
            print("\nInterrupted by user", file=sys.stderr)
            return 130  # Standard exit code for SIGINT
        except Exception as e:
            if config.log_level.upper() == "DEBUG":
                raise  # Re-raise for full traceback in debug mode
            print(f"Error: {e}", file=sys.stderr)
            return 1
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
