"""
Collect subcommand.

Loads a page and prints every lifecycle event as one JSON object per line
on stdout. Logs go to stderr, so the output can be piped as-is.
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Callable, Optional, TextIO

from ..cdp.exceptions import CDPError
from ..connector import Connector
from ..dom import AsyncHTMLElement
from ..events import EventEmitter
from ..launcher import ChromeLauncher
from ..types import NetworkData, Request, Response


def serialize_payload(value: Any) -> Any:
    """Reduce an event payload to JSON-friendly values."""
    if isinstance(value, AsyncHTMLElement):
        return value.to_dict()
    if isinstance(value, (Request, Response)):
        return value.to_dict()
    if isinstance(value, NetworkData):
        return {"request": value.request.to_dict(), "response": value.response.to_dict()}
    if isinstance(value, BaseException):
        return {"name": type(value).__name__, "message": str(value)}
    if isinstance(value, dict):
        return {key: serialize_payload(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_payload(item) for item in value]
    return value


def format_event(event_name: str, payload: Any) -> str:
    record = {"event": event_name}
    serialized = serialize_payload(payload)
    if isinstance(serialized, dict):
        record.update(serialized)
    elif serialized is not None:
        record["payload"] = serialized
    return json.dumps(record, default=str)


def jsonl_printer(stream: Optional[TextIO] = None) -> Callable[[str, Any], None]:
    def print_event(event_name: str, payload: Any) -> None:
        print(format_event(event_name, payload), file=stream or sys.stdout, flush=True)

    return print_event


def create_connector(config, emitter: EventEmitter, launcher: ChromeLauncher) -> Connector:
    return Connector(
        emitter,
        launcher,
        chrome_host=config.chrome_host,
        max_size=config.max_size,
        **config.connector_options(),
    )


def create_launcher(config) -> ChromeLauncher:
    return ChromeLauncher(
        port=config.chrome_port,
        host=config.chrome_host,
        chrome_path=config.chrome_path,
        headless=config.headless,
    )


def report_error(args: argparse.Namespace, error: CDPError) -> int:
    if hasattr(args, "config") and args.config.log_level.upper() == "DEBUG":
        raise error
    print(f"Error: {error}", file=sys.stderr)
    if error.details.get("recovery"):
        print(f"Recovery hint: {error.details['recovery']}", file=sys.stderr)
    return 1


async def collect_handler_async(args: argparse.Namespace) -> int:
    """
    Handle 'collect' command (async implementation).

    Returns:
        Exit code (0 for success, 1 when the page could not be collected)
    """
    config = args.config
    emitter = EventEmitter()
    emitter.on_any(jsonl_printer())

    launcher = create_launcher(config)
    try:
        async with create_connector(config, emitter, launcher) as connector:
            await connector.collect(args.url)
        return 0
    except CDPError as e:
        return report_error(args, e)
    finally:
        launcher.kill()


def collect_handler(args: argparse.Namespace) -> int:
    """Synchronous wrapper for collect_handler_async."""
    return asyncio.run(collect_handler_async(args))


def register_subcommand(
    subparsers: argparse._SubParsersAction, parent: argparse.ArgumentParser
) -> None:
    """Register 'collect' subcommand."""
    collect_parser = subparsers.add_parser(
        "collect",
        parents=[parent],
        help="Print the lifecycle events of a page as JSON lines",
        description="Load URL in Chrome and print every lifecycle event as a JSON line",
        epilog="""
Examples:
  # Launch headless Chrome (or reuse one on port 9222) and collect
  webscan collect https://example.com/

  # Accept self-signed certificates
  webscan collect https://localhost:8443/ --override-invalid-cert
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    collect_parser.add_argument("url", help="URL of the page to collect")

    collect_parser.set_defaults(func=collect_handler)
