"""
Evaluate subcommand for running JavaScript in a collected page.

The page is collected first (events are not printed), then the expression
is evaluated in it and its value printed as JSON.
"""

import argparse
import asyncio
import json
import sys

from ..cdp.exceptions import CDPError, EvaluationError
from ..events import EventEmitter
from .collect_cmd import create_connector, create_launcher, report_error


async def evaluate_handler_async(args: argparse.Namespace) -> int:
    """
    Handle 'evaluate' command (async implementation).

    Returns:
        Exit code (0 for success, non-zero for errors)
    """
    config = args.config
    launcher = create_launcher(config)

    try:
        async with create_connector(config, EventEmitter(), launcher) as connector:
            await connector.collect(args.url)
            value = await connector.evaluate(args.expression)
    except EvaluationError as e:
        print(f"Error: {e}", file=sys.stderr)
        if e.stack:
            print(e.stack, file=sys.stderr)
        return 1
    except CDPError as e:
        return report_error(args, e)
    finally:
        launcher.kill()

    print(json.dumps(value, indent=2, default=str))
    return 0


def evaluate_handler(args: argparse.Namespace) -> int:
    """Synchronous wrapper for evaluate_handler_async."""
    return asyncio.run(evaluate_handler_async(args))


def register_subcommand(
    subparsers: argparse._SubParsersAction, parent: argparse.ArgumentParser
) -> None:
    """Register 'evaluate' subcommand."""
    evaluate_parser = subparsers.add_parser(
        "evaluate",
        parents=[parent],
        help="Evaluate JavaScript in a collected page",
        description="Collect URL, then evaluate EXPRESSION in it (promises are awaited)",
        epilog="""
Examples:
  webscan evaluate https://example.com/ "document.title"
  webscan evaluate https://example.com/ "fetch('/robots.txt').then(r => r.status)"
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    evaluate_parser.add_argument("url", help="URL of the page to load")
    evaluate_parser.add_argument("expression", help="JavaScript expression to evaluate")

    evaluate_parser.set_defaults(func=evaluate_handler)
