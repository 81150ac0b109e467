#!/usr/bin/env python3
"""Main entry point for the foliochart CLI."""

import argparse
import sys


def main():
    """Parse CLI arguments and dispatch to the appropriate subcommand.

    Returns:
        int: Exit code (0 for success, non-zero for errors).
    """
    parser = argparse.ArgumentParser(
        prog="foliochart",
        description="foliochart - portfolio value and cost basis over time, in one currency",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  foliochart chart portfolio.json              Portfolio value vs cost basis
  foliochart chart portfolio.xlsx -c EUR       Show everything in EUR
  foliochart holdings portfolio.json           Per-holding table
  foliochart chart portfolio.json --points 60  Show the last 60 bars
        """,
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        help="Available commands",
    )

    # Import subcommand modules and register them
    from .chart import register_subcommand as register_chart
    from .holdings import register_subcommand as register_holdings
    from .version import register_subcommand as register_version

    register_chart(subparsers)
    register_holdings(subparsers)
    register_version(subparsers)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
