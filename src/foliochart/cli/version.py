"""Version subcommand for the foliochart CLI."""

from importlib.metadata import PackageNotFoundError, version

from ..config import load_settings
from ..currency import Currency


def register_subcommand(subparsers):
    """Register the version subcommand with the argument parser.

    Args:
        subparsers: The argparse subparsers object to register with.
    """
    parser = subparsers.add_parser(
        "version",
        help="Display foliochart version information",
        description="Display the installed foliochart version and its currency settings.",
    )
    parser.set_defaults(func=run)


def run(args):
    """Display version information and the currency settings in effect.

    Args:
        args: Parsed CLI arguments.

    Returns:
        int: Exit code (0 for success).
    """
    try:
        ver = version("foliochart")
    except PackageNotFoundError:
        ver = "unknown"

    print(f" foliochart {ver}")
    try:
        print(f" Display currency: {load_settings().display_currency.value}")
    except ValueError as e:
        print(f" Display currency: invalid ({e})")
    print(f" Supported currencies: {', '.join(c.value for c in Currency)}")
    return 0
