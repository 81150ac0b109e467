"""Runtime settings read from the environment (and a ``.env`` file)."""

from dataclasses import dataclass
import os

from dotenv import load_dotenv

from .currency import Currency

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Settings:
    """Settings shared by the CLI and library callers.

    Attributes:
        display_currency: Currency charts and tables are shown in.
        batch_window_ms: How long the chart batcher collects requests.
        max_batch_size: Maximum number of requests per batch.
        thumbnail_points: Number of trailing points kept per holding thumbnail.
        error_out_negative_quantity: Raise when a SELL exceeds the quantity held.
    """

    display_currency: Currency = Currency.USD
    batch_window_ms: int = 50
    max_batch_size: int = 20
    thumbnail_points: int = 30
    error_out_negative_quantity: bool = True


def _get_int(name: str, default: int, minimum: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{raw}'")
    if value < minimum:
        raise ValueError(f"{name} must be at least {minimum}, got {value}")
    return value


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean, got '{raw}'")


def load_settings(use_dotenv: bool = True) -> Settings:
    """
    Build Settings from ``FOLIOCHART_*`` environment variables.

    Args:
        use_dotenv: Load a ``.env`` file first (existing variables win).

    Returns:
        The settings, with defaults for unset variables.

    Raises:
        ValueError: If a variable is set to an invalid value.
    """
    if use_dotenv:
        load_dotenv()

    raw_currency = os.getenv("FOLIOCHART_DISPLAY_CURRENCY") or Currency.USD.value
    try:
        display_currency = Currency(raw_currency.strip().upper())
    except ValueError:
        raise ValueError(f"Unknown currency '{raw_currency}' in FOLIOCHART_DISPLAY_CURRENCY")

    return Settings(
        display_currency=display_currency,
        batch_window_ms=_get_int("FOLIOCHART_BATCH_WINDOW_MS", Settings.batch_window_ms, 0),
        max_batch_size=_get_int("FOLIOCHART_MAX_BATCH_SIZE", Settings.max_batch_size, 1),
        thumbnail_points=_get_int("FOLIOCHART_THUMBNAIL_POINTS", Settings.thumbnail_points, 1),
        error_out_negative_quantity=_get_bool(
            "FOLIOCHART_ERROR_OUT_NEGATIVE_QUANTITY", Settings.error_out_negative_quantity
        ),
    )
