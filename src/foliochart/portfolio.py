from datetime import datetime
from zoneinfo import ZoneInfo

from typing import Any, Iterable

from enum import Enum

import json
import os
import uuid
import warnings

import pandas as pd

from .currency import Currency

# Default timezone for transactions without timezone info
NYC_TIMEZONE = ZoneInfo("America/New_York")


def _normalize_transaction_datetime(dt: datetime) -> tuple[datetime, bool, bool]:
    """
    Normalize a transaction datetime to ensure it has timezone information.

    If timezone is missing, assumes NYC timezone.
    If time is midnight (00:00:00), assumes 12:00 PM NYC time as time may be missing.

    Args:
        dt: The datetime to normalize.

    Returns:
        A tuple of (normalized_datetime, time_was_missing, timezone_was_missing).
    """
    time_was_missing = False
    timezone_was_missing = False

    # Check if time appears to be missing (midnight with no microseconds)
    if dt.hour == 0 and dt.minute == 0 and dt.second == 0 and dt.microsecond == 0:
        dt = dt.replace(hour=12, minute=0, second=0, microsecond=0)
        time_was_missing = True

    # Check if timezone is missing
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=NYC_TIMEZONE)
        timezone_was_missing = True

    return dt, time_was_missing, timezone_was_missing


def _warn_missing_datetime_parts(file_path: str, any_missing_time: bool, any_missing_timezone: bool) -> None:
    """Emit a single warning about assumed transaction times/timezones."""
    if any_missing_time and any_missing_timezone:
        warnings.warn(
            f"Some transactions in '{file_path}' were missing time and timezone information. "
            f"Assuming 12:00 PM NYC time (America/New_York) for these transactions.",
            UserWarning
        )
    elif any_missing_time:
        warnings.warn(
            f"Some transactions in '{file_path}' were missing time information. "
            f"Assuming 12:00 PM for these transactions.",
            UserWarning
        )
    elif any_missing_timezone:
        warnings.warn(
            f"Some transactions in '{file_path}' were missing timezone information. "
            f"Assuming NYC timezone (America/New_York) for these transactions.",
            UserWarning
        )


class TransactionType(Enum):
    """Enumeration of supported holding transaction types."""

    BUY = "BUY"
    SELL = "SELL"


class Transaction():
    """A single buy or sell of a holding's symbol."""

    def __init__(self, id: str, time: int, transaction_type: TransactionType, quantity: float, price: float):
        """Initialize a Transaction.

        Args:
            id: Identifier assigned by the persistence layer.
            time: When the transaction occurred, as Unix seconds.
            transaction_type: BUY or SELL.
            quantity: Number of shares/units transacted (positive).
            price: Price per share/unit in the holding's currency (positive).
        """
        self.id: str = id
        self.time: int = int(time)
        self.transaction_type: TransactionType = transaction_type
        self.quantity: float = quantity
        self.price: float = price

    def __repr__(self):
        return f"Transaction(id={self.id}, time={self.time}, type={self.transaction_type}, quantity={self.quantity}, price={self.price})"


class Holding():
    """A symbol held in a portfolio, with its ledger of transactions."""

    def __init__(self, symbol: str, currency: Currency, transactions: list[Transaction] | None = None, short_name: str | None = None):
        """Initialize a Holding.

        Args:
            symbol: Ticker symbol (e.g. "AAPL", "BTC-USD", "SAP.DE").
            currency: Currency the symbol is quoted in.
            transactions: The holding's buy/sell ledger.
            short_name: Optional display name.
        """
        self.symbol: str = symbol
        self.currency: Currency = currency
        self.transactions: list[Transaction] = transactions if transactions is not None else []
        self.short_name: str | None = short_name

    def sorted_transactions(self) -> list[Transaction]:
        return sorted(self.transactions, key=lambda t: t.time)

    def first_transaction_time(self) -> int | None:
        if not self.transactions:
            return None
        return min(t.time for t in self.transactions)

    def __repr__(self):
        return f"Holding(symbol={self.symbol}, currency={self.currency}, transactions={len(self.transactions)})"


def holdings_with_transactions(holdings: Iterable[Holding]) -> list[Holding]:
    """Return only the holdings that have at least one transaction."""
    return [holding for holding in holdings if holding.transactions]


def shares_held_at_time(holding: Holding, time: int) -> float:
    """
    Net quantity held at a point in time.

    Args:
        holding: The holding whose ledger is replayed.
        time: Unix seconds; transactions at exactly this time are included.

    Returns:
        Sum of BUY quantities minus sum of SELL quantities up to ``time``.
    """
    shares = 0.0
    for txn in holding.transactions:
        if txn.time > time:
            continue
        if txn.transaction_type == TransactionType.BUY:
            shares += txn.quantity
        elif txn.transaction_type == TransactionType.SELL:
            shares -= txn.quantity
    return shares


def cost_basis_at_time(
    holding: Holding,
    time: int,
    error_out_negative_quantity: bool = True
) -> float:
    """
    Calculate the weighted-average cost basis of a holding at a point in time.

    Replays every transaction with ``transaction.time <= time`` in time order.
    BUYs add ``price * quantity`` to the basis; SELLs remove the same fraction
    of the basis as the fraction of the position sold, whatever the sale price.
    Times are compared as raw Unix seconds.

    Args:
        holding: The holding whose ledger is replayed.
        time: Unix seconds to evaluate the basis at.
        error_out_negative_quantity: If True, raise when a SELL exceeds the
            quantity held. If False, such a SELL clears the position and its
            whole basis instead.

    Returns:
        Total cost basis of the remaining position, in the holding's currency.

    Raises:
        ValueError: If error_out_negative_quantity is True and a SELL exceeds
            the quantity held at that point.
    """
    total_cost_basis = 0.0
    total_quantity = 0.0

    for txn in holding.sorted_transactions():
        if txn.time > time:
            break

        if txn.transaction_type == TransactionType.BUY:
            total_cost_basis += txn.price * txn.quantity
            total_quantity += txn.quantity

        elif txn.transaction_type == TransactionType.SELL:
            if txn.quantity > total_quantity:
                if error_out_negative_quantity:
                    raise ValueError(
                        f"Negative quantity detected: {holding.symbol} = {total_quantity - txn.quantity} "
                        f"after transaction: {txn}"
                    )
                total_cost_basis = 0.0
                total_quantity = 0.0
                continue

            removed = total_cost_basis * txn.quantity / total_quantity
            total_cost_basis -= removed
            total_quantity -= txn.quantity

    return total_cost_basis


def _holdings_from_rows(rows: list[dict[str, Any]]) -> list[Holding]:
    """Group flat transaction rows into holdings, keyed by symbol."""
    holdings: dict[str, Holding] = {}
    for row in rows:
        symbol = row["symbol"]
        holding = holdings.get(symbol)
        if holding is None:
            holding = Holding(
                symbol=symbol,
                currency=row["currency"],
                short_name=row.get("short_name"),
            )
            holdings[symbol] = holding
        elif holding.currency != row["currency"]:
            raise ValueError(
                f"Holding {symbol} has transactions in both {holding.currency.value} and {row['currency'].value}"
            )
        if row.get("transaction") is not None:
            holding.transactions.append(row["transaction"])
    return list(holdings.values())


def load_holdings_from_json(file_path: str) -> list[Holding]:
    """
    Load holdings from a JSON portfolio snapshot.

    Args:
        file_path: Path to the JSON file.

    Returns:
        List of holdings with their transactions.

    Expected JSON structure:
        [
            {
                "symbol": "SAP.DE",
                "currency": "EUR",
                "short_name": "SAP SE",
                "transactions": [
                    {
                        "id": "t1",
                        "datetime": "2024-01-15T10:30:00",
                        "type": "BUY",
                        "price": 150.50,
                        "quantity": 10
                    }
                ]
            },
            ...
        ]

    Holdings with an empty ``transactions`` list are kept; they simply
    contribute nothing to charts.
    """
    with open(file_path, "r") as f:
        data = json.load(f)

    if not isinstance(data, list):
        raise ValueError("JSON file must contain a list of holdings")

    holdings: list[Holding] = []
    any_missing_time = False
    any_missing_timezone = False

    item: Any
    for item in data:  # type: ignore[union-attr]
        transactions: list[Transaction] = []
        for txn in item.get("transactions", []):
            raw_datetime = datetime.fromisoformat(txn["datetime"])
            transaction_datetime, time_missing, tz_missing = _normalize_transaction_datetime(raw_datetime)
            any_missing_time = any_missing_time or time_missing
            any_missing_timezone = any_missing_timezone or tz_missing

            transactions.append(Transaction(
                id=str(txn.get("id") or uuid.uuid4()),
                time=int(transaction_datetime.timestamp()),
                transaction_type=TransactionType(txn["type"]),
                quantity=float(txn["quantity"]),
                price=float(txn["price"]),
            ))

        holdings.append(Holding(
            symbol=str(item["symbol"]),
            currency=Currency(item["currency"]),
            transactions=transactions,
            short_name=item.get("short_name"),
        ))

    _warn_missing_datetime_parts(file_path, any_missing_time, any_missing_timezone)

    return holdings


def load_holdings_from_excel(file_path: str) -> list[Holding]:
    """
    Load holdings from an Excel sheet of transactions.

    Args:
        file_path: Path to the Excel file.

    Returns:
        List of holdings, one per distinct symbol, in first-seen order.

    Expected Excel columns (order independent):
        - SYMBOL: Ticker symbol
        - CURRENCY: Currency the symbol is quoted in
        - DATE AND TIME: Transaction datetime (ISO format)
        - TRANSACTION TYPE: BUY or SELL
        - PRICE: Price per unit
        - QUANTITY: Number of units
        - ID: Optional transaction id
        - NAME: Optional display name
    """
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"Portfolio file not found: {file_path}")

    df = pd.read_excel(file_path)

    if df.empty:
        return []

    required_columns = {"SYMBOL", "CURRENCY", "DATE AND TIME", "TRANSACTION TYPE", "PRICE", "QUANTITY"}
    missing_columns = required_columns - set(df.columns)
    if missing_columns:
        raise ValueError(f"Missing required columns: {missing_columns}")

    rows: list[dict[str, Any]] = []
    any_missing_time = False
    any_missing_timezone = False

    for index, row in df.iterrows():
        raw_datetime = pd.to_datetime(row["DATE AND TIME"]).to_pydatetime()  # type: ignore[assignment]
        transaction_datetime, time_missing, tz_missing = _normalize_transaction_datetime(raw_datetime)
        any_missing_time = any_missing_time or time_missing
        any_missing_timezone = any_missing_timezone or tz_missing

        txn_id = row["ID"] if "ID" in df.columns and pd.notna(row["ID"]) else f"row-{index}"
        name = row["NAME"] if "NAME" in df.columns and pd.notna(row["NAME"]) else None

        rows.append({
            "symbol": str(row["SYMBOL"]),
            "currency": Currency(row["CURRENCY"]),
            "short_name": name,
            "transaction": Transaction(
                id=str(txn_id),
                time=int(transaction_datetime.timestamp()),
                transaction_type=TransactionType(row["TRANSACTION TYPE"]),
                quantity=float(row["QUANTITY"]),
                price=float(row["PRICE"]),
            ),
        })

    _warn_missing_datetime_parts(file_path, any_missing_time, any_missing_timezone)

    return _holdings_from_rows(rows)


def load_holdings(file_path: str) -> list[Holding]:
    """Load holdings from a ``.json`` or Excel snapshot, chosen by extension."""
    if file_path.lower().endswith(".json"):
        return load_holdings_from_json(file_path)
    return load_holdings_from_excel(file_path)
