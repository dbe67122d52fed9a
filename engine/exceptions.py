"""
Error kinds for the Cambial and IR calculations.

Every error is terminal for the calculation run that raised it. Each one
carries the offending date, amount, row or column set so the caller can
present an actionable message.
"""

from datetime import date
from typing import Iterable, Optional


class CalculationError(Exception):
    """Base exception for Cambial/IR calculation failures."""
    pass


class RateUnavailableError(CalculationError):
    """Raised when no PTAX rate exists within the lookback window."""

    def __init__(self, requested_date: date, lookback_days: int):
        self.requested_date = requested_date
        self.lookback_days = lookback_days
        super().__init__(
            f"No PTAX rate published for {requested_date.isoformat()} "
            f"or the {lookback_days - 1} preceding days"
        )


class RateSourceError(CalculationError):
    """Raised when the PTAX service fails for a reason other than missing data."""

    def __init__(self, requested_date: date, reason: str):
        self.requested_date = requested_date
        self.reason = reason
        super().__init__(f"PTAX lookup failed for {requested_date.isoformat()}: {reason}")


class InsufficientBalanceError(CalculationError):
    """Raised when a withdrawal exceeds the running USD balance."""

    def __init__(self, transaction_date: date, amount: float, balance: float):
        self.transaction_date = transaction_date
        self.amount = amount
        self.balance = balance
        super().__init__(
            f"Withdrawal of USD {amount:,.2f} on {transaction_date.isoformat()} "
            f"exceeds the balance of USD {balance:,.2f} at that date"
        )


class InvalidSequenceError(CalculationError):
    """Raised when a transaction sequence does not start with a deposit."""

    def __init__(self, message: str, transaction_date: Optional[date] = None):
        self.transaction_date = transaction_date
        super().__init__(message)


class InvalidTransactionError(CalculationError):
    """Raised when a single capital transaction breaks an entry rule."""

    def __init__(self, message: str, transaction_date: Optional[date] = None):
        self.transaction_date = transaction_date
        super().__init__(message)


class UnrecognizedFormatError(CalculationError):
    """Raised when a trade report matches no known platform signature."""

    def __init__(self, columns: Iterable[str], message: Optional[str] = None):
        self.columns = sorted(columns)
        super().__init__(message or f"Unrecognized trade report format (columns: {self.columns})")


class MalformedDateError(CalculationError):
    """Raised when a date string fits none of the supported grammars."""

    def __init__(self, value: str, row_number: Optional[int] = None):
        self.value = value
        self.row_number = row_number
        location = f" (row {row_number})" if row_number is not None else ""
        super().__init__(f"Invalid date: {value!r}{location}")


class MalformedAmountError(CalculationError):
    """Raised for non-numeric amounts, or non-positive ones where positive is required."""

    def __init__(self, value, reason: str = "not a number", row_number: Optional[int] = None):
        self.value = value
        self.reason = reason
        self.row_number = row_number
        location = f" (row {row_number})" if row_number is not None else ""
        super().__init__(f"Invalid amount {value!r}: {reason}{location}")
