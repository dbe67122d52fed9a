"""
Date and amount parsing for broker reports and manual entries.

Close dates are recognised by a small set of named grammars. Each grammar
is a pattern plus a ``strptime`` format, and detection picks the grammar
before parsing, so a value either becomes a calendar date or fails with
``MalformedDateError``:

- DMY_SLASH: ``DD/MM/YYYY`` (MetaTrader 5 in Portuguese)
- YMD_DOT:   ``YYYY.MM.DD`` (MetaTrader 4/5 in English)
- ISO:       ``YYYY-MM-DD`` (cTrader, manual entries)

Amounts come in two flavours: report results, where a comma may be the
decimal separator, and pt-BR user input such as ``1.000,00``.
"""

import math
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Pattern, Union

import pytz

from engine.exceptions import MalformedAmountError, MalformedDateError


@dataclass(frozen=True)
class DateGrammar:
    """A named date layout."""
    name: str
    pattern: Pattern
    fmt: str

    def matches(self, text: str) -> bool:
        return bool(self.pattern.match(text))

    def parse(self, text: str) -> date:
        return datetime.strptime(text, self.fmt).date()


DMY_SLASH = DateGrammar('DMY_SLASH', re.compile(r'^\d{1,2}/\d{1,2}/\d{4}$'), '%d/%m/%Y')
YMD_DOT = DateGrammar('YMD_DOT', re.compile(r'^\d{4}\.\d{1,2}\.\d{1,2}$'), '%Y.%m.%d')
ISO = DateGrammar('ISO', re.compile(r'^\d{4}-\d{1,2}-\d{1,2}$'), '%Y-%m-%d')

DATE_GRAMMARS = (DMY_SLASH, YMD_DOT, ISO)

_THOUSANDS_ONLY = re.compile(r'^\d{1,3}(\.\d{3})+$')


def _date_token(value: str) -> str:
    """Drop the time component of a timestamp string."""
    parts = str(value).strip().split()
    if not parts:
        return ''
    token = parts[0]
    if 'T' in token and token[:4].isdigit():
        token = token.split('T', 1)[0]
    return token


def detect_grammar(value: str) -> Optional[DateGrammar]:
    """Return the grammar that fits the date part of ``value``, if any."""
    token = _date_token(value)
    for grammar in DATE_GRAMMARS:
        if grammar.matches(token):
            return grammar
    return None


def parse_close_date(value: str, row_number: Optional[int] = None) -> date:
    """
    Parse a report timestamp into a calendar date.

    Args:
        value (str): Raw timestamp, e.g. ``"2024.03.15 17:42:10"``
        row_number (int): Report row, only used for the error message

    Returns:
        date: Canonical calendar date

    Raises:
        MalformedDateError: If no grammar fits or the date does not exist
    """
    if value is None:
        raise MalformedDateError('', row_number)

    grammar = detect_grammar(value)
    if grammar is None:
        raise MalformedDateError(str(value), row_number)

    try:
        return grammar.parse(_date_token(value))
    except ValueError:
        # e.g. 31/02/2024 fits DMY_SLASH but is not a real day
        raise MalformedDateError(str(value), row_number)


def to_calendar_date(value: Union[date, datetime, str]) -> date:
    """
    Reduce a date-like value to a calendar date.

    Timezone-aware datetimes are converted to UTC before the time part is
    dropped, so the same instant always lands on the same day.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(pytz.utc)
        return value.date()
    if isinstance(value, date):
        return value
    return parse_close_date(value)


def parse_report_amount(value, row_number: Optional[int] = None) -> float:
    """
    Parse a monetary result from a broker report.

    Whitespace is removed and a comma is read as the decimal separator.
    When both ``.`` and ``,`` are present the right-most one is the
    decimal separator. Blank cells count as zero.

    Raises:
        MalformedAmountError: If the cell is not numeric
    """
    if value is None:
        return 0.0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if isinstance(value, float) and math.isnan(value):
            return 0.0
        return float(value)

    text = re.sub(r'\s', '', str(value))
    if not text:
        return 0.0

    if ',' in text and '.' in text:
        if text.rfind(',') > text.rfind('.'):
            text = text.replace('.', '').replace(',', '.')
        else:
            text = text.replace(',', '')
    else:
        text = text.replace(',', '.')

    try:
        amount = float(text)
    except ValueError:
        raise MalformedAmountError(value, row_number=row_number)

    if not math.isfinite(amount):
        raise MalformedAmountError(value, row_number=row_number)
    return amount


def parse_brl_input(value, row_number: Optional[int] = None) -> float:
    """
    Parse a positive amount typed in pt-BR format (``1.000,00``).

    Plain ``1000.50`` is accepted as well.

    Raises:
        MalformedAmountError: If the value is not numeric or not positive
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        amount = float(value)
    else:
        text = str(value or '').strip()
        for symbol in ('R$', 'US$', '$'):
            text = text.replace(symbol, '')
        text = re.sub(r'\s', '', text)

        if ',' in text:
            text = text.replace('.', '').replace(',', '.')
        elif _THOUSANDS_ONLY.match(text):
            text = text.replace('.', '')

        try:
            amount = float(text)
        except ValueError:
            raise MalformedAmountError(value, row_number=row_number)

    if not math.isfinite(amount) or amount <= 0:
        raise MalformedAmountError(value, reason="must be a positive number", row_number=row_number)
    return amount
