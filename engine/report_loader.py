"""
Load broker trade reports and capital-movement sheets from CSV.

This module provides functionality to:
- Read a trade report exported by MetaTrader or cTrader into plain rows
  (column name -> raw string), the input of the trade tax engine
- Read a capital-movement sheet (date, type, amount) into
  CapitalTransaction objects for the cambial ledger

Reports may start with a title line such as ``Posições`` before the
header; that line is skipped. Fully blank rows are dropped.
"""

import io
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd

from engine.cambial_ledger import CapitalTransaction, TransactionKind
from engine.exceptions import InvalidTransactionError, MalformedDateError, UnrecognizedFormatError
from engine.parsing import parse_brl_input, parse_close_date
from engine.platform_detector import normalize_column_name

# Configure logging
logger = logging.getLogger(__name__)

Source = Union[str, Path, bytes]

DELIMITERS = (',', ';', '\t')

CAPITAL_COLUMNS = {
    'date': {'date', 'data'},
    'type': {'type', 'tipo'},
    'amount': {'amount', 'valor', 'value', 'valor (usd)', 'amount_usd'},
}


def _read_text(source: Source, encoding: str) -> str:
    if isinstance(source, bytes):
        return source.decode(encoding)
    with open(source, 'r', encoding=encoding, newline='') as f:
        return f.read()


def _strip_title_line(text: str) -> str:
    """Drop a leading report title line (e.g. ``Posições``) above the header."""
    lines = text.splitlines(keepends=True)
    if len(lines) > 1:
        first_cell = lines[0].split(',')[0].split(';')[0].split('\t')[0]
        if 'posi' in first_cell.strip().lower():
            logger.debug(f"Skipping report title line: {lines[0].strip()!r}")
            return ''.join(lines[1:])
    return text


def detect_delimiter(text: str) -> str:
    """Pick the most frequent of ``,``, ``;`` and tab in the header line."""
    header = next((line for line in text.splitlines() if line.strip()), '')
    counts = {d: header.count(d) for d in DELIMITERS}
    best = max(counts, key=counts.get)
    return best if counts[best] > 0 else ','


def _read_frame(text: str, delimiter: Optional[str], header: Optional[int] = 0) -> pd.DataFrame:
    if not text.strip():
        return pd.DataFrame()
    sep = delimiter or detect_delimiter(text)
    try:
        frame = pd.read_csv(
            io.StringIO(text),
            sep=sep,
            header=header,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError, ValueError) as e:
        raise UnrecognizedFormatError([], f"Could not read CSV: {e}") from e
    return frame.fillna('')


def read_trade_report(source: Source, delimiter: Optional[str] = None,
                      encoding: str = 'utf-8-sig') -> List[Dict[str, str]]:
    """
    Read a broker trade report into raw rows.

    The header line is read as data so repeated column names survive
    pandas' de-duplication. When a name repeats, the last column wins:
    MT5 position reports list ``Horário`` and ``Preço`` twice, opening
    values first and closing values second.

    Args:
        source: File path or raw bytes of the CSV upload
        delimiter: Field separator; sniffed when None
        encoding: Text encoding of the file

    Returns:
        List[Dict[str, str]]: One mapping per non-blank row, headers trimmed

    Raises:
        UnrecognizedFormatError: If the CSV cannot be read
    """
    text = _strip_title_line(_read_text(source, encoding))
    frame = _read_frame(text, delimiter, header=None)
    if frame.empty:
        logger.warning("Trade report has no rows")
        return []

    header = [str(c).strip() for c in frame.iloc[0]]
    columns = [c for c in header if c]
    if len(set(columns)) < len(columns):
        duplicated = sorted({c for c in columns if columns.count(c) > 1})
        logger.debug(f"Repeated report columns {duplicated}, keeping the last occurrence")

    rows: List[Dict[str, str]] = []
    for values in frame.iloc[1:].itertuples(index=False, name=None):
        if not any(str(v).strip() for v in values):
            continue
        row: Dict[str, str] = {}
        for column, value in zip(header, values):
            if column:
                row[column] = '' if value is None else str(value)
        rows.append(row)

    logger.info(f"Read {len(rows)} rows with {len(set(columns))} columns from trade report")
    return rows


def _column_lookup(columns: List[str]) -> Dict[str, str]:
    normalized = {normalize_column_name(c): c for c in columns}
    lookup = {}
    for field_name, aliases in CAPITAL_COLUMNS.items():
        match = next((normalized[a] for a in aliases if a in normalized), None)
        if match is None:
            raise UnrecognizedFormatError(
                columns, f"Capital sheet is missing a '{field_name}' column (columns: {sorted(columns)})")
        lookup[field_name] = match
    return lookup


def read_capital_transactions(source: Source, delimiter: Optional[str] = None,
                              encoding: str = 'utf-8-sig') -> List[CapitalTransaction]:
    """
    Read capital movements from a ``date,type,amount`` sheet.

    Dates may use any supported grammar, types the Portuguese labels
    (Envio, Retirada, Não Retirada) or English names, amounts pt-BR
    (``1.000,00``) or plain format.

    Raises:
        UnrecognizedFormatError: Missing columns
        MalformedDateError, MalformedAmountError, InvalidTransactionError: Bad row
    """
    frame = _read_frame(_read_text(source, encoding), delimiter)
    if frame.empty:
        logger.warning("Capital sheet has no rows")
        return []

    frame.columns = [str(c).strip() for c in frame.columns]
    lookup = _column_lookup(list(frame.columns))

    transactions: List[CapitalTransaction] = []
    for i, record in enumerate(frame.to_dict(orient='records'), start=1):
        if not any(str(v).strip() for v in record.values()):
            continue
        raw_date = record[lookup['date']]
        try:
            day = parse_close_date(raw_date, row_number=i)
        except MalformedDateError:
            logger.error(f"Row {i}: invalid date {raw_date!r}")
            raise
        try:
            kind = TransactionKind.parse(record[lookup['type']])
        except InvalidTransactionError as e:
            raise InvalidTransactionError(f"Row {i}: {e}", day) from e
        amount = parse_brl_input(record[lookup['amount']], row_number=i)
        transactions.append(CapitalTransaction(date=day, kind=kind, amount_usd=amount))

    logger.info(f"Read {len(transactions)} capital movements")
    return transactions
