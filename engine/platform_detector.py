"""
Broker report format detection.

Trade reports exported by MetaTrader 4/5 and cTrader carry different
column names for the same information. A report is classified by testing
its normalized column names against an ordered list of signatures; the
first signature whose required columns are all present wins and yields
the mapping of close time, net result, commission, swap and symbol.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional

from engine.exceptions import UnrecognizedFormatError

# Configure logging
logger = logging.getLogger(__name__)


class Platform(Enum):
    """Known trade report layouts."""
    MT5_POSITIONS = "Metatrader 5 (Posições)"
    MT5_DEALS = "Metatrader 5 (Negócios)"
    MT5_ENGLISH = "Metatrader 5 (Inglês)"
    MT4 = "Metatrader 4"
    CTRADER = "CTrader"


# Canonical field names a mapping resolves
CLOSE_TIME = 'close_time'
RESULT = 'result'
COMMISSION = 'commission'
SWAP = 'swap'
SYMBOL = 'symbol'
MAPPED_FIELDS = (CLOSE_TIME, RESULT, COMMISSION, SWAP, SYMBOL)


def normalize_column_name(name: str) -> str:
    """Lowercase, trim and collapse internal whitespace."""
    return re.sub(r'\s+', ' ', str(name).strip().lower())


def slugify_column_name(name: str) -> str:
    """Key used for columns that no mapping claims."""
    return re.sub(r'\s+', '_', str(name).strip().lower())


@dataclass(frozen=True)
class FormatMapping:
    """
    Raw column names of one platform's report.

    Attributes:
        platform: Platform the mapping belongs to
        close_time: Column with the closing timestamp
        result: Column with the net result in USD
        commission: Column with the commission charged
        swap: Column with the overnight swap
        symbol: Column with the traded instrument
    """
    platform: Platform
    close_time: str
    result: str
    commission: str
    swap: str
    symbol: str

    @property
    def name(self) -> str:
        return self.platform.value

    def field_for(self, column: str) -> Optional[str]:
        """Return the canonical field a raw column maps to, if any."""
        normalized = normalize_column_name(column)
        for field_name in MAPPED_FIELDS:
            if normalize_column_name(getattr(self, field_name)) == normalized:
                return field_name
        return None


@dataclass(frozen=True)
class FormatSignature:
    """Minimal set of normalized columns identifying a platform."""
    required: FrozenSet[str]
    mapping: FormatMapping

    def matches(self, columns: FrozenSet[str]) -> bool:
        return self.required <= columns


PLATFORM_SIGNATURES: List[FormatSignature] = [
    FormatSignature(
        frozenset({'position', 'ativo', 'horário', 'lucro'}),
        FormatMapping(Platform.MT5_POSITIONS, close_time='Horário', result='Lucro',
                      commission='Comissão', swap='Swap', symbol='Ativo'),
    ),
    FormatSignature(
        frozenset({'n. do trade', 'datade fechamento'}),
        FormatMapping(Platform.MT5_DEALS, close_time='Datade  Fechamento', result='Resultado',
                      commission='Comissão', swap='Swap', symbol='Ativo'),
    ),
    FormatSignature(
        frozenset({'position', 'type', 'deal'}),
        FormatMapping(Platform.MT5_ENGLISH, close_time='Time', result='Profit',
                      commission='Commission', swap='Swap', symbol='Symbol'),
    ),
    FormatSignature(
        frozenset({'ticket', 'open time', 'close time'}),
        FormatMapping(Platform.MT4, close_time='Close Time', result='Profit',
                      commission='Commission', swap='Swap', symbol='Item'),
    ),
    FormatSignature(
        frozenset({'tradeid', 'direction', 'close time'}),
        FormatMapping(Platform.CTRADER, close_time='Close Time', result='Net Profit',
                      commission='Commissions', swap='Swap', symbol='Symbol'),
    ),
]


def detect_format(columns: Iterable[str]) -> FormatMapping:
    """
    Classify a trade report by its column names.

    Args:
        columns (Iterable[str]): Raw column names of the report

    Returns:
        FormatMapping: Mapping of the first matching platform

    Raises:
        UnrecognizedFormatError: If no signature matches
    """
    raw_columns = list(columns)
    normalized = frozenset(normalize_column_name(c) for c in raw_columns)

    for signature in PLATFORM_SIGNATURES:
        if signature.matches(normalized):
            logger.info(f"Trade report identified as {signature.mapping.name}")
            return signature.mapping

    logger.error(f"No platform signature matches columns {sorted(normalized)}")
    raise UnrecognizedFormatError(raw_columns)


def mapping_for(platform: Platform) -> FormatMapping:
    """Return the mapping of a platform chosen explicitly by the user."""
    for signature in PLATFORM_SIGNATURES:
        if signature.mapping.platform is platform:
            return signature.mapping
    raise KeyError(platform)


def describe_signatures() -> Dict[str, List[str]]:
    """Required columns per platform, for help output."""
    return {s.mapping.name: sorted(s.required) for s in PLATFORM_SIGNATURES}
