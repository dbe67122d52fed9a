"""
Trade Tax Apportionment Engine

Turns a broker trade report into the Brazilian income-tax figures:
- Column layout detected per platform (MetaTrader 4/5, cTrader)
- Each trade's net USD result converted to BRL at the PTAX buy rate of
  its close date
- Monthly USD/BRL totals in chronological order
- Annual tax of 15% on a positive BRL total; a negative total owes
  nothing and is reported as a loss available to offset future gains
  (it is not carried forward automatically)
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Mapping, Optional, Sequence

import pandas as pd

from engine.exceptions import UnrecognizedFormatError
from engine.parsing import parse_close_date, parse_report_amount
from engine.platform_detector import (
    CLOSE_TIME,
    COMMISSION,
    RESULT,
    SWAP,
    SYMBOL,
    FormatMapping,
    detect_format,
    slugify_column_name,
)
from market_data.ptax_rates import PTAXRateResolver, RateSide

# Configure logging
logger = logging.getLogger(__name__)


@dataclass
class TradeRecord:
    """
    One closed trade after format normalization.

    Attributes:
        close_date: Calendar date the trade was closed
        month_key: ``YYYY-MM`` of the close date
        symbol: Instrument traded (raw text)
        commission: Commission column (raw text)
        swap: Swap column (raw text)
        result_usd: Net result in USD
        rate: PTAX buy rate applied (None until converted)
        result_brl: Net result in BRL
        extra: Unmapped columns, slugified name -> raw value
    """
    close_date: date
    month_key: str
    symbol: str = ''
    commission: str = ''
    swap: str = ''
    result_usd: float = 0.0
    rate: Optional[float] = None
    result_brl: float = 0.0
    extra: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        record = {
            'close_date': self.close_date.isoformat(),
            'month_key': self.month_key,
            'symbol': self.symbol,
            'commission': self.commission,
            'swap': self.swap,
            'result_usd': self.result_usd,
            'rate': self.rate,
            'result_brl': self.result_brl,
        }
        for key, value in self.extra.items():
            record.setdefault(key, value)
        return record


@dataclass(frozen=True)
class MonthlyResult:
    month_key: str
    result_usd: float
    result_brl: float
    trade_count: int


@dataclass
class ApportionmentResult:
    """Monthly and annual figures of one trade report."""
    platform: str
    trades: List[TradeRecord]
    monthly: List[MonthlyResult]
    total_usd: float
    total_brl: float
    annual_tax_brl: float
    result_after_tax_brl: float
    loss_to_offset_brl: float

    def trades_for_month(self, month_key: str) -> List[TradeRecord]:
        """Trades closed in one month, in report order."""
        return [t for t in self.trades if t.month_key == month_key]

    def monthly_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(
            [m.__dict__ for m in self.monthly],
            columns=['month_key', 'result_usd', 'result_brl', 'trade_count'],
        )

    def trades_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame([t.to_dict() for t in self.trades])


class TradeTaxEngine:
    """
    Income-tax apportionment for imported trade reports.

    This class handles:
    - Platform detection and column normalization
    - Date and amount parsing per row
    - PTAX conversion (buy side) per close date
    - Monthly grouping and annual tax
    """

    def __init__(self, rate_resolver: PTAXRateResolver, config: Optional[Dict] = None):
        """
        Initialize the trade tax engine.

        Args:
            rate_resolver: Resolver supplying PTAX rates
            config: Settings dict; defaults to the resolver's configuration
        """
        self.rate_resolver = rate_resolver
        self.config = config if config is not None else rate_resolver.config
        self.tax_rate = float(self.config['taxes']['trade_rate'])

        logger.info(f"Trade tax engine initialized (tax rate: {self.tax_rate:.0%})")

    def normalize_row(self, raw_row: Mapping[str, str], mapping: FormatMapping,
                      row_number: Optional[int] = None) -> TradeRecord:
        """
        Build a TradeRecord from one raw report row.

        Mapped columns fill the structured fields; every other column is
        kept in ``extra`` under its slugified name.

        Raises:
            MalformedDateError: If the close time cannot be parsed
            MalformedAmountError: If the result is not numeric
        """
        fields: Dict[str, str] = {}
        extra: Dict[str, str] = {}
        for column, value in raw_row.items():
            if column is None:
                continue
            canonical = mapping.field_for(column)
            text = '' if value is None else str(value)
            if canonical is not None:
                fields[canonical] = text
            else:
                extra[slugify_column_name(column)] = text

        close_date = parse_close_date(fields.get(CLOSE_TIME, ''), row_number)
        iso_date = close_date.isoformat()

        return TradeRecord(
            close_date=close_date,
            month_key=iso_date[:7],
            symbol=fields.get(SYMBOL, ''),
            commission=fields.get(COMMISSION, ''),
            swap=fields.get(SWAP, ''),
            result_usd=parse_report_amount(fields.get(RESULT), row_number),
            extra=extra,
        )

    def apportion(self, raw_rows: Sequence[Mapping[str, str]],
                  mapping: Optional[FormatMapping] = None) -> ApportionmentResult:
        """
        Compute monthly results and annual tax for a trade report.

        Args:
            raw_rows: Parsed report rows (column name -> raw string)
            mapping: Column mapping; detected from the columns when omitted

        Returns:
            ApportionmentResult: Per-trade, monthly and annual figures

        Raises:
            UnrecognizedFormatError: Empty report or unknown layout
            MalformedDateError, MalformedAmountError: Unparseable row
            RateUnavailableError, RateSourceError: From the rate resolver
        """
        if not raw_rows:
            raise UnrecognizedFormatError([], "The trade report is empty")

        if mapping is None:
            mapping = detect_format(raw_rows[0].keys())

        # Parse everything before touching the rate service
        trades = [
            self.normalize_row(row, mapping, row_number=i)
            for i, row in enumerate(raw_rows, start=1)
        ]

        rates = self.rate_resolver.resolve_rates(t.close_date for t in trades)
        for trade in trades:
            trade.rate = rates[trade.close_date].for_side(RateSide.BUY)
            trade.result_brl = trade.result_usd * trade.rate

        frame = pd.DataFrame({
            'month_key': [t.month_key for t in trades],
            'result_usd': [t.result_usd for t in trades],
            'result_brl': [t.result_brl for t in trades],
        })
        grouped = frame.groupby('month_key', sort=True).agg(
            result_usd=('result_usd', 'sum'),
            result_brl=('result_brl', 'sum'),
            trade_count=('result_usd', 'count'),
        )
        monthly = [
            MonthlyResult(month_key=month, result_usd=float(row.result_usd),
                          result_brl=float(row.result_brl), trade_count=int(row.trade_count))
            for month, row in grouped.iterrows()
        ]

        total_usd = float(sum(m.result_usd for m in monthly))
        total_brl = float(sum(t.result_brl for t in trades))
        annual_tax = total_brl * self.tax_rate if total_brl > 0 else 0.0
        loss_to_offset = -total_brl if total_brl < 0 else 0.0

        logger.info(f"{mapping.name}: {len(trades)} trades over {len(monthly)} months, "
                    f"total R$ {total_brl:,.2f}, annual tax R$ {annual_tax:,.2f}")
        if loss_to_offset:
            logger.info(f"Loss of R$ {loss_to_offset:,.2f} available to offset future gains")

        return ApportionmentResult(
            platform=mapping.name,
            trades=trades,
            monthly=monthly,
            total_usd=total_usd,
            total_brl=total_brl,
            annual_tax_brl=annual_tax,
            result_after_tax_brl=total_brl - annual_tax,
            loss_to_offset_brl=loss_to_offset,
        )
