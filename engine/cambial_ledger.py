"""
Cambial Ledger Engine - Weighted-Average Exchange Gain on Capital Movements

Computes the foreign-exchange (cambial) result of capital sent to and
withdrawn from a USD trading account abroad:
- Running USD balance and its BRL cost basis (weighted-average cost)
- Realized gain/loss on every withdrawal, valued at the PTAX buy rate
- Year-end "Não Retirada" marks that re-price the held balance without
  reducing it
- 15% tax on positive withdrawal gains

Deposits ("Envio") are valued at the PTAX sell rate. Only the capital
originally sent or withdrawn belongs here; trading profits are handled by
the trade tax engine.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional, Sequence

import pandas as pd
import pytz

from engine.exceptions import (
    InsufficientBalanceError,
    InvalidSequenceError,
    InvalidTransactionError,
    MalformedAmountError,
)
from engine.parsing import to_calendar_date
from market_data.ptax_rates import PTAXRateResolver, RateSide

# Configure logging
logger = logging.getLogger(__name__)


class TransactionKind(Enum):
    """Capital movement types, valued by their Portuguese labels."""
    DEPOSIT = "Envio"
    WITHDRAWAL = "Retirada"
    UNREALIZED_YEAR_END = "Não Retirada"

    @property
    def rate_side(self) -> RateSide:
        return RateSide.SELL if self is TransactionKind.DEPOSIT else RateSide.BUY

    @property
    def is_withdrawal(self) -> bool:
        return self is not TransactionKind.DEPOSIT

    @classmethod
    def parse(cls, value: str) -> "TransactionKind":
        """Accept the Portuguese label or the English member name."""
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        aliases = {
            'envio': cls.DEPOSIT,
            'deposit': cls.DEPOSIT,
            'retirada': cls.WITHDRAWAL,
            'withdrawal': cls.WITHDRAWAL,
            'não retirada': cls.UNREALIZED_YEAR_END,
            'nao retirada': cls.UNREALIZED_YEAR_END,
            'unrealized_year_end': cls.UNREALIZED_YEAR_END,
            'unrealized year end': cls.UNREALIZED_YEAR_END,
        }
        kind = aliases.get(text.lower())
        if kind is None:
            raise InvalidTransactionError(f"Unknown transaction type: {value!r}")
        return kind


def is_year_end(day: date) -> bool:
    return day.month == 12 and day.day == 31


@dataclass(frozen=True)
class CapitalTransaction:
    """
    One capital movement entered by the user.

    Attributes:
        date: Calendar date of the movement
        kind: Deposit, withdrawal or year-end unrealized withdrawal
        amount_usd: Positive USD amount
    """
    date: date
    kind: TransactionKind
    amount_usd: float

    def __post_init__(self):
        object.__setattr__(self, 'date', to_calendar_date(self.date))
        object.__setattr__(self, 'kind', TransactionKind.parse(self.kind))

        amount = self.amount_usd
        if isinstance(amount, bool) or not isinstance(amount, (int, float)) or not amount > 0:
            raise MalformedAmountError(amount, reason="must be a positive number")
        object.__setattr__(self, 'amount_usd', float(amount))

        if self.kind is TransactionKind.UNREALIZED_YEAR_END and not is_year_end(self.date):
            raise InvalidTransactionError(
                f"'{TransactionKind.UNREALIZED_YEAR_END.value}' is only allowed on December 31 "
                f"(got {self.date.isoformat()})",
                self.date,
            )


@dataclass
class LedgerState:
    """Running USD balance and BRL cost basis for one processing run."""
    balance_usd: float = 0.0
    cost_basis_brl: float = 0.0
    epsilon: float = 1e-6

    @property
    def average_cost(self) -> float:
        if self.balance_usd > self.epsilon:
            return self.cost_basis_brl / self.balance_usd
        return 0.0


@dataclass(frozen=True)
class LedgerRow:
    """Audit trail entry for one processed transaction."""
    date: date
    kind: TransactionKind
    amount_usd: float
    rate: float
    value_brl: float
    gain_loss_brl: float
    balance_after_usd: float

    def to_dict(self) -> Dict:
        return {
            'date': self.date.isoformat(),
            'type': self.kind.value,
            'amount_usd': self.amount_usd,
            'rate': self.rate,
            'value_brl': self.value_brl,
            'gain_loss_brl': self.gain_loss_brl,
            'balance_after_usd': self.balance_after_usd,
        }


@dataclass
class LedgerSummary:
    """Aggregate figures of a processed ledger."""
    balance_usd: float = 0.0
    cost_basis_brl: float = 0.0
    total_deposited_usd: float = 0.0
    total_deposited_brl: float = 0.0
    total_withdrawn_usd: float = 0.0
    total_withdrawn_brl: float = 0.0
    total_gain_loss_brl: float = 0.0
    taxable_gain_brl: float = 0.0
    tax_due_brl: float = 0.0
    carried_forward_brl: Optional[float] = None
    allocate_to_next_year: bool = False
    final_balance_brl: float = 0.0

    def to_dict(self) -> Dict:
        return dict(self.__dict__)


@dataclass
class LedgerResult:
    """Rows plus aggregates of one run."""
    rows: List[LedgerRow] = field(default_factory=list)
    summary: LedgerSummary = field(default_factory=LedgerSummary)

    def to_dataframe(self) -> pd.DataFrame:
        columns = ['date', 'type', 'amount_usd', 'rate', 'value_brl',
                   'gain_loss_brl', 'balance_after_usd']
        return pd.DataFrame([row.to_dict() for row in self.rows], columns=columns)


class CambialLedgerEngine:
    """
    Weighted-average-cost exchange ledger.

    Features:
    - Stable date ordering (same-day entries keep their input order)
    - PTAX rates prefetched in parallel, ledger applied sequentially
    - Per-transaction audit rows and aggregate tax figures
    """

    def __init__(self, rate_resolver: PTAXRateResolver, config: Optional[Dict] = None):
        """
        Initialize the ledger engine.

        Args:
            rate_resolver: Resolver supplying PTAX rates
            config: Settings dict; defaults to the resolver's configuration
        """
        self.rate_resolver = rate_resolver
        self.config = config if config is not None else rate_resolver.config

        self.tax_rate = float(self.config['taxes']['cambial_rate'])
        self.epsilon = float(self.config['ledger']['balance_epsilon'])
        self.timezone = pytz.timezone(self.config['market']['timezone'])

        logger.info(f"Cambial ledger initialized (tax rate: {self.tax_rate:.0%})")

    def _today(self) -> date:
        return datetime.now(self.timezone).date()

    def validate(self, transactions: Sequence[CapitalTransaction]) -> List[CapitalTransaction]:
        """
        Sort transactions by date and check sequence rules.

        Returns:
            List[CapitalTransaction]: Date-ordered transactions

        Raises:
            InvalidSequenceError: If empty or not starting with a deposit
            InvalidTransactionError: If a transaction is dated in the future
        """
        if not transactions:
            raise InvalidSequenceError("No transactions to process")

        ordered = sorted(transactions, key=lambda t: t.date)

        first = ordered[0]
        if first.kind is not TransactionKind.DEPOSIT:
            raise InvalidSequenceError(
                f"The first transaction must be a deposit ({TransactionKind.DEPOSIT.value}), "
                f"got {first.kind.value} on {first.date.isoformat()}",
                first.date,
            )

        today = self._today()
        for t in ordered:
            if t.date > today:
                raise InvalidTransactionError(f"Transaction date {t.date.isoformat()} is in the future", t.date)

        return ordered

    def process(self, transactions: Sequence[CapitalTransaction]) -> LedgerResult:
        """
        Run the ledger over a transaction sequence.

        Args:
            transactions: Capital movements in any order

        Returns:
            LedgerResult: Audit rows and aggregates

        Raises:
            InvalidSequenceError, InvalidTransactionError: Sequence rules broken
            InsufficientBalanceError: Withdrawal above the running balance
            RateUnavailableError, RateSourceError: From the rate resolver
        """
        ordered = self.validate(transactions)

        rates = self.rate_resolver.resolve_rates(t.date for t in ordered)

        state = LedgerState(epsilon=self.epsilon)
        summary = LedgerSummary()
        rows: List[LedgerRow] = []

        for t in ordered:
            rate = rates[t.date].for_side(t.kind.rate_side)
            market_value_brl = t.amount_usd * rate
            previous_avg_cost = state.average_cost
            gain_loss = 0.0

            if t.kind is TransactionKind.DEPOSIT:
                state.balance_usd += t.amount_usd
                state.cost_basis_brl += market_value_brl
                summary.total_deposited_usd += t.amount_usd
                summary.total_deposited_brl += market_value_brl
            else:
                if t.amount_usd > state.balance_usd + self.epsilon:
                    raise InsufficientBalanceError(t.date, t.amount_usd, state.balance_usd)

                withdrawal_cost = t.amount_usd * previous_avg_cost
                gain_loss = market_value_brl - withdrawal_cost
                summary.total_gain_loss_brl += gain_loss

                if t.kind is TransactionKind.UNREALIZED_YEAR_END:
                    # Re-price the held balance; the USD amount stays in the account
                    state.cost_basis_brl += 2 * gain_loss
                    summary.carried_forward_brl = market_value_brl
                    summary.allocate_to_next_year = True
                else:
                    state.balance_usd -= t.amount_usd
                    state.cost_basis_brl -= withdrawal_cost
                    if abs(state.balance_usd) < self.epsilon:
                        state.balance_usd = 0.0
                        state.cost_basis_brl = 0.0
                    summary.total_withdrawn_usd += t.amount_usd
                    summary.total_withdrawn_brl += market_value_brl
                    if gain_loss > 0:
                        summary.taxable_gain_brl += gain_loss

            logger.debug(f"{t.date.isoformat()} {t.kind.value} USD {t.amount_usd:,.2f} @ {rate:.4f} "
                         f"-> gain {gain_loss:,.2f}, balance USD {state.balance_usd:,.2f}")

            rows.append(LedgerRow(
                date=t.date,
                kind=t.kind,
                amount_usd=t.amount_usd,
                rate=rate,
                value_brl=market_value_brl,
                gain_loss_brl=gain_loss,
                balance_after_usd=state.balance_usd,
            ))

        summary.balance_usd = state.balance_usd
        summary.cost_basis_brl = state.cost_basis_brl
        summary.tax_due_brl = summary.taxable_gain_brl * self.tax_rate

        if summary.carried_forward_brl is not None:
            summary.final_balance_brl = summary.carried_forward_brl
        elif state.balance_usd < self.epsilon:
            summary.final_balance_brl = 0.0
        else:
            summary.final_balance_brl = state.cost_basis_brl + summary.total_gain_loss_brl

        logger.info(f"Processed {len(rows)} capital movements: taxable gain R$ {summary.taxable_gain_brl:,.2f}, "
                    f"tax due R$ {summary.tax_due_brl:,.2f}")

        return LedgerResult(rows=rows, summary=summary)
