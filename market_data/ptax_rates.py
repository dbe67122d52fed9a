"""
Banco Central PTAX Exchange Rate Resolver

This module provides functionality to:
- Retrieve the official USD/BRL PTAX buy and sell rates for a date
- Fall back to the nearest previous day when no rate was published
  (weekends, holidays) within a fixed lookback window
- Cache resolved rates for the lifetime of a calculation session
- Resolve many dates in parallel before a sequential calculation pass

Rates come from the BCB Olinda OData service, ``CotacaoDolarDia``.
The sell rate prices money sent abroad, the buy rate prices money coming
back.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Dict, Iterable, Optional

import requests

from engine.exceptions import RateSourceError, RateUnavailableError
from engine.parsing import to_calendar_date
from engine.settings import DEFAULT_CONFIG_PATH, load_config

# Configure logging
logger = logging.getLogger(__name__)


class RateSide(Enum):
    """Which side of the PTAX quote applies to a movement."""
    BUY = "buy"
    SELL = "sell"


@dataclass(frozen=True)
class PTAXRate:
    """
    One PTAX quote.

    Attributes:
        buy: ``cotacaoCompra``, used for money leaving the foreign account
        sell: ``cotacaoVenda``, used for money sent to the foreign account
        quoted_on: Date the quote was actually published for
    """
    buy: float
    sell: float
    quoted_on: date

    def for_side(self, side: RateSide) -> float:
        return self.buy if side is RateSide.BUY else self.sell


class RateCache:
    """
    Session-scoped mapping from ISO date to PTAX quote.

    Safe for concurrent inserts; writing the same date twice keeps the last
    value, which is fine since a published quote never changes.
    """

    def __init__(self, initial: Optional[Dict[str, PTAXRate]] = None):
        self._rates: Dict[str, PTAXRate] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, day: date) -> Optional[PTAXRate]:
        with self._lock:
            return self._rates.get(day.isoformat())

    def put(self, day: date, rate: PTAXRate) -> None:
        with self._lock:
            self._rates[day.isoformat()] = rate

    def clear(self) -> None:
        with self._lock:
            self._rates.clear()

    def snapshot(self) -> Dict[str, PTAXRate]:
        with self._lock:
            return dict(self._rates)

    def __contains__(self, day: date) -> bool:
        return self.get(day) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._rates)


class PTAXRateResolver:
    """
    Resolves PTAX rates for calendar dates.

    This class handles:
    - Querying the BCB PTAX service for one date
    - Stepping back one calendar day at a time when the date has no quote
    - Caching results under the requested date
    - Parallel resolution of distinct dates
    """

    def __init__(self, config_path: Optional[str] = DEFAULT_CONFIG_PATH,
                 cache: Optional[RateCache] = None,
                 session: Optional[requests.Session] = None):
        """
        Initialize the PTAX resolver.

        Args:
            config_path (str): Path to configuration file
            cache (RateCache): Cache shared with the caller's session (new one if omitted)
            session (requests.Session): HTTP session to reuse
        """
        self.config = load_config(config_path)

        ptax_config = self.config['ptax']
        api_config = ptax_config['api']
        self.base_url = api_config['base_url'].rstrip('/')
        self.timeout = api_config['timeout']
        self.max_retries = max(0, int(api_config['max_retries']))
        self.max_workers = max(1, int(api_config['max_workers']))
        self.user_agent = api_config['user_agent']
        self.lookback_days = max(1, int(ptax_config['lookback_days']))

        self.cache = cache if cache is not None else RateCache()

        self.session = session or requests.Session()
        self.session.headers.update({'User-Agent': self.user_agent})

        logger.info(f"PTAXRateResolver initialized (lookback: {self.lookback_days} days, "
                    f"timeout: {self.timeout}s, workers: {self.max_workers})")

    def _quote_url(self, day: date) -> str:
        api_date = day.strftime('%m-%d-%Y')
        return (f"{self.base_url}/CotacaoDolarDia(dataCotacao=@dataCotacao)"
                f"?@dataCotacao='{api_date}'&$format=json")

    def fetch_quote(self, day: date) -> Optional[PTAXRate]:
        """
        Query the PTAX service for exactly one date.

        Args:
            day (date): Date to query

        Returns:
            Optional[PTAXRate]: The quote, or None when nothing was published that day

        Raises:
            RateSourceError: On transport, HTTP or payload failures
        """
        try:
            response = self.session.get(self._quote_url(day), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise RateSourceError(day, str(e)) from e

        if response.status_code == 404:
            return None

        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            raise RateSourceError(day, f"HTTP {response.status_code}") from e

        try:
            payload = response.json()
        except ValueError as e:
            raise RateSourceError(day, "response is not valid JSON") from e

        values = payload.get('value') if isinstance(payload, dict) else None
        if not values:
            return None

        item = values[0]
        try:
            return PTAXRate(buy=float(item['cotacaoCompra']),
                            sell=float(item['cotacaoVenda']),
                            quoted_on=day)
        except (KeyError, TypeError, ValueError) as e:
            raise RateSourceError(day, f"unexpected quote payload: {item!r}") from e

    def _fetch_with_retry(self, day: date) -> Optional[PTAXRate]:
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return self.fetch_quote(day)
            except RateSourceError as e:
                if attempt >= attempts:
                    logger.error(f"PTAX lookup for {day.isoformat()} failed: {e.reason}")
                    raise
                logger.warning(f"PTAX lookup for {day.isoformat()} failed ({e.reason}), "
                               f"retrying ({attempt}/{self.max_retries})")
        return None

    def resolve_rate(self, requested) -> PTAXRate:
        """
        Return the PTAX quote for a date, falling back to earlier days.

        The requested date and up to ``lookback_days - 1`` previous calendar
        days are tried in order. A transport failure on any day aborts the
        whole resolution instead of moving on to the previous day.

        Args:
            requested (date | datetime | str): Date to resolve

        Returns:
            PTAXRate: Quote cached under the requested date

        Raises:
            RateUnavailableError: If no quote exists within the window
            RateSourceError: If the PTAX service fails
        """
        day = to_calendar_date(requested)

        cached = self.cache.get(day)
        if cached is not None:
            return cached

        search_date = day
        for _ in range(self.lookback_days):
            rate = self._fetch_with_retry(search_date)
            if rate is not None:
                self.cache.put(day, rate)
                if search_date != day:
                    logger.info(f"No PTAX on {day.isoformat()}, using {search_date.isoformat()}")
                return rate
            logger.debug(f"No PTAX published on {search_date.isoformat()}")
            search_date -= timedelta(days=1)

        logger.warning(f"No PTAX found for {day.isoformat()} or the "
                       f"{self.lookback_days - 1} previous days")
        raise RateUnavailableError(day, self.lookback_days)

    def resolve_rates(self, dates: Iterable) -> Dict[date, PTAXRate]:
        """
        Resolve many dates, querying uncached ones in parallel.

        Args:
            dates (Iterable): Dates to resolve (duplicates allowed)

        Returns:
            Dict[date, PTAXRate]: Quote per distinct requested date

        Raises:
            RateUnavailableError, RateSourceError: First failure encountered
        """
        unique_dates = sorted({to_calendar_date(d) for d in dates})
        pending = [d for d in unique_dates if d not in self.cache]

        if pending:
            logger.info(f"Resolving PTAX for {len(pending)} of {len(unique_dates)} dates")

        if len(pending) <= 1 or self.max_workers == 1:
            for day in pending:
                self.resolve_rate(day)
        else:
            workers = min(self.max_workers, len(pending))
            with ThreadPoolExecutor(max_workers=workers) as executor:
                future_to_date = {executor.submit(self.resolve_rate, day): day for day in pending}
                try:
                    for future in as_completed(future_to_date):
                        future.result()
                except Exception:
                    for future in future_to_date:
                        future.cancel()
                    raise

        return {day: self.resolve_rate(day) for day in unique_dates}

    def rate_for(self, requested, side: RateSide) -> float:
        """Return the buy or sell PTAX rate for a date."""
        return self.resolve_rate(requested).for_side(side)

    def clear_cache(self) -> None:
        """Forget all resolved rates, e.g. between independent runs."""
        self.cache.clear()
        logger.info("PTAX rate cache cleared")
