"""
Market data modules for the Cambial/IR calculators.

This package contains the PTAX exchange-rate resolver backed by
Banco Central do Brasil (BCB).
"""

from market_data.ptax_rates import PTAXRate, PTAXRateResolver, RateCache, RateSide

__version__ = "1.0.0"
__all__ = ["PTAXRate", "PTAXRateResolver", "RateCache", "RateSide"]
