"""
Technical indicators over a close-price history.

Every indicator is addressable by a fact key:

- ``ma:period``                          simple moving average
- ``rsi:period``                         RSI over the last ``period`` deltas
- ``bollingerUpper:period:multiplier``   SMA + k * population std
- ``bollingerLower:period:multiplier``   SMA - k * population std
- ``atr:period``                         mean absolute close-to-close delta
- ``supertrend:period:multiplier``       price - k * atr

Bare base names (``ma``, ``rsi``, ...) resolve to DEFAULTS. When history is too
short an indicator falls back to a neutral value instead of raising: RSI -> 50,
ATR -> 0, everything else -> the current price.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Sequence

import numpy as np
from numpy.typing import NDArray

DEFAULTS = {
    "ma": 10,
    "rsi": 14,
    "bollinger_period": 20,
    "bollinger_multiplier": 2.0,
    "atr": 14,
    "supertrend_period": 10,
    "supertrend_multiplier": 3.0,
}

INDICATOR_BASES = ("ma", "rsi", "bollingerUpper", "bollingerLower", "atr", "supertrend")

_PERIOD_RE = re.compile(r"^(ma|rsi|atr):(\d+)$")
_MULTIPLIER_RE = re.compile(r"^(bollingerUpper|bollingerLower|supertrend):(\d+):(\d+(?:\.\d+)?)$")


@dataclass(frozen=True)
class IndicatorSpec:
    name: str
    period: int
    multiplier: float = 0.0


def parse_indicator_key(key: str) -> Optional[IndicatorSpec]:
    """Parse ``name:period[:multiplier]``; returns None for anything else."""
    m = _PERIOD_RE.match(key)
    if m:
        return IndicatorSpec(name=m.group(1), period=int(m.group(2)))
    m = _MULTIPLIER_RE.match(key)
    if m:
        return IndicatorSpec(name=m.group(1), period=int(m.group(2)), multiplier=float(m.group(3)))
    return None


def is_indicator_key(key: str) -> bool:
    return parse_indicator_key(key) is not None


def is_indicator_fact(name: str) -> bool:
    """True for a bare indicator base name or a parameterized indicator key."""
    return name in INDICATOR_BASES or is_indicator_key(name)


def default_key(base: str) -> str:
    if base == "ma":
        return f"ma:{DEFAULTS['ma']}"
    if base == "rsi":
        return f"rsi:{DEFAULTS['rsi']}"
    if base == "atr":
        return f"atr:{DEFAULTS['atr']}"
    if base in ("bollingerUpper", "bollingerLower"):
        return f"{base}:{DEFAULTS['bollinger_period']}:{_fmt(DEFAULTS['bollinger_multiplier'])}"
    if base == "supertrend":
        return f"supertrend:{DEFAULTS['supertrend_period']}:{_fmt(DEFAULTS['supertrend_multiplier'])}"
    raise KeyError(base)


def _fmt(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


# =============================================================================
# WINDOW CALCULATIONS
# =============================================================================

def sma(prices: NDArray[np.float64], period: int) -> Optional[float]:
    if period <= 0 or len(prices) < period:
        return None
    return float(np.mean(prices[-period:]))


def std_dev(prices: NDArray[np.float64], period: int) -> Optional[float]:
    """Population standard deviation of the last ``period`` prices."""
    if period <= 0 or len(prices) < period:
        return None
    return float(np.std(prices[-period:], ddof=0))


def rsi(prices: NDArray[np.float64], period: int) -> Optional[float]:
    if period <= 0 or len(prices) < period + 1:
        return None
    deltas = np.diff(prices[-(period + 1):])
    avg_gain = float(deltas[deltas >= 0].sum()) / period
    avg_loss = float(-deltas[deltas < 0].sum()) / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def atr(prices: NDArray[np.float64], period: int) -> Optional[float]:
    """Close-only true range proxy: mean absolute delta over the window."""
    if period <= 0 or len(prices) < period + 1:
        return None
    return float(np.mean(np.abs(np.diff(prices[-(period + 1):]))))


def bollinger_upper(prices: NDArray[np.float64], period: int, multiplier: float) -> Optional[float]:
    avg = sma(prices, period)
    dev = std_dev(prices, period)
    if avg is None or dev is None:
        return None
    return avg + multiplier * dev


def bollinger_lower(prices: NDArray[np.float64], period: int, multiplier: float) -> Optional[float]:
    avg = sma(prices, period)
    dev = std_dev(prices, period)
    if avg is None or dev is None:
        return None
    return avg - multiplier * dev


def supertrend(prices: NDArray[np.float64], period: int, multiplier: float) -> Optional[float]:
    if len(prices) == 0:
        return None
    atr_value = atr(prices, period)
    if atr_value is None:
        return None
    return float(prices[-1]) - multiplier * atr_value


# =============================================================================
# FACT RESOLUTION
# =============================================================================

def compute_indicator(ind: IndicatorSpec, prices: NDArray[np.float64]) -> Optional[float]:
    if ind.name == "ma":
        return sma(prices, ind.period)
    if ind.name == "rsi":
        return rsi(prices, ind.period)
    if ind.name == "atr":
        return atr(prices, ind.period)
    if ind.name == "bollingerUpper":
        return bollinger_upper(prices, ind.period, ind.multiplier)
    if ind.name == "bollingerLower":
        return bollinger_lower(prices, ind.period, ind.multiplier)
    if ind.name == "supertrend":
        return supertrend(prices, ind.period, ind.multiplier)
    return None


def fallback_value(ind: IndicatorSpec, current_price: float) -> float:
    if ind.name == "rsi":
        return 50.0
    if ind.name == "atr":
        return 0.0
    return float(current_price)


def _resolve(ind: IndicatorSpec, prices: NDArray[np.float64], current_price: float) -> float:
    with np.errstate(all="ignore"):
        value = compute_indicator(ind, prices)
    if value is None or not math.isfinite(value):
        return fallback_value(ind, current_price)
    return value


def compute_facts(history: Sequence[float], requested_keys: Iterable[str]) -> Dict[str, float]:
    """
    Resolve every requested indicator key against ``history`` (oldest first).

    Unknown keys are skipped. Bare base names are computed with the default
    parameters and stored under the bare name.
    """
    prices = np.asarray(history, dtype=np.float64)
    current_price = float(prices[-1]) if len(prices) else 0.0

    facts: Dict[str, float] = {}
    for key in dict.fromkeys(requested_keys):
        if key in INDICATOR_BASES:
            ind = parse_indicator_key(default_key(key))
        else:
            ind = parse_indicator_key(key)
        if ind is None:
            continue
        facts[key] = _resolve(ind, prices, current_price)
    return facts
