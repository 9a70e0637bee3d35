from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional

from bot_fleet.config import MAX_PRICE_HISTORY


@dataclass
class PriceContext:
    """Trend facts for one instrument on one tick."""

    current_price: int
    previous_price: Optional[int] = None
    is_price_up: bool = False
    is_price_down: bool = False
    last_minute_average: Optional[float] = None
    price_history: List[int] = field(default_factory=list)


class PriceTracker:
    """
    Rolling per-instrument price history.

    Not thread-safe: every session owns its own tracker.
    """

    def __init__(self, max_history: int = MAX_PRICE_HISTORY) -> None:
        if max_history <= 0:
            raise ValueError("max_history must be positive")
        self._max_history = int(max_history)
        self._last_prices: Dict[str, int] = {}
        self._history: Dict[str, Deque[int]] = {}

    @property
    def max_history(self) -> int:
        return self._max_history

    def observe(self, instrument_id: str, current_price: int) -> Optional[PriceContext]:
        """
        Record ``current_price`` and return the trend context.

        Returns None on the first observation of an instrument; the price is
        still recorded so the next call can derive a trend.
        """
        previous = self._last_prices.get(instrument_id)
        history = self._history.get(instrument_id)
        if history is None:
            history = deque(maxlen=self._max_history)
            self._history[instrument_id] = history
        history.append(current_price)
        self._last_prices[instrument_id] = current_price

        if previous is None:
            return None

        return PriceContext(
            current_price=current_price,
            previous_price=previous,
            is_price_up=current_price > previous,
            is_price_down=current_price < previous,
            price_history=list(history),
        )

    def history(self, instrument_id: str) -> List[int]:
        return list(self._history.get(instrument_id, ()))

    def reset(self) -> None:
        self._last_prices.clear()
        self._history.clear()
