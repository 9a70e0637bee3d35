from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

from bot_fleet.models import MarketSnapshot, NewOrder


class GatewayError(RuntimeError):
    """A market data fetch or batch apply failed; the whole tick is abandoned."""


class MarketDataGateway(ABC):
    """
    The engine's only shared collaborator.

    Implementations must make ``apply_batch`` all-or-nothing from the engine's
    point of view (cancels and inserts land together or not at all).
    """

    @abstractmethod
    async def fetch_snapshot(self) -> MarketSnapshot:
        """Bots, instruments, open orders, portfolios, rule sets and recent trade aggregates."""

    @abstractmethod
    async def apply_batch(self, cancel_order_ids: Sequence[str], new_orders: Sequence[NewOrder]) -> None:
        """Cancel ``cancel_order_ids`` and insert ``new_orders``."""
