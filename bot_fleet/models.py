from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderStatus(str, Enum):
    OPEN = "OPEN"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"


class DecisionType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    CANCEL = "CANCEL"


BOT_STRATEGIES = frozenset({"momentum", "swing", "random"})


def normalize_strategy(name: str | None) -> str:
    """Map a bot's preset strategy name onto a known preset (default: momentum)."""
    value = (name or "").strip().lower()
    return value if value in BOT_STRATEGIES else "momentum"


@dataclass(frozen=True)
class Bot:
    """
    A trader account driven by the engine.

    balance_cents is the store's authoritative balance; the engine only keeps an
    ephemeral per-tick copy of it.
    """

    id: str
    balance_cents: int
    strategy_id: str | None = None
    owner_id: str | None = None
    strategy: str | None = None  # preset name: momentum | swing | random
    is_bot: bool = True


@dataclass(frozen=True)
class Instrument:
    id: str
    symbol: str
    current_price: int  # cents


@dataclass(frozen=True)
class Order:
    id: str
    instrument_id: str
    bot_id: str
    side: Side
    limit_price: int
    quantity: int
    created_at: datetime
    status: OrderStatus = OrderStatus.OPEN

    @property
    def notional(self) -> int:
        return int(self.limit_price) * int(self.quantity)


@dataclass(frozen=True)
class PortfolioPosition:
    bot_id: str
    instrument_id: str
    shares_owned: int


@dataclass(frozen=True)
class TradeAggregate:
    """Recent-trade aggregate for one instrument (last minute by default)."""

    instrument_id: str
    average_price: float
    volume: int = 0


@dataclass(frozen=True)
class NewOrder:
    instrument_id: str
    bot_id: str
    side: Side
    limit_price: int
    quantity: int
    status: OrderStatus = OrderStatus.OPEN


@dataclass(frozen=True)
class Decision:
    type: DecisionType
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class MarketSnapshot:
    """Everything one tick reads from the gateway."""

    bots: list[Bot] = field(default_factory=list)
    instruments: list[Instrument] = field(default_factory=list)
    open_orders: list[Order] = field(default_factory=list)
    portfolios: list[PortfolioPosition] = field(default_factory=list)
    rule_sets_by_strategy: dict[str, Any] = field(default_factory=dict)
    trade_aggregates: list[TradeAggregate] = field(default_factory=list)
