from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from bot_fleet.gateway.base import GatewayError, MarketDataGateway
from bot_fleet.models import (
    Bot,
    Instrument,
    MarketSnapshot,
    NewOrder,
    Order,
    OrderStatus,
    PortfolioPosition,
    Side,
    TradeAggregate,
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AppliedBatch:
    cancel_order_ids: List[str]
    new_orders: List[NewOrder]


@dataclass
class SimGateway(MarketDataGateway):
    """
    In-memory gateway for tests and local runs.

    No matching happens here: inserted orders simply rest as OPEN until
    cancelled or until a test fills them with ``fill_order``.
    """

    clock: Callable[[], datetime] = _utc_now
    bots: Dict[str, Bot] = field(default_factory=dict)
    instruments: Dict[str, Instrument] = field(default_factory=dict)
    orders: List[Order] = field(default_factory=list)
    positions: Dict[Tuple[str, str], int] = field(default_factory=dict)
    rule_sets: Dict[str, Any] = field(default_factory=dict)
    aggregates: Dict[str, TradeAggregate] = field(default_factory=dict)
    batches: List[AppliedBatch] = field(default_factory=list)
    fail_fetch: Optional[Exception] = None
    fail_apply: Optional[Exception] = None
    fetch_count: int = 0
    _next_id: int = 0

    # --- seeding -----------------------------------------------------------------

    def add_bot(self, bot: Bot) -> Bot:
        self.bots[bot.id] = bot
        return bot

    def add_instrument(self, instrument: Instrument) -> Instrument:
        self.instruments[instrument.id] = instrument
        return instrument

    def set_price(self, instrument_id: str, price: int) -> None:
        self.instruments[instrument_id] = replace(self.instruments[instrument_id], current_price=int(price))

    def set_balance(self, bot_id: str, balance_cents: int) -> None:
        self.bots[bot_id] = replace(self.bots[bot_id], balance_cents=int(balance_cents))

    def set_position(self, bot_id: str, instrument_id: str, shares: int) -> None:
        self.positions[(bot_id, instrument_id)] = int(shares)

    def set_rule_set(self, strategy_id: str, rules: Any) -> None:
        self.rule_sets[strategy_id] = rules

    def set_trade_aggregate(self, aggregate: TradeAggregate) -> None:
        self.aggregates[aggregate.instrument_id] = aggregate

    def add_order(
        self,
        *,
        bot_id: str,
        instrument_id: str,
        side: Side,
        limit_price: int,
        quantity: int,
        created_at: Optional[datetime] = None,
        order_id: Optional[str] = None,
    ) -> Order:
        order = Order(
            id=order_id or self._new_id(),
            instrument_id=instrument_id,
            bot_id=bot_id,
            side=side,
            limit_price=int(limit_price),
            quantity=int(quantity),
            created_at=created_at or self.clock(),
        )
        self.orders.append(order)
        return order

    def fill_order(self, order_id: str) -> None:
        self._set_status(order_id, OrderStatus.FILLED)

    # --- gateway ----------------------------------------------------------------

    @property
    def open_orders(self) -> List[Order]:
        return [o for o in self.orders if o.status == OrderStatus.OPEN]

    async def fetch_snapshot(self) -> MarketSnapshot:
        self.fetch_count += 1
        if self.fail_fetch is not None:
            raise GatewayError(f"fetch failed: {self.fail_fetch}") from self.fail_fetch
        bot_ids = set(self.bots)
        return MarketSnapshot(
            bots=[b for b in self.bots.values() if b.is_bot],
            instruments=list(self.instruments.values()),
            open_orders=[o for o in self.open_orders if o.bot_id in bot_ids],
            portfolios=[
                PortfolioPosition(bot_id=b, instrument_id=i, shares_owned=s)
                for (b, i), s in self.positions.items()
                if b in bot_ids
            ],
            rule_sets_by_strategy=dict(self.rule_sets),
            trade_aggregates=list(self.aggregates.values()),
        )

    async def apply_batch(self, cancel_order_ids: Sequence[str], new_orders: Sequence[NewOrder]) -> None:
        if self.fail_apply is not None:
            raise GatewayError(f"apply failed: {self.fail_apply}") from self.fail_apply
        for oid in cancel_order_ids:
            self._set_status(oid, OrderStatus.CANCELLED)
        now = self.clock()
        for new in new_orders:
            self.orders.append(
                Order(
                    id=self._new_id(),
                    instrument_id=new.instrument_id,
                    bot_id=new.bot_id,
                    side=new.side,
                    limit_price=new.limit_price,
                    quantity=new.quantity,
                    created_at=now,
                    status=new.status,
                )
            )
        self.batches.append(AppliedBatch(list(cancel_order_ids), list(new_orders)))

    def _set_status(self, order_id: str, status: OrderStatus) -> None:
        for i, order in enumerate(self.orders):
            if order.id == order_id and order.status == OrderStatus.OPEN:
                self.orders[i] = replace(order, status=status)
                return

    def _new_id(self) -> str:
        self._next_id += 1
        return f"sim-{self._next_id}"
