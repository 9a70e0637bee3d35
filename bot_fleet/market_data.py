from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Collection

from bot_fleet.models import MarketSnapshot, Order, OrderStatus, TradeAggregate


@dataclass
class OrganizedMarketData:
    """
    Per-tick lookups built from one snapshot.

    ``available_balance`` is the ephemeral balance map: it starts at each
    bot's stored balance and is debited/credited as the tick decides orders.
    """

    orders_by_bot: dict[str, list[Order]] = field(default_factory=dict)
    shares_by_position: dict[tuple[str, str], int] = field(default_factory=dict)
    available_balance: dict[str, int] = field(default_factory=dict)
    rule_sets_by_strategy: dict[str, Any] = field(default_factory=dict)
    trade_aggregates: dict[str, TradeAggregate] = field(default_factory=dict)

    def orders_for(self, bot_id: str, instrument_id: str) -> list[Order]:
        return [o for o in self.orders_by_bot.get(bot_id, ()) if o.instrument_id == instrument_id]

    def shares_owned(self, bot_id: str, instrument_id: str) -> int:
        return int(self.shares_by_position.get((bot_id, instrument_id), 0))


def organize_market_data(snapshot: MarketSnapshot) -> OrganizedMarketData:
    out = OrganizedMarketData()

    for order in snapshot.open_orders:
        if order.status != OrderStatus.OPEN:
            continue
        out.orders_by_bot.setdefault(order.bot_id, []).append(order)

    for pos in snapshot.portfolios:
        out.shares_by_position[(pos.bot_id, pos.instrument_id)] = int(pos.shares_owned)

    for bot in snapshot.bots:
        out.available_balance[bot.id] = int(bot.balance_cents)

    out.rule_sets_by_strategy = dict(snapshot.rule_sets_by_strategy)

    for agg in snapshot.trade_aggregates:
        out.trade_aggregates[agg.instrument_id] = agg

    return out


def scope_to_owners(snapshot: MarketSnapshot, owner_ids: Collection[str]) -> MarketSnapshot:
    """Keep only bots owned by ``owner_ids`` together with their orders, positions and strategies."""
    allowed = set(owner_ids)
    bots = [b for b in snapshot.bots if b.owner_id is not None and b.owner_id in allowed]
    bot_ids = {b.id for b in bots}
    strategy_ids = {b.strategy_id for b in bots if b.strategy_id}
    return replace(
        snapshot,
        bots=bots,
        open_orders=[o for o in snapshot.open_orders if o.bot_id in bot_ids],
        portfolios=[p for p in snapshot.portfolios if p.bot_id in bot_ids],
        rule_sets_by_strategy={k: v for k, v in snapshot.rule_sets_by_strategy.items() if k in strategy_ids},
    )
