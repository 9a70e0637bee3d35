"""
Order decision pipeline for one (bot, instrument) pair on one tick.

1. assemble facts (trend, indicators, portfolio, ephemeral balance, random draw)
2. cancellation pass: evaluate once per open order with order-specific facts
3. creation pass: only when no open order survives; size, price and
   affordability-check a BUY/SELL decision

Balances are debited/credited in the shared ``balances`` map so later pairs in
the same tick see the result.
"""

from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from bot_fleet.indicators import compute_facts
from bot_fleet.models import Bot, Decision, DecisionType, Instrument, NewOrder, Order, Side, TradeAggregate, normalize_strategy
from bot_fleet.price_tracker import PriceContext
from bot_fleet.strategy.evaluator import StrategyEvaluator

log = logging.getLogger(__name__)

RANDOM_PRICE_BUFFER_PCT = 0.02
MIN_RANDOM_QUANTITY = 1
MAX_RANDOM_QUANTITY = 5


@dataclass
class TickBatch:
    """Cancels and inserts accumulated over one tick."""

    cancel_ids: Dict[str, None] = field(default_factory=dict)  # ordered set
    new_orders: List[NewOrder] = field(default_factory=list)

    def mark_cancel(self, order_id: str) -> bool:
        """Returns False if the order was already marked this tick."""
        if order_id in self.cancel_ids:
            return False
        self.cancel_ids[order_id] = None
        return True

    def cancel_list(self) -> List[str]:
        return list(self.cancel_ids)


@dataclass
class PairContext:
    bot: Bot
    instrument: Instrument
    price: PriceContext
    open_orders: List[Order]
    shares_owned: int
    evaluator: StrategyEvaluator
    rng: random.Random
    now: datetime
    tick_interval_ms: int
    aggregate: Optional[TradeAggregate] = None


# =============================================================================
# FACTS
# =============================================================================

def build_facts(ctx: PairContext, available_balance: int) -> Dict[str, Any]:
    price = ctx.price
    current = price.current_price
    previous = price.previous_price

    if previous:
        volatility = abs(current - previous) / previous
        change_pct = (current - previous) / previous * 100.0
    else:
        volatility = 0.0
        change_pct = 0.0

    last_minute_average = price.last_minute_average
    if last_minute_average is None:
        last_minute_average = ctx.aggregate.average_price if ctx.aggregate else current

    facts: Dict[str, Any] = {
        "currentPrice": current,
        "isPriceUp": price.is_price_up,
        "isPriceDown": price.is_price_down,
        "lastMinuteAverage": last_minute_average,
        "hasPosition": ctx.shares_owned > 0,
        "openOrders": len(ctx.open_orders),
        "volatility": volatility,
        "priceChangePercent": change_pct,
        "availableBalance": available_balance,
        "sharesOwned": ctx.shares_owned,
        "botId": ctx.bot.id,
        "stockId": ctx.instrument.id,
        "timestamp": int(ctx.now.timestamp() * 1000),
        # Drawn once per pair; shared by every evaluation below.
        "randomChance": ctx.rng.random() * 100.0,
        "orderPrice": 0,
        "orderAge": 0,
        "orderDeviation": 0.0,
    }
    if previous is not None:
        facts["previousPrice"] = previous
    if ctx.aggregate is not None:
        facts["volume"] = ctx.aggregate.volume

    if ctx.evaluator.indicator_keys:
        facts.update(compute_facts(price.price_history, ctx.evaluator.indicator_keys))
    return facts


def order_facts(order: Order, current_price: int, now: datetime, tick_interval_ms: int) -> Dict[str, Any]:
    elapsed_ms = (now - order.created_at).total_seconds() * 1000.0
    age = max(0, math.floor(elapsed_ms / tick_interval_ms))
    deviation = abs(order.limit_price - current_price) / current_price * 100.0 if current_price else 0.0
    return {"orderPrice": order.limit_price, "orderAge": age, "orderDeviation": deviation}


# =============================================================================
# CANCELLATION
# =============================================================================

def _cancel(order: Order, balances: Dict[str, int], batch: TickBatch) -> None:
    if not batch.mark_cancel(order.id):
        return
    if order.side == Side.BUY:
        balances[order.bot_id] = balances.get(order.bot_id, 0) + order.notional


def determine_orders_to_cancel(
    ctx: PairContext,
    facts: Dict[str, Any],
    balances: Dict[str, int],
    batch: TickBatch,
) -> List[Order]:
    """Evaluate every open order; returns the orders that survive this tick."""
    survivors: List[Order] = []
    for order in ctx.open_orders:
        per_order = dict(facts)
        per_order.update(order_facts(order, ctx.price.current_price, ctx.now, ctx.tick_interval_ms))
        per_order["availableBalance"] = balances.get(ctx.bot.id, 0)
        decision = ctx.evaluator.evaluate(per_order)
        if decision is not None and decision.type == DecisionType.CANCEL:
            _cancel(order, balances, batch)
        else:
            survivors.append(order)
    return survivors


# =============================================================================
# CREATION
# =============================================================================

def resolve_quantity(
    decision: Decision,
    side: Side,
    *,
    available_balance: int,
    current_price: int,
    shares_owned: int,
    rng: random.Random,
) -> int:
    size_pct = decision.params.get("sizePct")
    if isinstance(size_pct, (int, float)) and not isinstance(size_pct, bool) and math.isfinite(size_pct):
        if side == Side.BUY:
            affordable = available_balance // max(1, current_price)
            return max(1, math.floor(affordable * size_pct / 100))
        return max(1, math.floor(shares_owned * size_pct / 100))
    return rng.randint(MIN_RANDOM_QUANTITY, MAX_RANDOM_QUANTITY)


def resolve_limit_price(
    decision: Decision,
    side: Side,
    *,
    strategy: Optional[str],
    current_price: int,
    rng: random.Random,
) -> int:
    price_type = decision.params.get("limitPriceType")
    value = decision.params.get("limitPriceValue")
    numeric = isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)

    if price_type == "market":
        return current_price
    if price_type == "absoluteCents" and numeric:
        return math.floor(value)
    if price_type == "offsetAbsolute" and numeric:
        return math.floor(current_price + value)
    if price_type == "offsetPct" and numeric:
        return math.floor(current_price * (1 + value / 100))

    if normalize_strategy(strategy) == "random":
        buffer = math.floor(current_price * RANDOM_PRICE_BUFFER_PCT)
        aggressive = rng.random() < 0.5
        if side == Side.BUY:
            return current_price + buffer if aggressive else current_price - buffer
        return current_price - buffer if aggressive else current_price + buffer
    return current_price


def create_order_if_valid(
    ctx: PairContext,
    facts: Dict[str, Any],
    balances: Dict[str, int],
    batch: TickBatch,
) -> Optional[NewOrder]:
    facts = dict(facts)
    facts["availableBalance"] = balances.get(ctx.bot.id, 0)
    decision = ctx.evaluator.evaluate(facts)
    if decision is None:
        return None

    if decision.type == DecisionType.CANCEL:
        for order in ctx.open_orders:
            _cancel(order, balances, batch)
        return None

    side = Side(decision.type.value)
    current_price = ctx.price.current_price
    available = balances.get(ctx.bot.id, 0)

    quantity = resolve_quantity(
        decision,
        side,
        available_balance=available,
        current_price=current_price,
        shares_owned=ctx.shares_owned,
        rng=ctx.rng,
    )
    limit_price = max(1, resolve_limit_price(decision, side, strategy=ctx.bot.strategy, current_price=current_price, rng=ctx.rng))

    if side == Side.BUY:
        cost = limit_price * quantity
        if available < cost:
            log.debug("Skip BUY bot=%s instrument=%s cost=%s available=%s", ctx.bot.id, ctx.instrument.id, cost, available)
            return None
        balances[ctx.bot.id] = available - cost
    elif ctx.shares_owned < quantity:
        log.debug("Skip SELL bot=%s instrument=%s qty=%s owned=%s", ctx.bot.id, ctx.instrument.id, quantity, ctx.shares_owned)
        return None

    order = NewOrder(
        instrument_id=ctx.instrument.id,
        bot_id=ctx.bot.id,
        side=side,
        limit_price=limit_price,
        quantity=quantity,
    )
    batch.new_orders.append(order)
    return order


def process_pair(ctx: PairContext, balances: Dict[str, int], batch: TickBatch) -> Optional[NewOrder]:
    """Run cancellation then (if nothing rests) creation for one bot on one instrument."""
    facts = build_facts(ctx, balances.get(ctx.bot.id, 0))
    if ctx.open_orders:
        survivors = determine_orders_to_cancel(ctx, facts, balances, batch)
        if survivors:
            return None
    return create_order_if_valid(ctx, facts, balances, batch)
