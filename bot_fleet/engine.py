from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Collection, Dict, Optional

from bot_fleet.config import EngineConfig
from bot_fleet.gateway.base import MarketDataGateway
from bot_fleet.market_data import organize_market_data, scope_to_owners
from bot_fleet.models import Bot
from bot_fleet.orders import PairContext, TickBatch, process_pair
from bot_fleet.price_tracker import PriceContext, PriceTracker
from bot_fleet.strategy.evaluator import StrategyEvaluator
from bot_fleet.strategy.parser import parse_rule_set

log = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TickContext:
    """
    Session-owned state handed to ``run_tick``.

    ``owner_id`` restricts the tick to one owner's bots. Without it,
    ``active_owner_ids`` (when set) restricts the tick to bots whose owner has
    a running session; with neither, every bot in the snapshot is processed.
    """

    session_id: str
    price_tracker: PriceTracker
    config: EngineConfig = field(default_factory=EngineConfig)
    strategy_evaluator: Optional[StrategyEvaluator] = None
    owner_id: Optional[str] = None
    active_owner_ids: Optional[Callable[[], Collection[str]]] = None
    rng: random.Random = field(default_factory=random.Random)
    clock: Callable[[], datetime] = _utc_now


@dataclass(frozen=True)
class TickResult:
    bots: int = 0
    instruments: int = 0
    cancelled: int = 0
    inserted: int = 0
    truncated: int = 0
    pair_errors: int = 0
    duration_ms: float = 0.0


async def run_tick(ctx: TickContext, gateway: MarketDataGateway) -> TickResult:
    """
    Run one decision pass over every (instrument, bot) pair in scope.

    Gateway failures propagate to the caller; failures inside one pair are
    logged and skipped.
    """
    t0 = time.perf_counter()
    snapshot = await gateway.fetch_snapshot()

    if ctx.owner_id is not None:
        snapshot = scope_to_owners(snapshot, [ctx.owner_id])
    elif ctx.active_owner_ids is not None:
        snapshot = scope_to_owners(snapshot, ctx.active_owner_ids())

    if not snapshot.bots or not snapshot.instruments:
        log.debug(
            "Session %s: nothing to do (bots=%d instruments=%d)",
            ctx.session_id,
            len(snapshot.bots),
            len(snapshot.instruments),
        )
        return TickResult(bots=len(snapshot.bots), instruments=len(snapshot.instruments), duration_ms=_elapsed_ms(t0))

    data = organize_market_data(snapshot)
    now = ctx.clock()
    batch = TickBatch()
    evaluators: Dict[str, Optional[StrategyEvaluator]] = {}
    pair_errors = 0

    for instrument in snapshot.instruments:
        price = ctx.price_tracker.observe(instrument.id, instrument.current_price)
        if price is None:
            log.debug("Session %s: first price for %s=%s", ctx.session_id, instrument.symbol, instrument.current_price)
            continue

        aggregate = data.trade_aggregates.get(instrument.id)
        if aggregate is not None:
            price.last_minute_average = aggregate.average_price
        log.debug(
            "Session %s: %s %s -> %s %s",
            ctx.session_id,
            instrument.symbol,
            price.previous_price,
            price.current_price,
            _trend_arrow(price),
        )

        for bot in snapshot.bots:
            evaluator = _evaluator_for(ctx, bot, data.rule_sets_by_strategy, evaluators)
            if evaluator is None:
                continue
            pair = PairContext(
                bot=bot,
                instrument=instrument,
                price=price,
                open_orders=data.orders_for(bot.id, instrument.id),
                shares_owned=data.shares_owned(bot.id, instrument.id),
                evaluator=evaluator,
                rng=ctx.rng,
                now=now,
                tick_interval_ms=ctx.config.tick_interval_ms,
                aggregate=aggregate,
            )
            try:
                process_pair(pair, data.available_balance, batch)
            except Exception:
                pair_errors += 1
                log.exception("Session %s: failed processing bot=%s instrument=%s", ctx.session_id, bot.id, instrument.id)

    new_orders = batch.new_orders
    truncated = 0
    cap = ctx.config.max_orders_per_batch
    if len(new_orders) > cap:
        truncated = len(new_orders) - cap
        log.warning(
            "Session %s: %d new orders exceed batch cap %d; dropping %d",
            ctx.session_id,
            len(new_orders),
            cap,
            truncated,
        )
        new_orders = new_orders[:cap]

    cancel_ids = batch.cancel_list()
    if cancel_ids or new_orders:
        await gateway.apply_batch(cancel_ids, new_orders)
        log.info("Session %s: cancelled=%d inserted=%d", ctx.session_id, len(cancel_ids), len(new_orders))

    return TickResult(
        bots=len(snapshot.bots),
        instruments=len(snapshot.instruments),
        cancelled=len(cancel_ids),
        inserted=len(new_orders),
        truncated=truncated,
        pair_errors=pair_errors,
        duration_ms=_elapsed_ms(t0),
    )


def _evaluator_for(
    ctx: TickContext,
    bot: Bot,
    rule_sets: Dict[str, object],
    cache: Dict[str, Optional[StrategyEvaluator]],
) -> Optional[StrategyEvaluator]:
    if ctx.strategy_evaluator is not None:
        return ctx.strategy_evaluator
    if not bot.strategy_id:
        return None
    if bot.strategy_id not in cache:
        raw = rule_sets.get(bot.strategy_id)
        evaluator: Optional[StrategyEvaluator] = None
        if raw is not None:
            try:
                rules = parse_rule_set(raw)
            except ValueError as exc:
                log.warning("Session %s: strategy %s has unreadable rules: %s", ctx.session_id, bot.strategy_id, exc)
                rules = []
            except Exception:
                log.exception("Session %s: failed loading rules for strategy %s", ctx.session_id, bot.strategy_id)
                rules = []
            if rules:
                evaluator = StrategyEvaluator(rules)
        cache[bot.strategy_id] = evaluator
    return cache[bot.strategy_id]


def _trend_arrow(price: PriceContext) -> str:
    if price.is_price_up:
        return "↑"
    if price.is_price_down:
        return "↓"
    return "="


def _elapsed_ms(t0: float) -> float:
    return (time.perf_counter() - t0) * 1000.0
