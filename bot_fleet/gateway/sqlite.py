from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

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

TRADE_AGGREGATE_WINDOW_S = 60.0


class SqliteGateway(MarketDataGateway):
    """
    SQLite-backed store of traders, stocks, orders and trades.

    The connection is shared with worker threads (``asyncio.to_thread``) and
    guarded by a lock; every write commits before returning.
    """

    def __init__(self, db_path: str, *, clock: Callable[[], float] = time.time) -> None:
        self._db_path = db_path
        self._clock = clock
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.execute("PRAGMA foreign_keys=ON;")
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._ensure_schema()

    @property
    def db_path(self) -> str:
        return self._db_path

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # --- gateway ----------------------------------------------------------------

    async def fetch_snapshot(self) -> MarketSnapshot:
        try:
            return await asyncio.to_thread(self._fetch_snapshot)
        except sqlite3.Error as exc:
            raise GatewayError(f"snapshot query failed: {exc}") from exc

    async def apply_batch(self, cancel_order_ids: Sequence[str], new_orders: Sequence[NewOrder]) -> None:
        try:
            await asyncio.to_thread(self._apply_batch, list(cancel_order_ids), list(new_orders))
        except sqlite3.Error as exc:
            raise GatewayError(f"batch write failed: {exc}") from exc

    def _fetch_snapshot(self) -> MarketSnapshot:
        with self._lock:
            conn = self._conn
            bots = [
                Bot(
                    id=str(r[0]),
                    balance_cents=int(r[1]),
                    owner_id=r[2],
                    strategy_id=r[3],
                    strategy=r[4],
                    is_bot=True,
                )
                for r in conn.execute(
                    "SELECT id, balance_cents, owner_id, strategy_id, strategy FROM traders WHERE is_bot=1 ORDER BY rowid"
                )
            ]
            instruments = [
                Instrument(id=str(r[0]), symbol=str(r[1]), current_price=int(r[2]))
                for r in conn.execute("SELECT id, symbol, current_price FROM stocks ORDER BY rowid")
            ]
            open_orders = [
                _row_to_order(r)
                for r in conn.execute(
                    "SELECT o.id, o.stock_id, o.trader_id, o.side, o.limit_price, o.quantity, o.created_epoch_s, o.status "
                    "FROM orders o JOIN traders t ON t.id = o.trader_id "
                    "WHERE o.status=? AND t.is_bot=1 ORDER BY o.created_epoch_s, o.rowid",
                    (OrderStatus.OPEN.value,),
                )
            ]
            portfolios = [
                PortfolioPosition(bot_id=str(r[0]), instrument_id=str(r[1]), shares_owned=int(r[2]))
                for r in conn.execute(
                    "SELECT p.trader_id, p.stock_id, p.shares_owned FROM portfolios p "
                    "JOIN traders t ON t.id = p.trader_id WHERE t.is_bot=1"
                )
            ]
            rule_sets = {
                str(r[0]): r[1]
                for r in conn.execute(
                    "SELECT s.id, s.rules_json FROM strategies s "
                    "WHERE s.id IN (SELECT strategy_id FROM traders WHERE is_bot=1 AND strategy_id IS NOT NULL)"
                )
            }
            since = float(self._clock()) - TRADE_AGGREGATE_WINDOW_S
            aggregates = [
                TradeAggregate(instrument_id=str(r[0]), average_price=float(r[1]), volume=int(r[2]))
                for r in conn.execute(
                    "SELECT stock_id, AVG(price), SUM(quantity) FROM trades WHERE executed_epoch_s >= ? GROUP BY stock_id",
                    (since,),
                )
            ]
        return MarketSnapshot(
            bots=bots,
            instruments=instruments,
            open_orders=open_orders,
            portfolios=portfolios,
            rule_sets_by_strategy=rule_sets,
            trade_aggregates=aggregates,
        )

    def _apply_batch(self, cancel_order_ids: list[str], new_orders: list[NewOrder]) -> None:
        now = float(self._clock())
        with self._lock:
            try:
                self._conn.execute("BEGIN")
                self._conn.executemany(
                    "UPDATE orders SET status=? WHERE id=? AND status=?",
                    [(OrderStatus.CANCELLED.value, str(oid), OrderStatus.OPEN.value) for oid in cancel_order_ids],
                )
                self._conn.executemany(
                    "INSERT INTO orders(id, stock_id, trader_id, side, limit_price, quantity, status, created_epoch_s) "
                    "VALUES(?, ?, ?, ?, ?, ?, ?, ?)",
                    [
                        (
                            uuid.uuid4().hex,
                            o.instrument_id,
                            o.bot_id,
                            Side(o.side).value,
                            int(o.limit_price),
                            int(o.quantity),
                            OrderStatus(o.status).value,
                            now,
                        )
                        for o in new_orders
                    ],
                )
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise

    # --- seeding ----------------------------------------------------------------

    def ensure_instrument(self, instrument_id: str, symbol: str, current_price: int) -> Instrument:
        self._write(
            "INSERT INTO stocks(id, symbol, current_price) VALUES(?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET symbol=excluded.symbol, current_price=excluded.current_price",
            (str(instrument_id), str(symbol), int(current_price)),
        )
        return Instrument(id=str(instrument_id), symbol=str(symbol), current_price=int(current_price))

    def set_price(self, instrument_id: str, current_price: int) -> None:
        self._write("UPDATE stocks SET current_price=? WHERE id=?", (int(current_price), str(instrument_id)))

    def ensure_strategy(self, strategy_id: str, name: str, rules: Any) -> None:
        rules_json = rules if isinstance(rules, str) else json.dumps(rules, sort_keys=True)
        self._write(
            "INSERT INTO strategies(id, name, rules_json) VALUES(?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET name=excluded.name, rules_json=excluded.rules_json",
            (str(strategy_id), str(name), rules_json),
        )

    def ensure_bot(
        self,
        bot_id: str,
        *,
        balance_cents: int,
        owner_id: str | None = None,
        strategy_id: str | None = None,
        strategy: str | None = None,
        is_bot: bool = True,
    ) -> Bot:
        self._write(
            "INSERT INTO traders(id, balance_cents, owner_id, strategy_id, strategy, is_bot) VALUES(?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET balance_cents=excluded.balance_cents, owner_id=excluded.owner_id, "
            "strategy_id=excluded.strategy_id, strategy=excluded.strategy, is_bot=excluded.is_bot",
            (str(bot_id), int(balance_cents), owner_id, strategy_id, strategy, 1 if is_bot else 0),
        )
        return Bot(
            id=str(bot_id),
            balance_cents=int(balance_cents),
            strategy_id=strategy_id,
            owner_id=owner_id,
            strategy=strategy,
            is_bot=is_bot,
        )

    def set_portfolio(self, bot_id: str, instrument_id: str, shares_owned: int) -> None:
        self._write(
            "INSERT INTO portfolios(trader_id, stock_id, shares_owned) VALUES(?, ?, ?) "
            "ON CONFLICT(trader_id, stock_id) DO UPDATE SET shares_owned=excluded.shares_owned",
            (str(bot_id), str(instrument_id), int(shares_owned)),
        )

    def record_trade(self, instrument_id: str, price: int, quantity: int, *, executed_epoch_s: float | None = None) -> None:
        ts = float(self._clock()) if executed_epoch_s is None else float(executed_epoch_s)
        self._write(
            "INSERT INTO trades(stock_id, price, quantity, executed_epoch_s) VALUES(?, ?, ?, ?)",
            (str(instrument_id), int(price), int(quantity), ts),
        )

    def list_orders(self, *, status: OrderStatus | None = None) -> list[Order]:
        sql = "SELECT id, stock_id, trader_id, side, limit_price, quantity, created_epoch_s, status FROM orders"
        params: tuple[Any, ...] = ()
        if status is not None:
            sql += " WHERE status=?"
            params = (OrderStatus(status).value,)
        sql += " ORDER BY created_epoch_s, rowid"
        with self._lock:
            return [_row_to_order(r) for r in self._conn.execute(sql, params)]

    def _write(self, sql: str, params: tuple[Any, ...]) -> None:
        with self._lock:
            self._conn.execute(sql, params)
            self._conn.commit()

    def _ensure_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS schema_version(
                version INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS stocks(
                id TEXT PRIMARY KEY,
                symbol TEXT NOT NULL,
                current_price INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS strategies(
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                rules_json TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS traders(
                id TEXT PRIMARY KEY,
                balance_cents INTEGER NOT NULL,
                owner_id TEXT,
                strategy_id TEXT,
                strategy TEXT,
                is_bot INTEGER NOT NULL DEFAULT 1,
                FOREIGN KEY(strategy_id) REFERENCES strategies(id)
            );

            CREATE TABLE IF NOT EXISTS portfolios(
                trader_id TEXT NOT NULL,
                stock_id TEXT NOT NULL,
                shares_owned INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY(trader_id, stock_id),
                FOREIGN KEY(trader_id) REFERENCES traders(id),
                FOREIGN KEY(stock_id) REFERENCES stocks(id)
            );

            CREATE TABLE IF NOT EXISTS orders(
                id TEXT PRIMARY KEY,
                stock_id TEXT NOT NULL,
                trader_id TEXT NOT NULL,
                side TEXT NOT NULL,
                limit_price INTEGER NOT NULL,
                quantity INTEGER NOT NULL,
                status TEXT NOT NULL,
                created_epoch_s REAL NOT NULL,
                FOREIGN KEY(stock_id) REFERENCES stocks(id),
                FOREIGN KEY(trader_id) REFERENCES traders(id)
            );

            CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);
            CREATE INDEX IF NOT EXISTS idx_orders_trader ON orders(trader_id);

            CREATE TABLE IF NOT EXISTS trades(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                stock_id TEXT NOT NULL,
                price INTEGER NOT NULL,
                quantity INTEGER NOT NULL,
                executed_epoch_s REAL NOT NULL,
                FOREIGN KEY(stock_id) REFERENCES stocks(id)
            );

            CREATE INDEX IF NOT EXISTS idx_trades_stock_time ON trades(stock_id, executed_epoch_s);
            """
        )
        cur = self._conn.execute("SELECT COUNT(*) FROM schema_version")
        if int(cur.fetchone()[0]) == 0:
            self._conn.execute("INSERT INTO schema_version(version) VALUES(1)")
        self._conn.commit()


def _row_to_order(row: Sequence[Any]) -> Order:
    return Order(
        id=str(row[0]),
        instrument_id=str(row[1]),
        bot_id=str(row[2]),
        side=Side(str(row[3])),
        limit_price=int(row[4]),
        quantity=int(row[5]),
        created_at=datetime.fromtimestamp(float(row[6]), tz=timezone.utc),
        status=OrderStatus(str(row[7])),
    )
