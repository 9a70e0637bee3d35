from __future__ import annotations

import argparse
import asyncio
import logging
import os
import random
import signal
import sys
from typing import Any

from bot_fleet.config import EngineConfig
from bot_fleet.gateway.sqlite import SqliteGateway
from bot_fleet.logging_setup import configure_for_engine
from bot_fleet.session.bot_session import SessionStatus, SessionSummary
from bot_fleet.session.manager import SessionManager
from bot_fleet.strategy.parser import RuleSetParseError

log = logging.getLogger(__name__)

DEMO_INSTRUMENT_ID = "demo-stock"
DEMO_STRATEGY_ID = "demo-momentum"
DEMO_BOT_ID = "demo-bot"
DEMO_OWNER_ID = "demo-owner"

DEMO_RULES: list[dict[str, Any]] = [
    {
        "priority": 1,
        "conditions": {"all": [{"fact": "orderAge", "operator": "greaterThan", "value": 5}]},
        "event": {"type": "CANCEL"},
    },
    {
        "priority": 2,
        "conditions": {
            "all": [
                {"fact": "isPriceUp", "operator": "equal", "value": True},
                {"fact": "rsi", "operator": "lessThan", "value": 70},
            ]
        },
        "event": {"type": "BUY", "params": {"sizePct": 10, "limitPriceType": "market"}},
    },
    {
        "priority": 3,
        "conditions": {
            "all": [
                {"fact": "isPriceDown", "operator": "equal", "value": True},
                {"fact": "hasPosition", "operator": "equal", "value": True},
            ]
        },
        "event": {"type": "SELL", "params": {"sizePct": 50, "limitPriceType": "offsetPct", "limitPriceValue": -1}},
    },
]


def _load_dotenv_if_present() -> None:
    if not os.path.exists(".env"):
        return
    with open(".env", "r", encoding="utf-8") as f:
        for raw_line in f:
            line = raw_line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            os.environ.setdefault(k.strip(), v.strip().strip('"').strip("'"))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="bot_fleet.autorun", description="Run a bot fleet session against a SQLite market store")
    p.add_argument("--db-path", default=None, help="Override BOT_DB_PATH (default: bot_fleet.sqlite3)")
    p.add_argument("--seed-demo", action="store_true", help="Seed a demo stock, strategy and bot and random-walk its price")
    p.add_argument(
        "--owner-id",
        default=None,
        help="Only drive bots owned by this user (with --seed-demo defaults to the demo owner)",
    )
    p.add_argument("--name", default=None, help="Session name")
    p.add_argument("--rules", default=None, help="Path to a JSON rule set bound to the session")
    p.add_argument("--max-ticks", type=int, default=None, help="Stop after this many ticks (default: run until Ctrl+C)")
    p.add_argument("--log-level", default=None, help="Override BOT_LOG_LEVEL")
    p.add_argument("--log-file", default=None, help="Override BOT_LOG_FILE (also log to this file)")
    return p


def seed_demo(gateway: SqliteGateway, *, owner_id: str = DEMO_OWNER_ID) -> None:
    gateway.ensure_instrument(DEMO_INSTRUMENT_ID, "DEMO", 10_000)
    gateway.ensure_strategy(DEMO_STRATEGY_ID, "Demo momentum", DEMO_RULES)
    gateway.ensure_bot(
        DEMO_BOT_ID,
        balance_cents=1_000_000,
        owner_id=owner_id,
        strategy_id=DEMO_STRATEGY_ID,
        strategy="momentum",
    )
    gateway.set_portfolio(DEMO_BOT_ID, DEMO_INSTRUMENT_ID, 100)


async def run_session(
    gateway: SqliteGateway,
    cfg: EngineConfig,
    *,
    name: str | None = None,
    owner_id: str | None = None,
    rules: Any = None,
    max_ticks: int | None = None,
    demo: bool = False,
) -> SessionSummary:
    manager = SessionManager(gateway, cfg)
    created = manager.create_session(name=name, owner_id=owner_id, rules=rules)

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, stop_requested.set)
    except (NotImplementedError, RuntimeError):
        pass

    rng = random.Random(cfg.random_seed)
    price = 10_000
    seen_ticks = 0
    poll_s = min(0.25, cfg.tick_interval_ms / 1000.0)
    try:
        while not stop_requested.is_set():
            current = manager.get_session(created.id)
            if current is None or current.status == SessionStatus.STOPPED:
                break
            if max_ticks is not None and current.ticks >= max_ticks:
                break
            if demo and current.ticks > seen_ticks:
                seen_ticks = current.ticks
                price = max(1, price + rng.randint(-150, 150))
                gateway.set_price(DEMO_INSTRUMENT_ID, price)
            try:
                await asyncio.wait_for(stop_requested.wait(), timeout=poll_s)
            except asyncio.TimeoutError:
                pass
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
        await manager.shutdown(timeout=max(5.0, cfg.tick_interval_ms / 1000.0 * 2))

    final = manager.get_session(created.id)
    return final if final is not None else created


def print_summary(summary: SessionSummary) -> None:
    from rich.console import Console
    from rich.table import Table

    table = Table(title="Bot Session", show_lines=True)
    table.add_column("Field")
    table.add_column("Value")
    for key, value in summary.to_dict().items():
        table.add_row(key, "" if value is None else str(value))
    Console().print(table)


def main(argv: list[str] | None = None) -> int:
    _load_dotenv_if_present()
    args = build_parser().parse_args(argv)
    cfg = EngineConfig.from_env()
    configure_for_engine(cfg, level=args.log_level, log_file=args.log_file)

    rules: Any = None
    if args.rules:
        with open(args.rules, "r", encoding="utf-8") as f:
            rules = f.read()

    owner_id = args.owner_id or (DEMO_OWNER_ID if args.seed_demo else None)
    gateway = SqliteGateway(args.db_path or cfg.db_path or "bot_fleet.sqlite3")
    try:
        if args.seed_demo:
            seed_demo(gateway, owner_id=owner_id)
        summary = asyncio.run(
            run_session(
                gateway,
                cfg,
                name=args.name,
                owner_id=owner_id,
                rules=rules,
                max_ticks=args.max_ticks,
                demo=bool(args.seed_demo),
            )
        )
    except RuleSetParseError as exc:
        log.error("Invalid rule set %s: %s", args.rules, exc)
        return 2
    finally:
        gateway.close()

    print_summary(summary)
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
