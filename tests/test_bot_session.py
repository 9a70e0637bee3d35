import asyncio
import logging
import random
import unittest

from bot_fleet.config import EngineConfig
from bot_fleet.gateway import SimGateway
from bot_fleet.models import Bot, Instrument
from bot_fleet.session import DEFAULT_SESSION_NAME, BotSession, SessionStatus
from bot_fleet.strategy.parser import parse_rule_set

logging.disable(logging.CRITICAL)

FAST = EngineConfig(tick_interval_ms=10, min_rest_delay_ms=0)
SLOW = EngineConfig(tick_interval_ms=60_000, min_rest_delay_ms=0)

BUY_WHEN_UP = [
    {
        "conditions": {"all": [{"fact": "isPriceUp", "operator": "equal", "value": True}]},
        "event": {"type": "BUY"},
    }
]


def _gateway():
    gw = SimGateway()
    gw.add_instrument(Instrument(id="s1", symbol="ACME", current_price=100))
    gw.add_bot(Bot(id="b1", balance_cents=10_000))
    return gw


async def wait_for_ticks(session, n, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while session.ticks < n:
        if loop.time() > deadline:
            raise AssertionError(f"session reached {session.ticks} ticks, expected {n}")
        await asyncio.sleep(0.005)


class TestBotSessionSync(unittest.TestCase):
    def test_start_requires_running_loop(self):
        session = BotSession(_gateway(), config=FAST)
        with self.assertRaises(RuntimeError):
            session.start()
        self.assertEqual(session.status, SessionStatus.STARTING)

    def test_stop_before_start(self):
        session = BotSession(_gateway(), config=FAST)
        summary = session.stop()
        self.assertEqual(summary.status, SessionStatus.STOPPED)
        self.assertIsNotNone(summary.stopped_at)
        self.assertEqual(summary.ticks, 0)
        self.assertEqual(session.stop(), summary)

    def test_defaults_and_summary_shape(self):
        session = BotSession(_gateway(), name="  ", owner_id="u1", rules=parse_rule_set(BUY_WHEN_UP))
        self.assertEqual(session.name, DEFAULT_SESSION_NAME)
        self.assertIsNotNone(session.strategy_evaluator)
        data = session.summary.to_dict()
        self.assertEqual(
            set(data),
            {
                "id",
                "name",
                "ownerId",
                "status",
                "createdAt",
                "startedAt",
                "stoppedAt",
                "lastTickAt",
                "lastTickDurationMs",
                "ticks",
                "lastError",
                "rulesCount",
            },
        )
        self.assertEqual(data["status"], "starting")
        self.assertEqual(data["ownerId"], "u1")
        self.assertEqual(data["rulesCount"], 1)
        self.assertIsNone(data["startedAt"])

    def test_no_rules_means_no_bound_evaluator(self):
        session = BotSession(_gateway(), rules=[])
        self.assertIsNone(session.strategy_evaluator)


class TestBotSessionLoop(unittest.IsolatedAsyncioTestCase):
    async def test_start_is_idempotent(self):
        session = BotSession(_gateway(), config=FAST)
        first = session.start()
        second = session.start()
        self.assertIs(first, second)
        self.assertEqual(session.status, SessionStatus.RUNNING)
        self.assertIsNotNone(session.started_at)
        session.stop()
        await session.wait_stopped(timeout=2.0)

    async def test_loop_ticks_until_stopped(self):
        session = BotSession(_gateway(), config=FAST)
        session.start()
        await wait_for_ticks(session, 3)
        stopping = session.stop()
        self.assertEqual(stopping.status, SessionStatus.STOPPING)
        summary = await session.wait_stopped(timeout=2.0)
        self.assertEqual(summary.status, SessionStatus.STOPPED)
        self.assertGreaterEqual(summary.ticks, 3)
        self.assertIsNotNone(summary.stopped_at)
        self.assertIsNotNone(summary.last_tick_at)
        self.assertIsNotNone(summary.last_tick_duration_ms)

    async def test_stopped_session_cannot_start(self):
        session = BotSession(_gateway(), config=FAST)
        session.stop()
        with self.assertRaises(RuntimeError):
            session.start()

    async def test_stop_cuts_sleep_short(self):
        session = BotSession(_gateway(), config=SLOW)
        session.start()
        await wait_for_ticks(session, 1)
        session.stop()
        summary = await session.wait_stopped(timeout=1.0)
        self.assertEqual(summary.status, SessionStatus.STOPPED)
        self.assertEqual(summary.ticks, 1)

    async def test_gateway_error_is_recorded_then_cleared(self):
        gw = _gateway()
        session = BotSession(gw, config=SLOW)
        gw.fail_fetch = ConnectionError("store unavailable")
        await session.run_once()
        self.assertIn("GatewayError", session.last_error)
        self.assertEqual(session.ticks, 1)

        gw.fail_fetch = None
        await session.run_once()
        self.assertIsNone(session.last_error)
        self.assertEqual(session.ticks, 2)

    async def test_loop_survives_gateway_errors(self):
        gw = _gateway()
        gw.fail_fetch = ConnectionError("down")
        session = BotSession(gw, config=FAST)
        session.start()
        await wait_for_ticks(session, 3)
        self.assertEqual(session.status, SessionStatus.RUNNING)
        self.assertIsNotNone(session.last_error)
        session.stop()
        await session.wait_stopped(timeout=2.0)

    async def test_bound_rules_drive_bots_and_history_persists(self):
        gw = _gateway()
        session = BotSession(gw, config=SLOW, rules=parse_rule_set(BUY_WHEN_UP), rng=random.Random(5))
        await session.run_once()
        gw.set_price("s1", 105)
        await session.run_once()
        self.assertEqual(len(gw.open_orders), 1)
        self.assertEqual(gw.open_orders[0].limit_price, 105)
        self.assertEqual(session.price_tracker.history("s1"), [100, 105])


if __name__ == "__main__":
    unittest.main()
