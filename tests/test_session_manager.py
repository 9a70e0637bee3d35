import asyncio
import logging
import random
import unittest

from bot_fleet.config import EngineConfig
from bot_fleet.gateway import SimGateway
from bot_fleet.models import Bot, Instrument
from bot_fleet.session import SessionManager, SessionStatus
from bot_fleet.strategy.parser import RuleSetParseError

logging.disable(logging.CRITICAL)

SLOW = EngineConfig(tick_interval_ms=60_000, min_rest_delay_ms=0)

BUY_WHEN_UP = [
    {
        "conditions": {"all": [{"fact": "isPriceUp", "operator": "equal", "value": True}]},
        "event": {"type": "BUY"},
    }
]

NEVER = [
    {
        "conditions": {"all": [{"fact": "randomChance", "operator": "randomChance", "randomProbability": 0}]},
        "event": {"type": "BUY"},
    }
]


def _gateway():
    gw = SimGateway()
    gw.add_instrument(Instrument(id="s1", symbol="ACME", current_price=100))
    gw.set_rule_set("st1", BUY_WHEN_UP)
    gw.add_bot(Bot(id="b1", balance_cents=10_000, strategy_id="st1", owner_id="u1"))
    gw.add_bot(Bot(id="b2", balance_cents=10_000, strategy_id="st1", owner_id="u2"))
    return gw


async def wait_for_ticks(manager, session_id, n, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while manager.get_session(session_id).ticks < n:
        if loop.time() > deadline:
            raise AssertionError("session did not tick")
        await asyncio.sleep(0.005)


class TestSessionManager(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.gw = _gateway()
        self.manager = SessionManager(self.gw, SLOW, rng_factory=lambda: random.Random(9))

    async def asyncTearDown(self):
        await self.manager.shutdown(timeout=2.0)

    async def test_create_list_get(self):
        summary = self.manager.create_session(name="alpha", owner_id="u1", rules=BUY_WHEN_UP)
        self.assertEqual(summary.status, SessionStatus.RUNNING)
        self.assertEqual(summary.name, "alpha")
        self.assertEqual(summary.rules_count, 1)
        self.assertEqual([s.id for s in self.manager.list_sessions()], [summary.id])
        self.assertEqual(self.manager.get_session(summary.id).id, summary.id)
        self.assertIsNone(self.manager.get_session("nope"))

    async def test_create_with_json_text_and_default_name(self):
        summary = self.manager.create_session(rules='[{"conditions": {"all": []}, "event": {"type": "BUY"}}]')
        self.assertEqual(summary.name, "Unnamed session")
        self.assertEqual(summary.rules_count, 0)

    async def test_malformed_rules_raise(self):
        with self.assertRaises(RuleSetParseError):
            self.manager.create_session(rules="[{oops")
        self.assertEqual(self.manager.list_sessions(), [])

    async def test_one_active_session_per_owner(self):
        first = self.manager.create_or_reuse_session_for_owner("u1")
        again = self.manager.create_or_reuse_session_for_owner("u1", name="ignored")
        self.assertEqual(first.id, again.id)
        other = self.manager.create_or_reuse_session_for_owner("u2")
        self.assertNotEqual(first.id, other.id)

        self.manager.stop_session(first.id)
        await self.manager.wait_stopped(first.id, timeout=2.0)
        fresh = self.manager.create_or_reuse_session_for_owner("u1")
        self.assertNotEqual(fresh.id, first.id)
        self.assertEqual(len(self.manager.list_sessions()), 3)

    async def test_stop_session_is_idempotent(self):
        summary = self.manager.create_session(owner_id="u1")
        stopped = self.manager.stop_session(summary.id)
        self.assertIn(stopped.status, (SessionStatus.STOPPING, SessionStatus.STOPPED))
        final = await self.manager.wait_stopped(summary.id, timeout=2.0)
        self.assertEqual(final.status, SessionStatus.STOPPED)
        self.assertEqual(self.manager.stop_session(summary.id), final)
        self.assertIsNone(self.manager.stop_session("unknown"))
        self.assertEqual(self.manager.get_session(summary.id).status, SessionStatus.STOPPED)

    async def test_stop_sessions_by_owner(self):
        a = self.manager.create_session(owner_id="u1")
        b = self.manager.create_session(owner_id="u1")
        c = self.manager.create_session(owner_id="u2")
        stopped = self.manager.stop_sessions_by_owner("u1")
        self.assertEqual({s.id for s in stopped}, {a.id, b.id})
        self.assertEqual(self.manager.get_session(c.id).status, SessionStatus.RUNNING)
        self.assertEqual(self.manager.stop_sessions_by_owner("u1"), [])

    async def test_active_owner_ids(self):
        self.assertEqual(self.manager.active_owner_ids(), set())
        s1 = self.manager.create_session(owner_id="u1")
        self.manager.create_session()
        self.assertEqual(self.manager.active_owner_ids(), {"u1"})
        self.manager.stop_session(s1.id)
        self.assertEqual(self.manager.active_owner_ids(), set())

    async def test_ownerless_session_drives_active_owners_only(self):
        owner = self.manager.create_session(owner_id="u1", rules=NEVER)
        fleet = self.manager.create_session(name="fleet")
        await wait_for_ticks(self.manager, owner.id, 1)
        await wait_for_ticks(self.manager, fleet.id, 1)
        self.assertEqual(self.gw.batches, [])

        self.gw.set_price("s1", 105)
        await self.manager._sessions[fleet.id].run_once()
        traded = [o.bot_id for b in self.gw.batches for o in b.new_orders]
        self.assertEqual(traded, ["b1"])

    async def test_shutdown_stops_everything(self):
        self.manager.create_session(owner_id="u1")
        self.manager.create_session(owner_id="u2")
        summaries = await self.manager.shutdown(timeout=2.0)
        self.assertEqual(len(summaries), 2)
        self.assertTrue(all(s.status == SessionStatus.STOPPED for s in summaries))
        self.assertEqual(self.manager.active_owner_ids(), set())


class TestSessionManagerWithoutLoop(unittest.TestCase):
    def test_failed_start_is_not_registered(self):
        manager = SessionManager(_gateway(), SLOW)
        with self.assertRaises(RuntimeError):
            manager.create_or_reuse_session_for_owner("u1")
        self.assertEqual(manager.list_sessions(), [])
        with self.assertRaises(RuntimeError):
            manager.create_or_reuse_session_for_owner("u1")
        self.assertEqual(manager.list_sessions(), [])


if __name__ == "__main__":
    unittest.main()
