import os
import unittest
from unittest import mock

from bot_fleet.config import MAX_PRICE_HISTORY, EngineConfig


class TestEngineConfig(unittest.TestCase):
    def test_defaults(self):
        cfg = EngineConfig()
        self.assertEqual(cfg.tick_interval_ms, 2000)
        self.assertEqual(cfg.min_rest_delay_ms, 250)
        self.assertEqual(cfg.max_orders_per_batch, 500)
        self.assertEqual(cfg.price_history_size, MAX_PRICE_HISTORY)
        self.assertIsNone(cfg.random_seed)

    def test_from_env(self):
        env = {
            "BOT_TICK_INTERVAL_MS": "500",
            "BOT_MIN_REST_DELAY_MS": "50",
            "BOT_MAX_ORDERS_PER_BATCH": "10",
            "BOT_RANDOM_SEED": "7",
            "BOT_DB_PATH": " /tmp/fleet.sqlite3 ",
            "BOT_LOG_LEVEL": "debug",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            cfg = EngineConfig.from_env()
        self.assertEqual(cfg.tick_interval_ms, 500)
        self.assertEqual(cfg.min_rest_delay_ms, 50)
        self.assertEqual(cfg.max_orders_per_batch, 10)
        self.assertEqual(cfg.random_seed, 7)
        self.assertEqual(cfg.db_path, "/tmp/fleet.sqlite3")
        self.assertEqual(cfg.log_level, "DEBUG")

    def test_empty_env_uses_defaults(self):
        with mock.patch.dict(os.environ, {"BOT_DB_PATH": "", "BOT_RANDOM_SEED": " "}, clear=True):
            cfg = EngineConfig.from_env()
        self.assertEqual(cfg, EngineConfig())

    def test_validation(self):
        with self.assertRaises(ValueError):
            EngineConfig(tick_interval_ms=0)
        with self.assertRaises(ValueError):
            EngineConfig(min_rest_delay_ms=-1)
        with self.assertRaises(ValueError):
            EngineConfig(max_orders_per_batch=0)
        with self.assertRaises(ValueError):
            with mock.patch.dict(os.environ, {"BOT_MAX_ORDERS_PER_BATCH": "-5"}, clear=True):
                EngineConfig.from_env()


if __name__ == "__main__":
    unittest.main()
