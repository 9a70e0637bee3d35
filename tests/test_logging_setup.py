import logging
import os
import tempfile
import unittest

from bot_fleet.config import EngineConfig
from bot_fleet.logging_setup import configure_for_engine, configure_logging, resolve_level


def _root_handlers():
    return list(logging.getLogger().handlers)


class TestLoggingSetup(unittest.TestCase):
    def setUp(self) -> None:
        previous = logging.root.manager.disable
        logging.disable(logging.NOTSET)
        self.addCleanup(logging.disable, previous)

    def tearDown(self) -> None:
        root = logging.getLogger()
        for h in _root_handlers():
            root.removeHandler(h)
            h.close()

    def test_resolve_level(self) -> None:
        self.assertEqual(resolve_level("debug"), logging.DEBUG)
        self.assertEqual(resolve_level(" Warning "), logging.WARNING)
        self.assertEqual(resolve_level(logging.ERROR), logging.ERROR)
        self.assertEqual(resolve_level("NOT_A_LEVEL"), logging.INFO)

    def test_engine_log_file_from_config(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = os.path.join(td, "sessions", "fleet.log")
            configure_for_engine(EngineConfig(log_level="WARNING", log_file=path))
            self.assertEqual(logging.getLogger().level, logging.WARNING)
            file_handlers = [h for h in _root_handlers() if isinstance(h, logging.FileHandler)]
            self.assertEqual([h.baseFilename for h in file_handlers], [os.path.abspath(path)])
            self.tearDown()

    def test_explicit_arguments_override_config(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = os.path.join(td, "cli.log")
            configure_for_engine(EngineConfig(log_level="ERROR"), level="debug", log_file=path)
            self.assertEqual(logging.getLogger().level, logging.DEBUG)
            logging.getLogger("bot_fleet.engine").debug("tick applied")
            for h in _root_handlers():
                h.flush()
            with open(path, encoding="utf-8") as f:
                self.assertIn("DEBUG bot_fleet.engine: tick applied", f.read())
            self.tearDown()

    def test_never_unconfigured(self) -> None:
        configure_logging(console=False)
        self.assertTrue(any(isinstance(h, logging.NullHandler) for h in _root_handlers()))
        self.assertFalse(any(isinstance(h, logging.StreamHandler) for h in _root_handlers()))


if __name__ == "__main__":
    unittest.main()
