from __future__ import annotations

import os
from dataclasses import dataclass

MAX_PRICE_HISTORY = 200


def _get_env(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None or value == "" else value


def _get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _get_env_optional_int(name: str) -> int | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return int(value)


@dataclass(frozen=True)
class EngineConfig:
    tick_interval_ms: int = 2000
    min_rest_delay_ms: int = 250
    max_orders_per_batch: int = 500
    price_history_size: int = MAX_PRICE_HISTORY
    random_seed: int | None = None  # None -> OS entropy
    db_path: str | None = None
    log_level: str = "INFO"
    log_file: str | None = None

    def __post_init__(self) -> None:
        if self.tick_interval_ms <= 0:
            raise ValueError("tick_interval_ms must be positive")
        if self.min_rest_delay_ms < 0:
            raise ValueError("min_rest_delay_ms must be >= 0")
        if self.max_orders_per_batch <= 0:
            raise ValueError("max_orders_per_batch must be positive")
        if self.price_history_size <= 0:
            raise ValueError("price_history_size must be positive")

    @staticmethod
    def from_env() -> "EngineConfig":
        return EngineConfig(
            tick_interval_ms=_get_env_int("BOT_TICK_INTERVAL_MS", 2000),
            min_rest_delay_ms=_get_env_int("BOT_MIN_REST_DELAY_MS", 250),
            max_orders_per_batch=_get_env_int("BOT_MAX_ORDERS_PER_BATCH", 500),
            price_history_size=_get_env_int("BOT_PRICE_HISTORY_SIZE", MAX_PRICE_HISTORY),
            random_seed=_get_env_optional_int("BOT_RANDOM_SEED"),
            db_path=(_get_env("BOT_DB_PATH", "").strip() or None),
            log_level=_get_env("BOT_LOG_LEVEL", "INFO").strip().upper(),
            log_file=(_get_env("BOT_LOG_FILE", "").strip() or None),
        )
