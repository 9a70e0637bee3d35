from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Collection, Dict, Optional, Sequence

from bot_fleet.config import EngineConfig
from bot_fleet.engine import TickContext, run_tick
from bot_fleet.gateway.base import MarketDataGateway
from bot_fleet.price_tracker import PriceTracker
from bot_fleet.strategy.evaluator import StrategyEvaluator
from bot_fleet.strategy.rules import Rule

log = logging.getLogger(__name__)

DEFAULT_SESSION_NAME = "Unnamed session"


class SessionStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class SessionSummary:
    id: str
    name: str
    owner_id: Optional[str]
    status: SessionStatus
    created_at: datetime
    started_at: Optional[datetime]
    stopped_at: Optional[datetime]
    last_tick_at: Optional[datetime]
    last_tick_duration_ms: Optional[float]
    ticks: int
    last_error: Optional[str]
    rules_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "ownerId": self.owner_id,
            "status": self.status.value,
            "createdAt": _iso(self.created_at),
            "startedAt": _iso(self.started_at),
            "stoppedAt": _iso(self.stopped_at),
            "lastTickAt": _iso(self.last_tick_at),
            "lastTickDurationMs": self.last_tick_duration_ms,
            "ticks": self.ticks,
            "lastError": self.last_error,
            "rulesCount": self.rules_count,
        }


class BotSession:
    """
    One self-pacing tick loop with its own price history.

    Lifecycle: starting -> running -> stopping -> stopped. ``stop()`` never
    interrupts a tick in flight; it only cuts short the inter-tick sleep.
    """

    def __init__(
        self,
        gateway: MarketDataGateway,
        *,
        config: Optional[EngineConfig] = None,
        name: Optional[str] = None,
        owner_id: Optional[str] = None,
        rules: Optional[Sequence[Rule]] = None,
        active_owner_ids: Optional[Callable[[], Collection[str]]] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = _utc_now,
        session_id: Optional[str] = None,
    ) -> None:
        self._gateway = gateway
        self._config = config or EngineConfig()
        self._clock = clock
        self.id = session_id or str(uuid.uuid4())
        self.name = (name or "").strip() or DEFAULT_SESSION_NAME
        self.owner_id = owner_id
        self._rules = tuple(rules or ())
        self._evaluator = StrategyEvaluator(self._rules) if self._rules else None
        self._price_tracker = PriceTracker(self._config.price_history_size)
        self._ctx = TickContext(
            session_id=self.id,
            price_tracker=self._price_tracker,
            config=self._config,
            strategy_evaluator=self._evaluator,
            owner_id=owner_id,
            active_owner_ids=None if owner_id is not None else active_owner_ids,
            rng=rng or random.Random(self._config.random_seed),
            clock=clock,
        )

        self.status = SessionStatus.STARTING
        self.created_at = clock()
        self.started_at: Optional[datetime] = None
        self.stopped_at: Optional[datetime] = None
        self.last_tick_at: Optional[datetime] = None
        self.last_tick_duration_ms: Optional[float] = None
        self.ticks = 0
        self.last_error: Optional[str] = None

        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def price_tracker(self) -> PriceTracker:
        return self._price_tracker

    @property
    def strategy_evaluator(self) -> Optional[StrategyEvaluator]:
        return self._evaluator

    @property
    def is_active(self) -> bool:
        return self.status in (SessionStatus.STARTING, SessionStatus.RUNNING)

    @property
    def summary(self) -> SessionSummary:
        return SessionSummary(
            id=self.id,
            name=self.name,
            owner_id=self.owner_id,
            status=self.status,
            created_at=self.created_at,
            started_at=self.started_at,
            stopped_at=self.stopped_at,
            last_tick_at=self.last_tick_at,
            last_tick_duration_ms=self.last_tick_duration_ms,
            ticks=self.ticks,
            last_error=self.last_error,
            rules_count=len(self._rules),
        )

    def start(self) -> asyncio.Task[None]:
        """Start the loop on the running event loop; calling again returns the same task."""
        if self._task is not None:
            return self._task
        if self.status != SessionStatus.STARTING:
            raise RuntimeError(f"Session {self.id} cannot start from status {self.status.value}")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            raise RuntimeError("BotSession.start() requires a running event loop") from exc

        self.status = SessionStatus.RUNNING
        self.started_at = self._clock()
        self._task = loop.create_task(self._run(), name=f"bot-session-{self.id}")
        log.info("Session %s (%s) started owner=%s rules=%d", self.id, self.name, self.owner_id, len(self._rules))
        return self._task

    def stop(self) -> SessionSummary:
        if self.status in (SessionStatus.STOPPING, SessionStatus.STOPPED):
            return self.summary
        if self._task is None:
            self.status = SessionStatus.STOPPED
            self.stopped_at = self._clock()
            log.info("Session %s stopped before start", self.id)
            return self.summary
        self.status = SessionStatus.STOPPING
        self._stop_event.set()
        log.info("Session %s stopping", self.id)
        return self.summary

    async def wait_stopped(self, timeout: Optional[float] = None) -> SessionSummary:
        if self._task is not None:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        return self.summary

    async def run_once(self) -> None:
        """Run exactly one tick and record its outcome."""
        t0 = time.perf_counter()
        try:
            await run_tick(self._ctx, self._gateway)
        except Exception as exc:
            self.last_error = f"{type(exc).__name__}: {exc}"
            log.exception("Session %s tick failed", self.id)
        else:
            self.last_error = None
        finally:
            self.last_tick_duration_ms = (time.perf_counter() - t0) * 1000.0
            self.last_tick_at = self._clock()
            self.ticks += 1

    async def _run(self) -> None:
        stop_event = self._stop_event
        try:
            while not stop_event.is_set():
                await self.run_once()
                if stop_event.is_set():
                    break
                delay_ms = max(
                    self._config.min_rest_delay_ms,
                    self._config.tick_interval_ms - (self.last_tick_duration_ms or 0.0),
                )
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=delay_ms / 1000.0)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.status = SessionStatus.STOPPED
            self.stopped_at = self._clock()
            log.info("Session %s stopped after %d ticks", self.id, self.ticks)
