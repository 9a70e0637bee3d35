from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Callable, Dict, List, Optional, Set

from bot_fleet.config import EngineConfig
from bot_fleet.gateway.base import MarketDataGateway
from bot_fleet.session.bot_session import BotSession, SessionStatus, SessionSummary
from bot_fleet.strategy.parser import parse_rule_set

log = logging.getLogger(__name__)


class SessionManager:
    """
    In-memory registry of bot sessions.

    Stopped sessions stay registered so their summaries remain queryable.
    Every operation returns ``SessionSummary`` snapshots, never the live
    session.
    """

    def __init__(
        self,
        gateway: MarketDataGateway,
        config: Optional[EngineConfig] = None,
        *,
        rng_factory: Optional[Callable[[], random.Random]] = None,
    ) -> None:
        self._gateway = gateway
        self._config = config or EngineConfig()
        self._rng_factory = rng_factory
        self._sessions: Dict[str, BotSession] = {}

    def list_sessions(self) -> List[SessionSummary]:
        return [s.summary for s in self._sessions.values()]

    def get_session(self, session_id: str) -> Optional[SessionSummary]:
        session = self._sessions.get(session_id)
        return session.summary if session is not None else None

    def create_session(
        self,
        name: Optional[str] = None,
        owner_id: Optional[str] = None,
        rules: Any = None,
    ) -> SessionSummary:
        """
        Build and start a session.

        ``rules`` may be raw JSON text, a dict or a list; malformed JSON raises
        ``RuleSetParseError``. An empty rule list leaves the session without a
        bound strategy so each bot uses its own.
        """
        parsed = parse_rule_set(rules) if rules is not None else []
        session = BotSession(
            self._gateway,
            config=self._config,
            name=name,
            owner_id=owner_id,
            rules=parsed,
            active_owner_ids=self.active_owner_ids,
            rng=self._rng_factory() if self._rng_factory is not None else None,
        )
        session.start()
        self._sessions[session.id] = session
        return session.summary

    def create_or_reuse_session_for_owner(
        self,
        owner_id: str,
        name: Optional[str] = None,
        rules: Any = None,
    ) -> SessionSummary:
        for session in self._sessions.values():
            if session.owner_id == owner_id and session.status != SessionStatus.STOPPED:
                log.debug("Reusing session %s for owner %s", session.id, owner_id)
                return session.summary
        return self.create_session(name=name, owner_id=owner_id, rules=rules)

    def stop_session(self, session_id: str) -> Optional[SessionSummary]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        return session.stop()

    def stop_sessions_by_owner(self, owner_id: str) -> List[SessionSummary]:
        return [s.stop() for s in self._sessions.values() if s.owner_id == owner_id and s.is_active]

    def active_owner_ids(self) -> Set[str]:
        """Owners that currently have a running session."""
        return {
            s.owner_id
            for s in self._sessions.values()
            if s.owner_id is not None and s.status == SessionStatus.RUNNING
        }

    async def wait_stopped(self, session_id: str, timeout: Optional[float] = None) -> Optional[SessionSummary]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        return await session.wait_stopped(timeout=timeout)

    async def shutdown(self, timeout: Optional[float] = None) -> List[SessionSummary]:
        sessions = list(self._sessions.values())
        for session in sessions:
            session.stop()
        if sessions:
            results = await asyncio.gather(
                *(s.wait_stopped(timeout=timeout) for s in sessions),
                return_exceptions=True,
            )
            for session, result in zip(sessions, results):
                if isinstance(result, BaseException):
                    log.warning("Session %s did not stop cleanly: %r", session.id, result)
        return [s.summary for s in sessions]
