from bot_fleet.session.bot_session import DEFAULT_SESSION_NAME, BotSession, SessionStatus, SessionSummary
from bot_fleet.session.manager import SessionManager

__all__ = ["DEFAULT_SESSION_NAME", "BotSession", "SessionManager", "SessionStatus", "SessionSummary"]
