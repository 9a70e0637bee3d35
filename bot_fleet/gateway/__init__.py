from bot_fleet.gateway.base import GatewayError, MarketDataGateway
from bot_fleet.gateway.sim import SimGateway
from bot_fleet.gateway.sqlite import SqliteGateway

__all__ = ["GatewayError", "MarketDataGateway", "SimGateway", "SqliteGateway"]
