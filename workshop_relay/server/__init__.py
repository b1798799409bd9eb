from .app import RelayServer
from .router import ConnectionRouter, RouteDecision
from .tunnel_handler import TunnelHandler

__all__ = ["ConnectionRouter", "RelayServer", "RouteDecision", "TunnelHandler"]
