"""Upstream DNS transports (persistent TCP and connected UDP)."""

from .tcp import TCPConnection, TCPError
from .udp import UDPConnection, UDPError

__all__ = ["TCPConnection", "TCPError", "UDPConnection", "UDPError"]
