"""Lieng host package: wraps the rules engine with money, timers and networking."""

from .gateways import Directory, MemoryLedger
from .server import HostServer
from .service import LiengService

__all__ = ["Directory", "MemoryLedger", "HostServer", "LiengService"]
