"""Core interfaces for the broker lease."""

from brokerlease.core.interfaces.broker import Broker, Connector
from brokerlease.core.interfaces.locker import Locker

__all__ = [
    "Broker",
    "Connector",
    "Locker",
]
