"""Control plane - lease renewal and storage failure handling."""

from brokerlease.control.broker import BrokerService
from brokerlease.control.io_handler import DefaultIOHandler, LeaseFencingIOHandler
from brokerlease.control.keeper import LeaseKeeper

__all__ = [
    "BrokerService",
    "DefaultIOHandler",
    "LeaseFencingIOHandler",
    "LeaseKeeper",
]
