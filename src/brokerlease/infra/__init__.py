"""Infrastructure: shared store connections and the lease locker."""

from brokerlease.infra.clock import ClockSync
from brokerlease.infra.database import (
    acquire_connection,
    close_db,
    create_engine,
    init_db,
)
from brokerlease.infra.lease_locker import LeaseDatabaseLocker
from brokerlease.infra.schema import SchemaBootstrapper
from brokerlease.infra.statements import LeaseStatements

__all__ = [
    # DB
    "init_db",
    "close_db",
    "create_engine",
    "acquire_connection",
    # Lease
    "ClockSync",
    "LeaseDatabaseLocker",
    "LeaseStatements",
    "SchemaBootstrapper",
]
