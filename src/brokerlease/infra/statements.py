"""Lease table definition and statements.

Column types and statement text are rendered by the SQLAlchemy dialect of
the engine that executes them. Bootstrap runs each DDL statement in its own
savepoint, which needs transactional DDL: PostgreSQL and SQLite qualify.
MySQL commits implicitly on CREATE TABLE and drops the savepoint, so a
successful bootstrap there still logs a "could not create lease table"
warning.
"""

from sqlalchemy import (
    BigInteger,
    Column,
    Executable,
    MetaData,
    Select,
    String,
    Table,
    Update,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.schema import CreateTable

from brokerlease.core.domain import LEASE_ROW_ID

DEFAULT_TABLE_NAME = "broker_lease"
HOLDER_MAX_LENGTH = 250


class LeaseStatements:
    """Statement provider for the single-row lease table.

    Row layout: (id, time, holder). `time` is the lease expiry in epoch
    milliseconds of the store clock; NULL means never claimed or released.
    """

    def __init__(self, table_name: str = DEFAULT_TABLE_NAME, schema: str | None = None) -> None:
        self._metadata = MetaData()
        self.table = Table(
            table_name,
            self._metadata,
            Column("id", BigInteger, primary_key=True, autoincrement=False),
            Column("time", BigInteger, nullable=True),
            Column("holder", String(HOLDER_MAX_LENGTH), nullable=True),
            schema=schema,
        )

    @property
    def table_name(self) -> str:
        return self.table.name

    @property
    def full_table_name(self) -> str:
        return self.table.fullname

    @property
    def create_schema_statements(self) -> list[Executable]:
        """Statements executed in order by the schema bootstrap."""
        return [
            CreateTable(self.table),
            insert(self.table).values(id=LEASE_ROW_ID),
        ]

    @property
    def current_time(self) -> Select:
        """Store clock read used for clock offset detection."""
        return select(func.current_timestamp())

    def lease_update(self, holder: str, *, expiry: int, now: int) -> Update:
        """Claim or extend the lease in one atomic statement.

        Matches when the caller already holds the row or the recorded lease
        has expired (`time <= now`, or never set).
        """
        t = self.table
        return (
            update(t)
            .where(
                t.c.id == LEASE_ROW_ID,
                or_(t.c.holder == holder, t.c.time.is_(None), t.c.time <= now),
            )
            .values(holder=holder, time=expiry)
        )

    def lease_release(self, holder: str) -> Update:
        t = self.table
        return (
            update(t)
            .where(t.c.id == LEASE_ROW_ID, t.c.holder == holder)
            .values(holder=None, time=None)
        )

    def lease_select(self) -> Select:
        t = self.table
        return select(t.c.id, t.c.time, t.c.holder).where(t.c.id == LEASE_ROW_ID)
