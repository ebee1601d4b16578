"""Idempotent lease table bootstrap.

Every broker may run this on startup, possibly at the same moment as its
peers. There is no portable store-wide DDL lock, so each schema statement is
simply attempted and a failure is logged instead of aborting:

- table existed before the attempt: expected, DEBUG
- table did not exist: unexpected (e.g. missing privileges), WARNING

A broker that ends up without a usable lease row never becomes master,
because keep_alive cannot match a row.
"""

import asyncio
import logging

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from brokerlease.core.errors import SchemaBootstrapError
from brokerlease.core.interfaces import Broker
from brokerlease.core.logging_schema import LogEvent
from brokerlease.infra.database import release_connection
from brokerlease.infra.statements import LeaseStatements

logger = logging.getLogger(__name__)

BOOTSTRAP_ISOLATION_LEVEL = "REPEATABLE READ"


class SchemaBootstrapper:
    """Creates the lease table and its seed row if they are missing."""

    def __init__(
        self,
        engine: AsyncEngine,
        statements: LeaseStatements,
        *,
        broker: Broker | None = None,
        query_timeout: float | None = None,
    ) -> None:
        self._engine = engine
        self._statements = statements
        self._broker = broker
        self._query_timeout = query_timeout

    async def create(self) -> None:
        """Run the bootstrap.

        Raises:
            SchemaBootstrapError: No connection could be obtained, or the
                bootstrap transaction could not be committed.
        """
        conn = await self._connect()
        try:
            await self._bootstrap(conn)
        except SchemaBootstrapError:
            raise
        except (SQLAlchemyError, TimeoutError) as e:
            # Closing without commit discards the partial bootstrap
            raise SchemaBootstrapError(f"Schema bootstrap failed: {e}") from e
        finally:
            await release_connection(conn)

    async def _connect(self) -> AsyncConnection:
        try:
            return await self._engine.connect()
        except Exception as e:
            logger.warning(
                "Could not get a connection for schema bootstrap: %s",
                e,
                extra={"event": LogEvent.DB_ERROR, "error": str(e)},
            )
            error = SchemaBootstrapError(f"Could not get a connection: {e}")
            if self._broker is not None:
                await self._broker.handle_io_error(error)
            raise error from e

    async def _bootstrap(self, conn: AsyncConnection) -> None:
        await self._set_isolation_level(conn)
        trans = await conn.begin()

        exists = await self._lock_table_exists(conn)
        for statement in self._statements.create_schema_statements:
            await self._execute_tolerant(conn, statement, table_exists=exists)

        try:
            await trans.commit()
        except Exception as e:
            logger.warning(
                "Commit failed: %s",
                e,
                extra={"event": LogEvent.SCHEMA_COMMIT_FAILED, "error": str(e)},
            )
            await self._safe_rollback(trans)
            raise SchemaBootstrapError(f"Schema bootstrap commit failed: {e}") from e

        logger.info(
            "Lease schema bootstrap complete",
            extra={
                "event": LogEvent.SCHEMA_CREATED,
                "table": self._statements.full_table_name,
                "table_existed": exists,
            },
        )

    async def _set_isolation_level(self, conn: AsyncConnection) -> None:
        # Only a hint; races are settled by the tolerant create below
        try:
            await conn.execution_options(isolation_level=BOOTSTRAP_ISOLATION_LEVEL)
        except Exception as e:
            logger.debug("Could not set the transaction isolation level: %s", e)

    async def _lock_table_exists(self, conn: AsyncConnection) -> bool:
        table = self._statements.table
        try:
            async with conn.begin_nested():
                async with asyncio.timeout(self._query_timeout):
                    return await conn.run_sync(
                        lambda sync_conn: inspect(sync_conn).has_table(
                            table.name, schema=table.schema
                        )
                    )
        except Exception as e:
            logger.debug("Lease table existence check failed: %s", e)
            return False

    async def _execute_tolerant(self, conn: AsyncConnection, statement, *, table_exists: bool) -> None:
        logger.debug("Executing SQL: %s", statement)
        try:
            # Savepoint keeps the outer transaction usable after a failure
            async with conn.begin_nested():
                async with asyncio.timeout(self._query_timeout):
                    await conn.execute(statement)
        except (SQLAlchemyError, TimeoutError) as e:
            if table_exists:
                logger.debug(
                    "Could not create lease table; the lease table already exists. "
                    "Failure was: %s Message: %s",
                    statement,
                    e,
                )
            else:
                logger.warning(
                    "Could not create lease table; it could already exist. "
                    "Failure was: %s Message: %s",
                    statement,
                    e,
                    extra={"event": LogEvent.SCHEMA_STATEMENT_FAILED, "error": str(e)},
                )

    async def _safe_rollback(self, trans) -> None:
        try:
            await trans.rollback()
        except Exception as e:
            logger.warning("Rollback failed: %s", e, extra={"event": LogEvent.DB_ERROR})
