import logging
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, NamedTuple, Optional, Union

import psycopg
from psycopg import sql
from psycopg.rows import namedtuple_row
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from .cypher import build_cypher_sql, embed_parameters
from .decoder import agtype_to_str, parse_agtype
from .exceptions import GraphOperationError
from .settings import GraphSettings

logger = logging.getLogger("medgraph_match")
logger.setLevel(logging.INFO)

MISSING_GRAPH_REGEX = re.compile(r"graph .* does not exist", re.IGNORECASE)


def is_missing_graph_error(error: BaseException) -> bool:
    """True when a store error says the graph itself is missing."""
    if isinstance(error, psycopg.errors.InvalidSchemaName):
        return True
    return MISSING_GRAPH_REGEX.search(str(error)) is not None


@asynccontextmanager
async def get_pool_connection(
    pool: AsyncConnectionPool, timeout: Optional[float] = None
):
    """
    Get a connection from the pool with workaround for psycopg_pool bug.

    The connection goes back to the pool on exit whatever happened inside.
    """
    try:
        connection = await pool.getconn(timeout=timeout)
    except PoolTimeout:
        # Workaround for psycopg_pool bug
        await pool._add_connection(None)
        connection = await pool.getconn(timeout=timeout)

    try:
        yield connection
    finally:
        await pool.putconn(connection)


def _record_to_dict(record: NamedTuple) -> Dict[str, Any]:
    """Row as a column -> raw value mapping; agtype columns stay as text."""
    return record._asdict()


class AgeGraphGateway:
    """Runs Cypher against an Apache AGE graph.

    Each call uses its own pooled connection and transaction, so graph
    bootstrapping commits independently of whatever the caller is doing.
    """

    def __init__(
        self,
        pool: AsyncConnectionPool,
        graph_name: str,
        load_age: bool = True,
        query_timeout: Optional[float] = None,
    ):
        self.pool = pool
        self.graph_name = graph_name
        self.load_age = load_age
        self.query_timeout = query_timeout

    async def _run(
        self, statement: Union[str, sql.Composable], params: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        async with get_pool_connection(self.pool) as conn:
            async with conn.cursor(row_factory=namedtuple_row) as cursor:
                try:
                    if self.load_age:
                        await cursor.execute("LOAD 'age'")
                    await cursor.execute('SET search_path = ag_catalog, "$user", public')
                    if self.query_timeout is not None:
                        timeout_ms = int(self.query_timeout * 1000)
                        await cursor.execute(f"SET LOCAL statement_timeout = {timeout_ms}")

                    await cursor.execute(statement, params)
                    data = await cursor.fetchall() if cursor.description else []
                    await conn.commit()
                except psycopg.Error as e:
                    await conn.rollback()
                    logger.error(f"Database error executing statement: {e}\n{statement}")
                    raise

        return [_record_to_dict(record) for record in data]

    async def graph_exists(self) -> bool:
        try:
            rows = await self._run(
                "SELECT count(*) AS cnt FROM ag_catalog.ag_graph WHERE name = %(name)s",
                {"name": self.graph_name},
            )
        except psycopg.Error as e:
            raise GraphOperationError(
                {"message": f"Could not check graph existence: {e}", "details": self.graph_name}
            ) from e
        return bool(rows) and int(rows[0]["cnt"]) > 0

    async def ensure_graph(self) -> None:
        """Create the graph if it is missing. Safe to call repeatedly."""
        if await self.graph_exists():
            return
        try:
            await self._run(
                "SELECT * FROM ag_catalog.create_graph(%(name)s::name)",
                {"name": self.graph_name},
            )
            logger.info(f"Created graph '{self.graph_name}'")
        except psycopg.errors.DuplicateSchema:
            logger.info(f"Graph '{self.graph_name}' was created concurrently")
        except psycopg.Error as e:
            raise GraphOperationError(
                {"message": f"Could not create graph: {e}", "details": self.graph_name}
            ) from e

    async def execute(
        self, query: str, params: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        """Run a Cypher query and return its rows as raw agtype text.

        A query that fails because the graph is missing triggers graph
        creation and exactly one retry. Every other failure, and a failed
        retry, raises GraphOperationError.
        """
        statement = build_cypher_sql(self.graph_name, embed_parameters(query, params))
        try:
            return await self._run(statement)
        except psycopg.Error as e:
            if not is_missing_graph_error(e):
                raise GraphOperationError(
                    {"message": f"Cypher query failed: {e}", "details": query}
                ) from e
            logger.warning(
                f"Graph '{self.graph_name}' does not exist, creating it and retrying once"
            )

        await self.ensure_graph()
        try:
            return await self._run(statement)
        except psycopg.Error as e:
            raise GraphOperationError(
                {"message": f"Cypher query failed after creating graph: {e}", "details": query}
            ) from e

    async def execute_and_extract(
        self, query: str, params: Optional[Dict[str, Any]], field: str
    ) -> List[str]:
        """Distinct non-null string values of ``field`` in row order.

        Rows without the column are searched for a nested ``result`` map.
        """
        values = []
        seen = set()
        for row in await self.execute(query, params):
            value = agtype_to_str(row.get(field))
            if value is None and row.get("result") is not None:
                nested = parse_agtype(row["result"])
                if isinstance(nested, dict) and nested.get(field) is not None:
                    value = str(nested[field])
            if value is not None and value not in seen:
                seen.add(value)
                values.append(value)
        return values

    async def execute_sql(
        self, statement: Union[str, sql.Composable], params: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        """Run plain SQL (catalog lookups, DDL) in its own transaction."""
        try:
            return await self._run(statement, params)
        except psycopg.Error as e:
            raise GraphOperationError(
                {"message": f"SQL failed: {e}", "details": str(statement)}
            ) from e

    async def close(self) -> None:
        await self.pool.close()


@asynccontextmanager
async def open_gateway(settings: GraphSettings) -> AsyncIterator[AgeGraphGateway]:
    """Open a connection pool for ``settings`` and yield a gateway over it."""
    pool = AsyncConnectionPool(settings.connection_url, open=False)
    await pool.open()
    try:
        yield AgeGraphGateway(
            pool,
            settings.graph_name,
            load_age=settings.load_age,
            query_timeout=settings.query_timeout,
        )
    finally:
        await pool.close()
