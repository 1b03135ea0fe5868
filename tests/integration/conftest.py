import os

import pytest_asyncio
from psycopg_pool import AsyncConnectionPool

from medgraph_match.builder import clear_graph
from medgraph_match.gateway import AgeGraphGateway
from medgraph_match.repositories import PostgresMatchRecordRepository

TEST_DB_URL = os.getenv("MEDGRAPH_TEST_DB_URL")
TEST_GRAPH_NAME = os.getenv("MEDGRAPH_TEST_GRAPH_NAME", "medgraph_test")


@pytest_asyncio.fixture
async def pool():
    """Connection pool against the live test database."""
    pool = AsyncConnectionPool(TEST_DB_URL, open=False)
    await pool.open()
    try:
        yield pool
    finally:
        await pool.close()


@pytest_asyncio.fixture
async def gateway(pool):
    """Gateway over an empty test graph, cleared again afterwards."""
    gateway = AgeGraphGateway(pool, TEST_GRAPH_NAME)
    await gateway.ensure_graph()
    await clear_graph(gateway)
    yield gateway
    await clear_graph(gateway)


@pytest_asyncio.fixture
async def match_records(pool):
    """Postgres match record store; overrides the in-memory one."""
    repository = PostgresMatchRecordRepository(pool)
    await repository.ensure_schema()
    return repository
