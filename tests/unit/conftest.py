from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

Responder = Callable[[str, Dict[str, Any]], List[Dict[str, Any]]]


class RecordingGateway:
    """Stands in for AgeGraphGateway; records every query it is given."""

    def __init__(
        self,
        responder: Optional[Responder] = None,
        exists: bool = True,
        graph_name: str = "test_graph",
    ):
        self.graph_name = graph_name
        self.exists = exists
        self.responder = responder or (lambda query, params: [])
        self.queries: List[Tuple[str, Dict[str, Any]]] = []
        self.sql: List[Tuple[Any, Optional[Dict[str, Any]]]] = []
        self.ensure_calls = 0

    async def graph_exists(self) -> bool:
        return self.exists

    async def ensure_graph(self) -> None:
        self.ensure_calls += 1
        self.exists = True

    async def execute(self, query: str, params: Optional[Dict[str, Any]] = None):
        params = params or {}
        self.queries.append((query, params))
        return self.responder(query, params)

    async def execute_and_extract(self, query, params, field):
        values = []
        for row in await self.execute(query, params):
            value = row.get(field)
            if value is not None and value not in values:
                values.append(value.strip('"'))
        return values

    async def execute_sql(self, statement, params=None):
        self.sql.append((statement, params))
        return [{"present": True}]

    def queries_containing(self, fragment: str) -> List[Tuple[str, Dict[str, Any]]]:
        return [(q, p) for q, p in self.queries if fragment in q]


@pytest.fixture
def make_gateway():
    """Factory fixture building a RecordingGateway around a responder."""
    def _create(responder: Optional[Responder] = None, exists: bool = True):
        return RecordingGateway(responder, exists=exists)
    return _create
