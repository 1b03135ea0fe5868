"""Read-only views of the graph for dashboards and operators."""

import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from .cypher import is_identifier
from .decoder import (
    DecodedVertex,
    client_side_paginate,
    count_by_distinct_type,
    decode_edge,
    decode_vertex,
    edge_row_columns,
    fetch_window,
    read_count,
)
from .exceptions import AgtypeDecodeError, GraphOperationError
from .gateway import AgeGraphGateway

logger = logging.getLogger("medgraph_match")
logger.setLevel(logging.INFO)

MAX_EDGE_LIMIT = 10000


class GraphStatistics(BaseModel):
    exists: bool
    total_vertices: int = 0
    total_edges: int = 0
    vertex_counts: Dict[str, int] = Field(default_factory=dict)
    edge_counts: Dict[str, int] = Field(default_factory=dict)


class GraphNode(BaseModel):
    id: str
    label: str
    type: str
    properties: Dict[str, Any] = Field(default_factory=dict)


class GraphEdge(BaseModel):
    id: str
    source: str
    target: str
    type: str


class GraphView(BaseModel):
    nodes: List[GraphNode] = Field(default_factory=list)
    edges: List[GraphEdge] = Field(default_factory=list)


class HealthStatus(BaseModel):
    status: str
    graph_exists: bool
    vertex_count: Optional[int] = None
    response_time_ms: float
    error: Optional[str] = None


def _check_type_name(type_name: str) -> str:
    if not is_identifier(type_name):
        raise ValueError(f"Invalid vertex or edge type: {type_name!r}")
    return type_name


# (vertex type, natural id)
NodeKey = Tuple[str, str]


def _node_key(vertex: DecodedVertex, fallback_id: str) -> NodeKey:
    return vertex.label or "Unknown", vertex.id or fallback_id


def _node_label(vertex_type: str, properties: Dict[str, Any], fallback: str) -> str:
    for key in ("name", "chiefComplaint", "code", "description"):
        value = properties.get(key)
        if value:
            return str(value)
    return fallback or vertex_type


class GraphExplorer:
    def __init__(self, gateway: AgeGraphGateway):
        self.gateway = gateway

    async def distinct_vertex_types(self) -> List[str]:
        return await self.gateway.execute_and_extract(
            "MATCH (v) RETURN DISTINCT label(v) AS type", None, "type"
        )

    async def distinct_edge_types(self) -> List[str]:
        return await self.gateway.execute_and_extract(
            "MATCH ()-[e]->() RETURN DISTINCT label(e) AS type", None, "type"
        )

    async def count_vertices(self, vertex_type: str) -> Optional[int]:
        try:
            rows = await self.gateway.execute(
                f"MATCH (v:{_check_type_name(vertex_type)}) RETURN count(v) AS cnt"
            )
        except GraphOperationError as e:
            logger.warning(f"Could not count {vertex_type} vertices: {e.get_message()}")
            return None
        return read_count(rows)

    async def count_edges(self, edge_type: str) -> Optional[int]:
        try:
            rows = await self.gateway.execute(
                f"MATCH ()-[e:{_check_type_name(edge_type)}]->() RETURN count(e) AS cnt"
            )
        except GraphOperationError as e:
            logger.warning(f"Could not count {edge_type} edges: {e.get_message()}")
            return None
        return read_count(rows)

    async def get_graph_statistics(self) -> GraphStatistics:
        if not await self.gateway.graph_exists():
            return GraphStatistics(exists=False)
        vertex_counts = await count_by_distinct_type(
            self.distinct_vertex_types, self.count_vertices
        )
        edge_counts = await count_by_distinct_type(self.distinct_edge_types, self.count_edges)
        return GraphStatistics(
            exists=True,
            total_vertices=sum(vertex_counts.values()),
            total_edges=sum(edge_counts.values()),
            vertex_counts=vertex_counts,
            edge_counts=edge_counts,
        )

    async def list_vertices(
        self, limit: int = 100, offset: int = 0, vertex_type: Optional[str] = None
    ) -> List[Optional[str]]:
        """Raw vertex texts ordered by internal id, one page at a time."""
        pattern = f"(v:{_check_type_name(vertex_type)})" if vertex_type else "(v)"
        rows = await self.gateway.execute(
            f"MATCH {pattern} RETURN v AS vertex ORDER BY id(v) LIMIT $limit",
            {"limit": fetch_window(limit, offset)},
        )
        page = client_side_paginate(rows, limit, offset)
        return [row.get("vertex", row.get("c")) for row in page]

    async def get_graph_data(
        self, limit: int = 100, offset: int = 0, vertex_type: Optional[str] = None
    ) -> GraphView:
        """Nodes and edges shaped for graph visualisation.

        A row that cannot be decoded is skipped. A decoded vertex without any
        identifier is shown as ``node_<ordinal>``. Vertices are keyed by type
        and id; when two types share an id, both are shown as ``<type>:<id>``.
        """
        view = GraphView()
        if not await self.gateway.graph_exists():
            return view

        nodes: Dict[NodeKey, GraphNode] = {}

        def _add_node(key: NodeKey, properties: Dict[str, Any]) -> None:
            if key not in nodes:
                nodes[key] = GraphNode(
                    id=key[1],
                    label=_node_label(key[0], properties, key[1]),
                    type=key[0],
                    properties=properties,
                )

        for ordinal, text in enumerate(await self.list_vertices(limit, offset, vertex_type)):
            try:
                vertex = decode_vertex(text)
            except AgtypeDecodeError as e:
                logger.warning(f"Skipping undecodable vertex row {ordinal}: {e}")
                continue
            _add_node(_node_key(vertex, f"node_{ordinal}"), vertex.properties)

        edge_limit = min(limit * 10, MAX_EDGE_LIMIT)
        rows = await self.gateway.execute(
            "MATCH (a)-[e]->(b) RETURN a AS source, e AS edge, b AS target LIMIT $limit",
            {"limit": edge_limit},
        )
        edges: List[Tuple[str, NodeKey, NodeKey, str]] = []
        for index, row in enumerate(rows):
            source_text, edge_text, target_text = edge_row_columns(row)
            try:
                source = decode_vertex(source_text)
                target = decode_vertex(target_text)
                edge = decode_edge(edge_text)
            except AgtypeDecodeError as e:
                logger.warning(f"Skipping undecodable edge row {index}: {e}")
                continue
            if source.id is None or target.id is None:
                continue
            if vertex_type and vertex_type not in (source.label, target.label):
                continue
            source_key = _node_key(source, source.id)
            target_key = _node_key(target, target.id)
            _add_node(source_key, source.properties)
            _add_node(target_key, target.properties)
            edges.append((f"e{index}", source_key, target_key, edge.label or "RELATED_TO"))

        types_per_id: Dict[str, int] = {}
        for _, node_id in nodes:
            types_per_id[node_id] = types_per_id.get(node_id, 0) + 1
        display_ids = {
            key: key[1] if types_per_id[key[1]] == 1 else f"{key[0]}:{key[1]}"
            for key in nodes
        }

        view.nodes = [
            node.model_copy(update={"id": display_ids[key]}) for key, node in nodes.items()
        ]
        view.edges = [
            GraphEdge(
                id=edge_id,
                source=display_ids[source_key],
                target=display_ids[target_key],
                type=edge_type,
            )
            for edge_id, source_key, target_key, edge_type in edges
        ]
        return view

    async def check_health(self) -> HealthStatus:
        started = time.perf_counter()
        try:
            exists = await self.gateway.graph_exists()
            count = None
            if exists:
                count = read_count(
                    await self.gateway.execute("MATCH (n) RETURN count(n) AS cnt")
                )
        except GraphOperationError as e:
            return HealthStatus(
                status="DOWN",
                graph_exists=False,
                response_time_ms=(time.perf_counter() - started) * 1000,
                error=e.get_message(),
            )
        return HealthStatus(
            status="UP" if exists else "DEGRADED",
            graph_exists=exists,
            vertex_count=count,
            response_time_ms=(time.perf_counter() - started) * 1000,
        )
