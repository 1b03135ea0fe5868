import os

import pytest

from medgraph_match.builder import MedicalGraphBuilder, clear_graph
from medgraph_match.decoder import parse_agtype, read_count
from medgraph_match.explorer import GraphExplorer
from medgraph_match.gateway import AgeGraphGateway
from medgraph_match.models import CaseFacts
from medgraph_match.signals import RelationshipSignalScorer

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        not os.getenv("MEDGRAPH_TEST_DB_URL"),
        reason="MEDGRAPH_TEST_DB_URL is not set",
    ),
]

EXPECTED_VERTICES = {
    "Doctor": 2,
    "Facility": 2,
    # M17.0 and Orthopedics are only referenced, so they are key-only vertices
    "ICD10Code": 3,
    "MedicalCase": 2,
    "MedicalSpecialty": 2,
}

EXPECTED_EDGES = {
    "AFFILIATED_WITH": 2,
    "CONSULTED_ON": 1,
    "HAS_CONDITION": 3,
    "REQUIRES_SPECIALTY": 2,
    "SPECIALIZES_IN": 2,
    "TREATED": 2,
    "TREATS_CONDITION": 3,
}


@pytest.mark.asyncio
async def test_build_graph(gateway, sources):
    """Test a build projects every vertex and edge kind."""
    report = await MedicalGraphBuilder(gateway, sources).build_graph()

    assert report.total_failed == 0
    stats = await GraphExplorer(gateway).get_graph_statistics()
    assert stats.vertex_counts == EXPECTED_VERTICES
    assert stats.edge_counts == EXPECTED_EDGES


@pytest.mark.asyncio
async def test_rebuild_is_idempotent(gateway, sources):
    """Test building twice leaves the same graph."""
    builder = MedicalGraphBuilder(gateway, sources)
    await builder.build_graph()
    first = await GraphExplorer(gateway).get_graph_statistics()

    await builder.build_graph()
    second = await GraphExplorer(gateway).get_graph_statistics()

    assert second == first


@pytest.mark.asyncio
async def test_key_only_vertex_is_upgraded(gateway, sources):
    """Test a later full write fills in a key-only vertex."""
    builder = MedicalGraphBuilder(gateway, sources)
    await builder.build_graph()

    rows = await gateway.execute(
        "MATCH (i:ICD10Code {code: $code}) RETURN i.description AS description",
        {"code": "M17.0"},
    )
    assert parse_agtype(rows[0]["description"]) is None

    await builder.create_icd10_code_vertex(
        sources.codes.items[0].model_copy(update={"code": "M17.0", "description": "Knee arthrosis"})
    )

    description = await gateway.execute_and_extract(
        "MATCH (i:ICD10Code {code: $code}) RETURN i.description AS description",
        {"code": "M17.0"},
        "description",
    )
    assert description == ["Knee arthrosis"]
    stats = await GraphExplorer(gateway).get_graph_statistics()
    assert stats.vertex_counts["ICD10Code"] == 3


@pytest.mark.asyncio
async def test_clear_graph(gateway, sources):
    """Test clearing removes every vertex and edge."""
    await MedicalGraphBuilder(gateway, sources).build_graph()

    assert await clear_graph(gateway) is True

    stats = await GraphExplorer(gateway).get_graph_statistics()
    assert stats.exists is True
    assert stats.total_vertices == 0
    assert stats.total_edges == 0


@pytest.mark.asyncio
async def test_relationship_signals(gateway, sources):
    """Test the signals read from a built graph."""
    await MedicalGraphBuilder(gateway, sources).build_graph()
    facts = CaseFacts(case_id="C1", icd10_codes=["I21.9", "I10"], required_specialty="cardiology")

    signals = await RelationshipSignalScorer(gateway).relationship_signals("D1", facts)

    assert signals.direct == 1.0
    assert signals.condition == 1.0
    assert signals.specialization == 1.0
    # the only case D1 treated is C1 itself
    assert signals.similar == 0.0


@pytest.mark.asyncio
async def test_cardiology_case(gateway, sources, make_service, match_records):
    """Test the cardiology case ranks the cardiologist first and is recorded."""
    await MedicalGraphBuilder(gateway, sources).build_graph()
    service = make_service(gateway)

    matches = await service.match_doctors_to_case("C1")

    assert matches[0].doctor.id == "D1"
    stored = await match_records.find_by_case_id("C1")
    assert any(r.doctor_id == "D1" and r.rank == 1 for r in stored)


@pytest.mark.asyncio
async def test_missing_graph_is_created_on_first_query(pool):
    """Test a query against a missing graph creates it and succeeds."""
    gateway = AgeGraphGateway(pool, "medgraph_test_missing")
    if await gateway.graph_exists():
        await gateway.execute_sql(
            "SELECT * FROM ag_catalog.drop_graph(%(name)s::name, true)",
            {"name": gateway.graph_name},
        )

    try:
        rows = await gateway.execute("MATCH (n) RETURN count(n) AS cnt")
        assert await gateway.graph_exists() is True
        assert read_count(rows) == 0
    finally:
        await gateway.execute_sql(
            "SELECT * FROM ag_catalog.drop_graph(%(name)s::name, true)",
            {"name": gateway.graph_name},
        )
