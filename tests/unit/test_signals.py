import math

import pytest

from medgraph_match.models import CaseFacts
from medgraph_match.signals import (
    NEUTRAL_SCORE,
    RelationshipSignals,
    RelationshipSignalScorer,
    bucket_similar_cases,
    clamp,
)


def counts(table):
    """Responder returning ``table[(fragment, param)]`` as a count row."""

    def _respond(query, params):
        for (fragment, value), count in table.items():
            if fragment in query and value in params.values():
                return [{"cnt": str(count)}]
        return [{"cnt": "0"}]

    return _respond


@pytest.fixture
def facts():
    return CaseFacts(case_id="C1", icd10_codes=["I21.9", "I10"], required_specialty="Cardiology")


class TestBucketSimilarCases:
    """Test dampening of similar-case counts."""

    @pytest.mark.parametrize(
        "count, expected",
        [(0, 0.0), (1, 0.5), (2, 0.75), (5, 0.75), (6, 1.0), (40, 1.0)],
    )
    def test_buckets(self, count, expected):
        """Test each threshold."""
        assert bucket_similar_cases(count) == expected


class TestDirectRelationship:
    """Test TREATED / CONSULTED_ON detection."""

    @pytest.mark.asyncio
    async def test_treated(self, make_gateway, facts):
        """Test a TREATED edge scores 1.0 without checking consultations."""
        gateway = make_gateway(counts({("TREATED", "D1"): 1}))

        score = await RelationshipSignalScorer(gateway).direct_relationship_score("D1", facts)

        assert score == 1.0
        assert len(gateway.queries) == 1

    @pytest.mark.asyncio
    async def test_consulted_on(self, make_gateway, facts):
        """Test a consultation alone is a direct relationship."""
        gateway = make_gateway(counts({("CONSULTED_ON", "D2"): 1}))

        score = await RelationshipSignalScorer(gateway).direct_relationship_score("D2", facts)

        assert score == 1.0
        assert len(gateway.queries) == 2

    @pytest.mark.asyncio
    async def test_no_relationship(self, make_gateway, facts):
        """Test no edges scores 0.0."""
        score = await RelationshipSignalScorer(make_gateway()).direct_relationship_score(
            "D9", facts
        )
        assert score == 0.0


class TestConditionExpertise:
    """Test TREATS_CONDITION coverage."""

    @pytest.mark.asyncio
    async def test_share_of_codes(self, make_gateway, facts):
        """Test one of two codes covered scores 0.5."""
        gateway = make_gateway(counts({("TREATS_CONDITION", "I21.9"): 1}))

        score = await RelationshipSignalScorer(gateway).condition_expertise_score("D1", facts)

        assert score == 0.5
        assert len(gateway.queries) == 2

    @pytest.mark.asyncio
    async def test_duplicate_codes_counted_once(self, make_gateway):
        """Test repeated codes do not skew the share."""
        gateway = make_gateway(counts({("TREATS_CONDITION", "I10"): 1}))
        facts = CaseFacts(case_id="C1", icd10_codes=["I10", "I10"])

        score = await RelationshipSignalScorer(gateway).condition_expertise_score("D1", facts)

        assert score == 1.0
        assert len(gateway.queries) == 1

    @pytest.mark.asyncio
    async def test_case_without_codes_is_neutral(self, make_gateway):
        """Test a case without codes scores 0.5 and runs no query."""
        gateway = make_gateway()

        score = await RelationshipSignalScorer(gateway).condition_expertise_score(
            "D1", CaseFacts(case_id="C9")
        )

        assert score == NEUTRAL_SCORE
        assert gateway.queries == []


class TestSpecializationMatch:
    """Test SPECIALIZES_IN matching."""

    @pytest.mark.asyncio
    async def test_match(self, make_gateway, facts):
        """Test the required specialty is looked up case-insensitively."""
        gateway = make_gateway(counts({("SPECIALIZES_IN", "Cardiology"): 1}))

        score = await RelationshipSignalScorer(gateway).specialization_match_score("D1", facts)

        assert score == 1.0
        query, params = gateway.queries[0]
        assert "toLower" in query
        assert params == {"doctorId": "D1", "specialty": "Cardiology"}

    @pytest.mark.asyncio
    async def test_no_match(self, make_gateway, facts):
        """Test a doctor in another specialty scores 0.0."""
        score = await RelationshipSignalScorer(make_gateway()).specialization_match_score(
            "D2", facts
        )
        assert score == 0.0

    @pytest.mark.asyncio
    async def test_no_required_specialty_is_neutral(self, make_gateway):
        """Test a case without a required specialty scores 0.5."""
        score = await RelationshipSignalScorer(make_gateway()).specialization_match_score(
            "D1", CaseFacts(case_id="C1", icd10_codes=["I10"])
        )
        assert score == NEUTRAL_SCORE


class TestSimilarCases:
    """Test similar-case history."""

    @pytest.mark.asyncio
    async def test_maximum_over_codes_is_bucketed(self, make_gateway, facts):
        """Test three similar cases for one code scores 0.75."""
        gateway = make_gateway(counts({("HAS_CONDITION", "I21.9"): 3}))

        score = await RelationshipSignalScorer(gateway).similar_cases_score("D1", facts)

        assert score == 0.75
        for query, params in gateway.queries:
            assert "c.id <> $caseId" in query
            assert params["caseId"] == "C1"

    @pytest.mark.asyncio
    async def test_case_without_codes_is_neutral(self, make_gateway):
        """Test a case without codes scores 0.5."""
        score = await RelationshipSignalScorer(make_gateway()).similar_cases_score(
            "D1", CaseFacts(case_id="C1")
        )
        assert score == NEUTRAL_SCORE


class TestClamp:
    """Test bounding of scores to [0, 1]."""

    @pytest.mark.parametrize(
        "value, expected", [(-0.5, 0.0), (0.3, 0.3), (1.7, 1.0), (math.nan, 0.0)]
    )
    def test_clamp(self, value, expected):
        assert clamp(value) == expected


class TestCombinedSignals:
    """Test the weighted combination."""

    def test_weights(self):
        """Test 0.4 direct + 0.25 condition + 0.25 specialization + 0.1 similar."""
        signals = RelationshipSignals(
            direct=1.0, condition=0.5, specialization=0.0, similar=0.75
        )
        assert signals.combined() == pytest.approx(0.6)

    @pytest.mark.asyncio
    async def test_all_signals(self, make_gateway, facts):
        """Test a doctor matching on every signal scores 1.0."""
        gateway = make_gateway(
            counts(
                {
                    ("TREATED]->(c:MedicalCase {id: $caseId})", "D1"): 1,
                    ("TREATS_CONDITION", "D1"): 1,
                    ("SPECIALIZES_IN", "D1"): 1,
                    ("HAS_CONDITION", "D1"): 7,
                }
            )
        )

        signals = await RelationshipSignalScorer(gateway).relationship_signals("D1", facts)

        assert signals == RelationshipSignals(
            direct=1.0, condition=1.0, specialization=1.0, similar=1.0
        )
        assert signals.combined() == pytest.approx(1.0)
