import asyncio
import logging
import math
from typing import List, Sequence, Tuple

from pydantic import BaseModel

from .decoder import read_count
from .gateway import AgeGraphGateway
from .models import CaseFacts, EdgeKind

logger = logging.getLogger("medgraph_match")
logger.setLevel(logging.INFO)

NEUTRAL_SCORE = 0.5

# (minimum similar-case count, score), highest threshold first. These cut-offs
# are tunable heuristics; a count below every threshold scores 0.0.
SIMILAR_CASE_BUCKETS: Tuple[Tuple[int, float], ...] = ((6, 1.0), (2, 0.75), (1, 0.5))

SIGNAL_WEIGHTS = {
    "direct": 0.4,
    "condition": 0.25,
    "specialization": 0.25,
    "similar": 0.1,
}

DIRECT_EDGE_QUERY = """
MATCH (d:Doctor {{id: $doctorId}})-[r:{edge}]->(c:MedicalCase {{id: $caseId}})
RETURN count(r) AS cnt
"""

TREATS_CONDITION_QUERY = """
MATCH (d:Doctor {id: $doctorId})-[:TREATS_CONDITION]->(i:ICD10Code {code: $code})
RETURN count(i) AS cnt
"""

SPECIALIZES_IN_QUERY = """
MATCH (d:Doctor {id: $doctorId})-[:SPECIALIZES_IN]->(s:MedicalSpecialty)
WHERE toLower(s.name) = toLower($specialty)
RETURN count(s) AS cnt
"""

SIMILAR_CASES_QUERY = """
MATCH (d:Doctor {id: $doctorId})-[:TREATED]->(c:MedicalCase)-[:HAS_CONDITION]->(i:ICD10Code {code: $code})
WHERE c.id <> $caseId
RETURN count(c) AS cnt
"""


def bucket_similar_cases(count: int) -> float:
    """Dampen a similar-case count into 0.0 / 0.5 / 0.75 / 1.0."""
    for threshold, score in SIMILAR_CASE_BUCKETS:
        if count >= threshold:
            return score
    return 0.0


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    """Bound ``value`` to [low, high]; NaN maps to ``low``."""
    if math.isnan(value):
        return low
    return max(low, min(high, value))


class RelationshipSignals(BaseModel):
    direct: float
    condition: float
    specialization: float
    similar: float

    def combined(self) -> float:
        return clamp(
            SIGNAL_WEIGHTS["direct"] * self.direct
            + SIGNAL_WEIGHTS["condition"] * self.condition
            + SIGNAL_WEIGHTS["specialization"] * self.specialization
            + SIGNAL_WEIGHTS["similar"] * self.similar
        )


class RelationshipSignalScorer:
    """Graph relationship signals for a doctor/case pair, each in [0, 1]."""

    def __init__(self, gateway: AgeGraphGateway):
        self.gateway = gateway

    async def _count(self, query: str, **params) -> int:
        return read_count(await self.gateway.execute(query, params))

    async def direct_relationship_score(self, doctor_id: str, facts: CaseFacts) -> float:
        """1.0 if the doctor treated or consulted on the case, else 0.0."""
        for edge in (EdgeKind.TREATED, EdgeKind.CONSULTED_ON):
            count = await self._count(
                DIRECT_EDGE_QUERY.format(edge=edge.value),
                doctorId=doctor_id,
                caseId=facts.case_id,
            )
            if count > 0:
                return 1.0
        return 0.0

    async def condition_expertise_score(self, doctor_id: str, facts: CaseFacts) -> float:
        """Share of the case's codes the doctor has a TREATS_CONDITION edge to."""
        codes = _unique(facts.icd10_codes)
        if not codes:
            return NEUTRAL_SCORE
        counts = await asyncio.gather(
            *(
                self._count(TREATS_CONDITION_QUERY, doctorId=doctor_id, code=code)
                for code in codes
            )
        )
        matched = sum(1 for count in counts if count > 0)
        return matched / len(codes)

    async def specialization_match_score(self, doctor_id: str, facts: CaseFacts) -> float:
        if not facts.required_specialty:
            return NEUTRAL_SCORE
        count = await self._count(
            SPECIALIZES_IN_QUERY, doctorId=doctor_id, specialty=facts.required_specialty
        )
        return 1.0 if count > 0 else 0.0

    async def similar_cases_score(self, doctor_id: str, facts: CaseFacts) -> float:
        """Bucketed maximum, over the case's codes, of other treated cases with that code."""
        codes = _unique(facts.icd10_codes)
        if not codes:
            return NEUTRAL_SCORE
        counts = await asyncio.gather(
            *(
                self._count(
                    SIMILAR_CASES_QUERY, doctorId=doctor_id, code=code, caseId=facts.case_id
                )
                for code in codes
            )
        )
        return bucket_similar_cases(max(counts))

    async def relationship_signals(
        self, doctor_id: str, facts: CaseFacts
    ) -> RelationshipSignals:
        direct, condition, specialization, similar = await asyncio.gather(
            self.direct_relationship_score(doctor_id, facts),
            self.condition_expertise_score(doctor_id, facts),
            self.specialization_match_score(doctor_id, facts),
            self.similar_cases_score(doctor_id, facts),
        )
        signals = RelationshipSignals(
            direct=direct,
            condition=condition,
            specialization=specialization,
            similar=similar,
        )
        logger.debug(f"Relationship signals for doctor {doctor_id}, case {facts.case_id}: {signals}")
        return signals


def _unique(values: Sequence[str]) -> List[str]:
    seen = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen
