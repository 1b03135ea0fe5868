"""Per-candidate composite scores on a 0-100 scale.

Doctor score = 100 * (0.4 vector + 0.3 graph + 0.3 historical)
Route score  = 100 * (0.3 complexity + 0.3 outcomes + 0.2 capacity + 0.2 geography)
"""

import logging
import math
from typing import Optional, Sequence

from .gateway import AgeGraphGateway
from .models import (
    CaseFacts,
    ClinicalExperience,
    Doctor,
    Facility,
    MedicalCase,
    PriorityScore,
    RouteScoreResult,
    ScoreResult,
    UrgencyLevel,
)
from .repositories import (
    ClinicalExperienceRepository,
    DoctorRepository,
    MedicalCaseRepository,
)
from .signals import NEUTRAL_SCORE, RelationshipSignalScorer, clamp

logger = logging.getLogger("medgraph_match")
logger.setLevel(logging.INFO)

VECTOR_WEIGHT = 0.4
GRAPH_WEIGHT = 0.3
HISTORICAL_WEIGHT = 0.3

COMPLEXITY_WEIGHT = 0.3
OUTCOMES_WEIGHT = 0.3
CAPACITY_WEIGHT = 0.2
GEOGRAPHIC_WEIGHT = 0.2

# Floor used when a doctor has no history or the case has no embedding.
NO_EVIDENCE_SCORE = 0.1
DEFAULT_RATING = 2.5
SUCCESSFUL_OUTCOMES = ("SUCCESS", "IMPROVED")
FACILITY_DOCTOR_LIMIT = 500
DEFAULT_REFERENCE_DISTANCE_KM = 500.0
EARTH_RADIUS_KM = 6371.0

URGENCY_SCORES = {
    UrgencyLevel.CRITICAL: 1.0,
    UrgencyLevel.HIGH: 0.75,
    UrgencyLevel.MEDIUM: 0.5,
    UrgencyLevel.LOW: 0.25,
}


def historical_performance(experiences: Sequence[ClinicalExperience]) -> Optional[float]:
    """0.6 * normalized average rating + 0.4 * success rate, None without history."""
    if not experiences:
        return None
    ratings = [e.rating for e in experiences if e.rating is not None]
    average_rating = sum(ratings) / len(ratings) if ratings else DEFAULT_RATING
    normalized_rating = (average_rating - 1.0) / 4.0
    successes = sum(
        1 for e in experiences if (e.outcome or "").upper() in SUCCESSFUL_OUTCOMES
    )
    success_rate = successes / len(experiences)
    return clamp(0.6 * normalized_rating + 0.4 * success_rate)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def case_facility_distance_km(case: MedicalCase, facility: Facility) -> Optional[float]:
    """Distance between case and facility, None if either is not located."""
    if None in (case.latitude, case.longitude, facility.latitude, facility.longitude):
        return None
    return haversine_km(case.latitude, case.longitude, facility.latitude, facility.longitude)


def complexity_match_score(case: MedicalCase, facility: Facility) -> float:
    if not case.required_specialty or not facility.capabilities:
        return NEUTRAL_SCORE
    specialty = case.required_specialty.lower()
    for capability in facility.capabilities:
        if capability and capability.lower() in specialty:
            return 1.0
    return NEUTRAL_SCORE


def capacity_score(facility: Facility) -> float:
    if not facility.capacity:
        return NEUTRAL_SCORE
    if facility.current_occupancy is None:
        return 1.0
    return clamp(1.0 - facility.current_occupancy / facility.capacity)


def geographic_score(
    case: MedicalCase, facility: Facility, reference_km: Optional[float] = None
) -> float:
    distance = case_facility_distance_km(case, facility)
    if distance is None:
        return NEUTRAL_SCORE
    reference = reference_km or DEFAULT_REFERENCE_DISTANCE_KM
    return clamp(1.0 - distance / reference)


def urgency_score(case: MedicalCase) -> float:
    if case.urgency_level is None:
        return NEUTRAL_SCORE
    return URGENCY_SCORES.get(case.urgency_level, NEUTRAL_SCORE)


class SemanticGraphRetrieval:
    """Scores one doctor or facility against one case."""

    def __init__(
        self,
        gateway: AgeGraphGateway,
        signals: RelationshipSignalScorer,
        doctors: DoctorRepository,
        cases: MedicalCaseRepository,
        experiences: ClinicalExperienceRepository,
    ):
        self.gateway = gateway
        self.signals = signals
        self.doctors = doctors
        self.cases = cases
        self.experiences = experiences

    async def vector_similarity_score(
        self, case: MedicalCase, experiences: Sequence[ClinicalExperience]
    ) -> float:
        if not experiences or not await self.cases.has_embedding(case.id):
            return NO_EVIDENCE_SCORE
        other_case_ids = sorted({e.case_id for e in experiences if e.case_id != case.id})
        if not other_case_ids:
            return NO_EVIDENCE_SCORE
        similarity = await self.cases.vector_similarity(case.id, other_case_ids)
        if similarity is None or math.isnan(similarity):
            return NO_EVIDENCE_SCORE
        return clamp(similarity)

    async def graph_relationship_score(self, doctor_id: str, case: MedicalCase) -> float:
        if not await self.gateway.graph_exists():
            logger.warning(
                f"Graph '{self.gateway.graph_name}' does not exist, graph score is 0"
            )
            return 0.0
        signals = await self.signals.relationship_signals(doctor_id, CaseFacts.from_case(case))
        return signals.combined()

    async def score(self, case: MedicalCase, doctor: Doctor) -> ScoreResult:
        experiences = await self.experiences.find_by_doctor_id(doctor.id)
        vector = await self.vector_similarity_score(case, experiences)
        graph = await self.graph_relationship_score(doctor.id, case)
        historical = historical_performance(experiences)
        if historical is None:
            historical = NO_EVIDENCE_SCORE

        overall = 100.0 * (
            VECTOR_WEIGHT * vector + GRAPH_WEIGHT * graph + HISTORICAL_WEIGHT * historical
        )
        rationale = (
            f"Overall score {overall:.1f}: vector similarity {vector:.2f} "
            f"(weight {VECTOR_WEIGHT}), graph relationships {graph:.2f} "
            f"(weight {GRAPH_WEIGHT}), historical performance {historical:.2f} "
            f"(weight {HISTORICAL_WEIGHT}) over {len(experiences)} past cases"
        )
        return ScoreResult(
            overall_score=overall,
            vector_similarity_score=vector,
            graph_relationship_score=graph,
            historical_performance_score=historical,
            rationale=rationale,
        )

    async def facility_outcomes_score(self, facility: Facility) -> float:
        doctors = await self.doctors.find_by_facility_id(facility.id, FACILITY_DOCTOR_LIMIT)
        if not doctors:
            return NEUTRAL_SCORE
        experiences = await self.experiences.find_by_doctor_ids([d.id for d in doctors])
        outcomes = historical_performance(experiences)
        return NEUTRAL_SCORE if outcomes is None else outcomes

    async def route_score(
        self,
        case: MedicalCase,
        facility: Facility,
        reference_km: Optional[float] = None,
    ) -> RouteScoreResult:
        complexity = complexity_match_score(case, facility)
        outcomes = await self.facility_outcomes_score(facility)
        capacity = capacity_score(facility)
        geographic = geographic_score(case, facility, reference_km)

        overall = 100.0 * (
            COMPLEXITY_WEIGHT * complexity
            + OUTCOMES_WEIGHT * outcomes
            + CAPACITY_WEIGHT * capacity
            + GEOGRAPHIC_WEIGHT * geographic
        )
        rationale = (
            f"Route score {overall:.1f}: complexity match {complexity:.2f}, "
            f"historical outcomes {outcomes:.2f}, capacity {capacity:.2f}, "
            f"geographic proximity {geographic:.2f}"
        )
        return RouteScoreResult(
            overall_score=overall,
            complexity_match_score=complexity,
            historical_outcomes_score=outcomes,
            capacity_score=capacity,
            geographic_score=geographic,
            rationale=rationale,
        )

    def priority_score(self, case: MedicalCase) -> PriorityScore:
        urgency = urgency_score(case)
        # complexity follows urgency until case complexity is modelled
        complexity = urgency
        availability = NEUTRAL_SCORE
        priority = 100.0 * (0.5 * urgency + 0.3 * complexity + 0.2 * availability)
        urgency_name = case.urgency_level.value if case.urgency_level else "UNSPECIFIED"
        return PriorityScore(
            priority_score=priority,
            urgency_score=urgency,
            complexity_score=complexity,
            availability_score=availability,
            rationale=(
                f"Priority {priority:.1f} for {urgency_name} urgency: "
                f"urgency {urgency:.2f}, complexity {complexity:.2f}, "
                f"availability {availability:.2f}"
            ),
        )
