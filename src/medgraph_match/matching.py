import asyncio
import logging
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, Tuple, TypeVar, Union

from .exceptions import NotFoundError, PartialFailure
from .models import (
    Doctor,
    DoctorMatch,
    Facility,
    FacilityMatch,
    MatchOptions,
    MatchRecord,
    MedicalCase,
    PriorityScore,
    RouteScoreResult,
    RoutingOptions,
    ScoreResult,
)
from .repositories import (
    DoctorRepository,
    FacilityRepository,
    MatchRecordRepository,
    MedicalCaseRepository,
)
from .retrieval import SemanticGraphRetrieval, case_facility_distance_km
from .settings import GraphSettings

logger = logging.getLogger("medgraph_match")
logger.setLevel(logging.INFO)

C = TypeVar("C")
S = TypeVar("S")

MIN_SPECIALTY_CANDIDATES = 10


def _normalize(values: Iterable[Optional[str]]) -> set:
    return {value.strip().lower() for value in values if value and value.strip()}


def _candidate_cap(max_results: int) -> int:
    return max(max_results * 2, MIN_SPECIALTY_CANDIDATES)


def doctor_passes_filters(doctor: Doctor, options: MatchOptions) -> bool:
    """Hard filters; a doctor failing any of them is excluded, never down-scored."""
    if options.require_telehealth and not doctor.telehealth_enabled:
        return False
    if options.preferred_facility_ids:
        if not set(options.preferred_facility_ids) & set(doctor.facility_ids):
            return False
    if options.preferred_specialties:
        if not _normalize(options.preferred_specialties) & _normalize(doctor.specialties):
            return False
    return True


def facility_passes_filters(
    facility: Facility, case: MedicalCase, options: RoutingOptions
) -> bool:
    if options.preferred_facility_types:
        if (facility.facility_type or "").strip().lower() not in _normalize(
            options.preferred_facility_types
        ):
            return False
    if options.required_capabilities:
        if not _normalize(options.required_capabilities) <= _normalize(facility.capabilities):
            return False
    if options.max_distance_km is not None:
        distance = case_facility_distance_km(case, facility)
        if distance is not None and distance > options.max_distance_km:
            return False
    return True


def rank_scored(
    scored: Sequence[Tuple[C, S]],
    score_of: Callable[[S], float],
    id_of: Callable[[C], str],
    min_score: Optional[float],
    max_results: int,
) -> List[Tuple[C, S]]:
    """Drop scores under ``min_score``, sort by score then id, truncate."""
    kept = [
        (candidate, result)
        for candidate, result in scored
        if min_score is None or score_of(result) >= min_score
    ]
    kept.sort(key=lambda pair: (-score_of(pair[1]), id_of(pair[0])))
    return kept[:max_results]


class MatchingService:
    """Ranks doctors and facilities for a case and records each ranking."""

    def __init__(
        self,
        retrieval: SemanticGraphRetrieval,
        doctors: DoctorRepository,
        cases: MedicalCaseRepository,
        facilities: FacilityRepository,
        match_records: MatchRecordRepository,
        candidate_limit: int = 500,
        scoring_concurrency: int = 8,
    ):
        self.retrieval = retrieval
        self.doctors = doctors
        self.cases = cases
        self.facilities = facilities
        self.match_records = match_records
        self.candidate_limit = candidate_limit
        self.scoring_concurrency = scoring_concurrency

    @classmethod
    def from_settings(
        cls,
        retrieval: SemanticGraphRetrieval,
        doctors: DoctorRepository,
        cases: MedicalCaseRepository,
        facilities: FacilityRepository,
        match_records: MatchRecordRepository,
        settings: GraphSettings,
    ) -> "MatchingService":
        return cls(
            retrieval,
            doctors,
            cases,
            facilities,
            match_records,
            candidate_limit=settings.candidate_limit,
            scoring_concurrency=settings.scoring_concurrency,
        )

    async def _load_case(self, case_id: str) -> MedicalCase:
        if case_id is None or not case_id.strip():
            raise ValueError("case_id must not be blank")
        case = await self.cases.find_by_id(case_id.strip())
        if case is None:
            raise NotFoundError("MedicalCase", case_id)
        return case

    async def _score_all(
        self,
        candidates: Sequence[C],
        score: Callable[[C], Awaitable[S]],
        id_of: Callable[[C], str],
    ) -> List[Tuple[C, S]]:
        """Score candidates concurrently; failed candidates are logged and dropped."""
        semaphore = asyncio.Semaphore(self.scoring_concurrency)

        async def _score_one(candidate: C) -> Union[Tuple[C, S], PartialFailure]:
            async with semaphore:
                try:
                    return candidate, await score(candidate)
                except Exception as e:
                    return PartialFailure(id_of(candidate), e)

        scored = []
        for outcome in await asyncio.gather(*(_score_one(c) for c in candidates)):
            if isinstance(outcome, PartialFailure):
                logger.warning(f"Excluding candidate after scoring failure {outcome}")
            else:
                scored.append(outcome)
        return scored

    # Doctors

    async def _doctor_candidates(self, case: MedicalCase, options: MatchOptions) -> List[Doctor]:
        if options.preferred_specialties:
            candidates = []
            for specialty in options.preferred_specialties:
                candidates.extend(
                    await self.doctors.find_by_specialty(
                        specialty, _candidate_cap(options.max_results)
                    )
                )
        elif case.required_specialty:
            candidates = await self.doctors.find_by_specialty(
                case.required_specialty, self.candidate_limit
            )
        else:
            candidates = await self.doctors.find_all(self.candidate_limit)

        unique = {}
        for doctor in candidates:
            unique.setdefault(doctor.id, doctor)
        return list(unique.values())

    async def match_doctors_to_case(
        self, case_id: str, options: Optional[MatchOptions] = None
    ) -> List[DoctorMatch]:
        options = options or MatchOptions()
        case = await self._load_case(case_id)

        candidates = [
            doctor
            for doctor in await self._doctor_candidates(case, options)
            if doctor_passes_filters(doctor, options)
        ]
        logger.info(f"Scoring {len(candidates)} doctor candidates for case {case.id}")

        scored = await self._score_all(
            candidates, lambda doctor: self.retrieval.score(case, doctor), lambda d: d.id
        )
        ranked = rank_scored(
            scored,
            lambda result: result.overall_score,
            lambda doctor: doctor.id,
            options.min_score,
            options.max_results,
        )

        matches = [
            DoctorMatch(
                doctor=doctor,
                score=result.overall_score,
                rank=rank,
                rationale=result.rationale,
                breakdown=result,
            )
            for rank, (doctor, result) in enumerate(ranked, start=1)
        ]
        await self.match_records.insert_batch(
            [
                MatchRecord(
                    case_id=case.id,
                    doctor_id=match.doctor.id,
                    score=match.score,
                    rationale=match.rationale,
                    rank=match.rank,
                )
                for match in matches
            ]
        )
        logger.info(f"Matched {len(matches)} doctors to case {case.id}")
        return matches

    async def score_doctor(self, case_id: str, doctor_id: str) -> ScoreResult:
        case = await self._load_case(case_id)
        doctor = await self.doctors.find_by_id(doctor_id)
        if doctor is None:
            raise NotFoundError("Doctor", doctor_id)
        return await self.retrieval.score(case, doctor)

    # Facilities

    async def _facility_candidates(self, options: RoutingOptions) -> List[Facility]:
        facilities = await self.facilities.find_all()
        if (
            not options.preferred_facility_types
            and not options.required_capabilities
            and options.max_distance_km is None
        ):
            return facilities[:_candidate_cap(options.max_results)]
        return facilities

    async def match_facilities_for_case(
        self, case_id: str, options: Optional[RoutingOptions] = None
    ) -> List[FacilityMatch]:
        options = options or RoutingOptions()
        case = await self._load_case(case_id)

        candidates = [
            facility
            for facility in await self._facility_candidates(options)
            if facility_passes_filters(facility, case, options)
        ]
        logger.info(f"Scoring {len(candidates)} facility candidates for case {case.id}")

        scored = await self._score_all(
            candidates,
            lambda facility: self.retrieval.route_score(case, facility, options.max_distance_km),
            lambda f: f.id,
        )
        ranked = rank_scored(
            scored,
            lambda result: result.overall_score,
            lambda facility: facility.id,
            options.min_score,
            options.max_results,
        )

        matches = [
            FacilityMatch(
                facility=facility,
                score=result.overall_score,
                rank=rank,
                rationale=result.rationale,
                breakdown=result,
            )
            for rank, (facility, result) in enumerate(ranked, start=1)
        ]
        await self.match_records.insert_batch(
            [
                MatchRecord(
                    case_id=case.id,
                    facility_id=match.facility.id,
                    score=match.score,
                    rationale=match.rationale,
                    rank=match.rank,
                )
                for match in matches
            ]
        )
        logger.info(f"Routed case {case.id} to {len(matches)} facilities")
        return matches

    async def route_facility(self, case_id: str, facility_id: str) -> RouteScoreResult:
        case = await self._load_case(case_id)
        facility = await self.facilities.find_by_id(facility_id)
        if facility is None:
            raise NotFoundError("Facility", facility_id)
        return await self.retrieval.route_score(case, facility)

    async def prioritize_case(self, case_id: str) -> PriorityScore:
        case = await self._load_case(case_id)
        return self.retrieval.priority_score(case)
