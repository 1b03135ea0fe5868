from typing import Any, List, Sequence

import pytest

from medgraph_match.builder import RelationalSources
from medgraph_match.matching import MatchingService
from medgraph_match.models import (
    ClinicalExperience,
    Doctor,
    Facility,
    ICD10Code,
    MatchRecord,
    MedicalCase,
    MedicalSpecialty,
)
from medgraph_match.retrieval import SemanticGraphRetrieval
from medgraph_match.signals import RelationshipSignalScorer


class InMemoryDoctors:
    def __init__(self, doctors: Sequence[Doctor]):
        self.doctors = {doctor.id: doctor for doctor in doctors}
        self.find_all_calls = 0

    async def find_by_id(self, doctor_id):
        return self.doctors.get(doctor_id)

    async def find_by_ids(self, doctor_ids):
        return [self.doctors[i] for i in doctor_ids if i in self.doctors]

    async def find_all(self, limit=None):
        self.find_all_calls += 1
        doctors = list(self.doctors.values())
        return doctors if limit is None else doctors[:limit]

    async def find_by_specialty(self, specialty, limit):
        wanted = specialty.lower()
        return [
            d for d in self.doctors.values()
            if wanted in (s.lower() for s in d.specialties)
        ][:limit]

    async def find_by_facility_id(self, facility_id, limit):
        return [d for d in self.doctors.values() if facility_id in d.facility_ids][:limit]


class InMemoryCases:
    def __init__(self, cases: Sequence[MedicalCase], embeddings=None, similarity=None):
        self.cases = {case.id: case for case in cases}
        self.embeddings = set(embeddings or [])
        self.similarity = similarity
        self.find_all_calls = 0

    async def find_by_id(self, case_id):
        return self.cases.get(case_id)

    async def find_all(self):
        self.find_all_calls += 1
        return list(self.cases.values())

    async def has_embedding(self, case_id):
        return case_id in self.embeddings

    async def vector_similarity(self, case_id, other_case_ids):
        return self.similarity


class InMemoryList:
    def __init__(self, items: Sequence[Any]):
        self.items = list(items)
        self.find_all_calls = 0

    async def find_all(self):
        self.find_all_calls += 1
        return list(self.items)


class InMemoryFacilities(InMemoryList):
    async def find_by_id(self, facility_id):
        return next((f for f in self.items if f.id == facility_id), None)


class InMemoryExperiences(InMemoryList):
    async def find_by_doctor_id(self, doctor_id):
        return [e for e in self.items if e.doctor_id == doctor_id]

    async def find_by_doctor_ids(self, doctor_ids):
        return [e for e in self.items if e.doctor_id in set(doctor_ids)]


class InMemoryConsultations:
    def __init__(self, pairs):
        self.pairs = list(pairs)

    async def find_all_pairs(self):
        return list(self.pairs)


class InMemoryMatchRecords:
    def __init__(self):
        self.records: List[MatchRecord] = []
        self.batches = 0

    async def insert_batch(self, records):
        self.batches += 1
        self.records.extend(records)


@pytest.fixture
def doctors():
    return [
        Doctor(
            id="D1",
            name="Dr. Alice Heart",
            email="alice@example.org",
            specialties=["Cardiology"],
            facility_ids=["F1"],
            telehealth_enabled=True,
        ),
        Doctor(
            id="D2",
            name="Dr. Bob Bones",
            email="bob@example.org",
            specialties=["Orthopedics"],
            facility_ids=["F2"],
        ),
    ]


@pytest.fixture
def cases():
    return [
        MedicalCase(
            id="C1",
            chief_complaint="Chest pain",
            urgency_level="HIGH",
            icd10_codes=["I21.9", "I10"],
            required_specialty="Cardiology",
        ),
        MedicalCase(
            id="C2",
            chief_complaint="Knee pain",
            urgency_level="LOW",
            icd10_codes=["M17.0"],
            required_specialty="Orthopedics",
        ),
    ]


@pytest.fixture
def codes():
    return [
        ICD10Code(code="I21.9", description="Acute myocardial infarction, unspecified"),
        ICD10Code(code="I10", description="Essential hypertension"),
    ]


@pytest.fixture
def specialties():
    return [MedicalSpecialty(id="S1", name="Cardiology")]


@pytest.fixture
def facilities():
    return [
        Facility(
            id="F1",
            name="University Hospital",
            facility_type="ACADEMIC",
            capabilities=["cardiology", "icu"],
            capacity=100,
            current_occupancy=50,
        ),
        Facility(
            id="F2",
            name="Town Clinic",
            facility_type="COMMUNITY",
            capabilities=["orthopedics"],
            capacity=20,
            current_occupancy=5,
        ),
    ]


@pytest.fixture
def experiences():
    return [
        ClinicalExperience(id="E1", doctor_id="D1", case_id="C1", outcome="SUCCESS", rating=5),
        ClinicalExperience(id="E2", doctor_id="D2", case_id="C2", outcome="IMPROVED", rating=4),
    ]


@pytest.fixture
def sources(doctors, cases, codes, specialties, facilities, experiences):
    return RelationalSources(
        doctors=InMemoryDoctors(doctors),
        cases=InMemoryCases(cases),
        codes=InMemoryList(codes),
        specialties=InMemoryList(specialties),
        facilities=InMemoryFacilities(facilities),
        experiences=InMemoryExperiences(experiences),
        consultations=InMemoryConsultations([("D2", "C1")]),
    )


@pytest.fixture
def match_records():
    return InMemoryMatchRecords()


@pytest.fixture
def make_retrieval(doctors, cases, experiences):
    """Factory fixture wiring SemanticGraphRetrieval to in-memory sources."""
    def _create(gateway, embeddings=None, similarity=None):
        return SemanticGraphRetrieval(
            gateway,
            RelationshipSignalScorer(gateway),
            InMemoryDoctors(doctors),
            InMemoryCases(cases, embeddings, similarity),
            InMemoryExperiences(experiences),
        )
    return _create


@pytest.fixture
def make_service(make_retrieval, doctors, cases, facilities, match_records):
    """Factory fixture building a MatchingService; reads the fixture lists when called."""
    def _create(gateway, settings=None, **kwargs):
        sources = (
            make_retrieval(gateway, **kwargs),
            InMemoryDoctors(doctors),
            InMemoryCases(cases),
            InMemoryFacilities(facilities),
            match_records,
        )
        if settings is not None:
            return MatchingService.from_settings(*sources, settings)
        return MatchingService(*sources)
    return _create
