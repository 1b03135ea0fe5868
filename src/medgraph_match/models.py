import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


# Relational records consumed by the ETL and the ranking service


class UrgencyLevel(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class CaseType(str, Enum):
    INPATIENT = "INPATIENT"
    SECOND_OPINION = "SECOND_OPINION"
    CONSULT_REQUEST = "CONSULT_REQUEST"


class FacilityType(str, Enum):
    ACADEMIC = "ACADEMIC"
    COMMUNITY = "COMMUNITY"
    SPECIALTY_CENTER = "SPECIALTY_CENTER"


class Doctor(BaseModel):
    """A doctor as stored in the relational source."""

    id: str = Field(min_length=1)
    name: str
    email: Optional[str] = None
    specialties: List[str] = Field(default_factory=list)
    certifications: List[str] = Field(default_factory=list)
    facility_ids: List[str] = Field(default_factory=list)
    telehealth_enabled: bool = False
    availability_status: Optional[str] = None


class MedicalCase(BaseModel):
    """A clinical case awaiting a doctor or facility.

    ``latitude``/``longitude`` locate the patient or referring site and are
    only used for distance filtering and geographic proximity.
    """

    id: str = Field(min_length=1)
    patient_age: Optional[int] = None
    chief_complaint: Optional[str] = None
    symptoms: Optional[str] = None
    current_diagnosis: Optional[str] = None
    icd10_codes: List[str] = Field(default_factory=list)
    snomed_codes: List[str] = Field(default_factory=list)
    urgency_level: Optional[UrgencyLevel] = None
    required_specialty: Optional[str] = None
    case_type: Optional[CaseType] = None
    additional_notes: Optional[str] = None
    abstract_text: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class ICD10Code(BaseModel):
    id: Optional[str] = None
    code: str = Field(min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    parent_code: Optional[str] = None
    related_codes: List[str] = Field(default_factory=list)


class MedicalSpecialty(BaseModel):
    id: Optional[str] = None
    name: str = Field(min_length=1)
    normalized_name: Optional[str] = None
    description: Optional[str] = None
    icd10_code_ranges: List[str] = Field(default_factory=list)
    related_specialty_ids: List[str] = Field(default_factory=list)


class Facility(BaseModel):
    id: str = Field(min_length=1)
    name: str
    facility_type: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    capabilities: List[str] = Field(default_factory=list)
    capacity: Optional[int] = None
    current_occupancy: Optional[int] = None


class ClinicalExperience(BaseModel):
    """A past encounter linking a doctor to a case, with its outcome."""

    id: str
    doctor_id: str
    case_id: str
    procedures: List[str] = Field(default_factory=list)
    complexity_level: Optional[str] = None
    outcome: Optional[str] = None
    complications: List[str] = Field(default_factory=list)
    time_to_resolution: Optional[int] = None
    rating: Optional[int] = Field(default=None, ge=1, le=5)


# Graph vertices: one statically typed property model per vertex kind


class VertexKind(str, Enum):
    DOCTOR = "Doctor"
    MEDICAL_CASE = "MedicalCase"
    ICD10_CODE = "ICD10Code"
    MEDICAL_SPECIALTY = "MedicalSpecialty"
    FACILITY = "Facility"

    @property
    def label(self) -> str:
        return self.value

    @property
    def natural_key(self) -> str:
        return _NATURAL_KEYS[self]


_NATURAL_KEYS = {
    VertexKind.DOCTOR: "id",
    VertexKind.MEDICAL_CASE: "id",
    VertexKind.ICD10_CODE: "code",
    VertexKind.MEDICAL_SPECIALTY: "name",
    VertexKind.FACILITY: "id",
}


class GraphVertex(BaseModel):
    """Base for vertex property models.

    Subclasses declare ``kind`` and map their fields to graph property names
    in ``graph_properties``. The natural key is never part of the SET list.
    """

    kind: VertexKind

    def key_value(self) -> str:
        raise NotImplementedError

    def graph_properties(self) -> Dict[str, Any]:
        raise NotImplementedError

    def settable_properties(self) -> Dict[str, Any]:
        """Non-null properties other than the natural key."""
        key = self.kind.natural_key
        return {
            name: value
            for name, value in self.graph_properties().items()
            if name != key and value is not None
        }

    @property
    def is_degraded(self) -> bool:
        return False


class DoctorVertex(GraphVertex):
    kind: VertexKind = VertexKind.DOCTOR
    id: str = Field(min_length=1)
    name: Optional[str] = None
    email: Optional[str] = None

    def key_value(self) -> str:
        return self.id

    def graph_properties(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "email": self.email}


class MedicalCaseVertex(GraphVertex):
    kind: VertexKind = VertexKind.MEDICAL_CASE
    id: str = Field(min_length=1)
    chief_complaint: Optional[str] = None
    urgency_level: Optional[str] = None

    def key_value(self) -> str:
        return self.id

    def graph_properties(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "chiefComplaint": self.chief_complaint,
            "urgencyLevel": self.urgency_level,
        }


class ICD10CodeVertex(GraphVertex):
    """ICD-10 code vertex; ``description`` is None on a degraded vertex."""

    kind: VertexKind = VertexKind.ICD10_CODE
    code: str = Field(min_length=1)
    description: Optional[str] = None

    @property
    def is_degraded(self) -> bool:
        return self.description is None

    def key_value(self) -> str:
        return self.code

    def graph_properties(self) -> Dict[str, Any]:
        return {"code": self.code, "description": self.description}


class MedicalSpecialtyVertex(GraphVertex):
    """Specialty vertex keyed by name; ``id`` is None on a degraded vertex."""

    kind: VertexKind = VertexKind.MEDICAL_SPECIALTY
    name: str = Field(min_length=1)
    id: Optional[str] = None

    @property
    def is_degraded(self) -> bool:
        return self.id is None

    def key_value(self) -> str:
        return self.name

    def graph_properties(self) -> Dict[str, Any]:
        return {"name": self.name, "id": self.id}


class FacilityVertex(GraphVertex):
    kind: VertexKind = VertexKind.FACILITY
    id: str = Field(min_length=1)
    name: Optional[str] = None
    facility_type: Optional[str] = None

    def key_value(self) -> str:
        return self.id

    def graph_properties(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "facilityType": self.facility_type}


# Graph edges


class EdgeKind(str, Enum):
    TREATED = "TREATED"
    CONSULTED_ON = "CONSULTED_ON"
    SPECIALIZES_IN = "SPECIALIZES_IN"
    TREATS_CONDITION = "TREATS_CONDITION"
    HAS_CONDITION = "HAS_CONDITION"
    REQUIRES_SPECIALTY = "REQUIRES_SPECIALTY"
    AFFILIATED_WITH = "AFFILIATED_WITH"

    @property
    def source(self) -> VertexKind:
        return _EDGE_ENDPOINTS[self][0]

    @property
    def target(self) -> VertexKind:
        return _EDGE_ENDPOINTS[self][1]


_EDGE_ENDPOINTS = {
    EdgeKind.TREATED: (VertexKind.DOCTOR, VertexKind.MEDICAL_CASE),
    EdgeKind.CONSULTED_ON: (VertexKind.DOCTOR, VertexKind.MEDICAL_CASE),
    EdgeKind.SPECIALIZES_IN: (VertexKind.DOCTOR, VertexKind.MEDICAL_SPECIALTY),
    EdgeKind.TREATS_CONDITION: (VertexKind.DOCTOR, VertexKind.ICD10_CODE),
    EdgeKind.HAS_CONDITION: (VertexKind.MEDICAL_CASE, VertexKind.ICD10_CODE),
    EdgeKind.REQUIRES_SPECIALTY: (VertexKind.MEDICAL_CASE, VertexKind.MEDICAL_SPECIALTY),
    EdgeKind.AFFILIATED_WITH: (VertexKind.DOCTOR, VertexKind.FACILITY),
}


# Matching inputs and outputs


class CaseFacts(BaseModel):
    """The parts of a case the relationship signals depend on."""

    case_id: str
    icd10_codes: List[str] = Field(default_factory=list)
    required_specialty: Optional[str] = None

    @classmethod
    def from_case(cls, case: MedicalCase) -> "CaseFacts":
        return cls(
            case_id=case.id,
            icd10_codes=[code for code in case.icd10_codes if code],
            required_specialty=case.required_specialty or None,
        )


class MatchOptions(BaseModel):
    max_results: int = Field(default=10, ge=1)
    min_score: Optional[float] = Field(default=None, ge=0, le=100)
    preferred_specialties: List[str] = Field(default_factory=list)
    require_telehealth: bool = False
    preferred_facility_ids: List[str] = Field(default_factory=list)


class RoutingOptions(BaseModel):
    max_results: int = Field(default=5, ge=1)
    min_score: Optional[float] = Field(default=None, ge=0, le=100)
    required_capabilities: List[str] = Field(default_factory=list)
    preferred_facility_types: List[str] = Field(default_factory=list)
    max_distance_km: Optional[float] = Field(default=None, gt=0)


class ScoreResult(BaseModel):
    overall_score: float
    vector_similarity_score: float
    graph_relationship_score: float
    historical_performance_score: float
    rationale: str


class RouteScoreResult(BaseModel):
    overall_score: float
    complexity_match_score: float
    historical_outcomes_score: float
    capacity_score: float
    geographic_score: float
    rationale: str


class PriorityScore(BaseModel):
    priority_score: float
    urgency_score: float
    complexity_score: float
    availability_score: float
    rationale: str


class DoctorMatch(BaseModel):
    doctor: Doctor
    score: float
    rank: int
    rationale: str
    breakdown: ScoreResult


class FacilityMatch(BaseModel):
    facility: Facility
    score: float
    rank: int
    rationale: str
    breakdown: RouteScoreResult


class MatchStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class MatchRecord(BaseModel):
    """Persisted outcome of one ranking for one candidate."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    case_id: str
    doctor_id: Optional[str] = None
    facility_id: Optional[str] = None
    score: float
    rationale: str
    rank: int
    status: MatchStatus = MatchStatus.PENDING
    computed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def _one_candidate(self) -> "MatchRecord":
        if (self.doctor_id is None) == (self.facility_id is None):
            raise ValueError("exactly one of doctor_id and facility_id must be set")
        return self
