"""Projection of the relational domain into the property graph.

``build_graph`` runs the phases in order: graph bootstrap, vertices of every
kind, best-effort indexes, then edges of every kind. Writes are MERGEs keyed on
natural keys, so re-running a build converges on the same graph.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from functools import partial
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)

from psycopg import sql
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .exceptions import GraphOperationError, PartialFailure
from .gateway import AgeGraphGateway
from .models import (
    ClinicalExperience,
    Doctor,
    DoctorVertex,
    EdgeKind,
    Facility,
    FacilityVertex,
    GraphVertex,
    ICD10Code,
    ICD10CodeVertex,
    MedicalCase,
    MedicalCaseVertex,
    MedicalSpecialty,
    MedicalSpecialtyVertex,
    VertexKind,
)
from .repositories import (
    ClinicalExperienceRepository,
    ConsultationRepository,
    DoctorRepository,
    FacilityRepository,
    ICD10CodeRepository,
    MedicalCaseRepository,
    MedicalSpecialtyRepository,
)
from .settings import GraphSettings

logger = logging.getLogger("medgraph_match")
logger.setLevel(logging.INFO)

R = TypeVar("R")

DEFAULT_BATCH_SIZE = 1000

# Targets that may be written as key-only vertices, and the property that a
# resolved write adds to them.
UPGRADE_PROPERTIES = {
    VertexKind.ICD10_CODE: "description",
    VertexKind.MEDICAL_SPECIALTY: "id",
}

# Per-row errors that are isolated instead of aborting a phase.
ROW_ERRORS = (GraphOperationError, ValueError, TypeError)


def doctor_vertex(doctor: Doctor) -> DoctorVertex:
    return DoctorVertex(id=doctor.id, name=doctor.name, email=doctor.email)


def medical_case_vertex(case: MedicalCase) -> MedicalCaseVertex:
    return MedicalCaseVertex(
        id=case.id,
        chief_complaint=case.chief_complaint,
        urgency_level=case.urgency_level.value if case.urgency_level else None,
    )


def icd10_code_vertex(code: ICD10Code) -> ICD10CodeVertex:
    return ICD10CodeVertex(code=code.code, description=code.description)


def medical_specialty_vertex(specialty: MedicalSpecialty) -> MedicalSpecialtyVertex:
    return MedicalSpecialtyVertex(name=specialty.name, id=specialty.id)


def facility_vertex(facility: Facility) -> FacilityVertex:
    return FacilityVertex(
        id=facility.id, name=facility.name, facility_type=facility.facility_type
    )


def vertex_upsert_query(vertex: GraphVertex) -> Tuple[str, Dict[str, Any]]:
    """MERGE on the natural key, then SET the remaining non-null properties.

    Null properties are left out of the SET so a sparse write never erases
    what a fuller write stored earlier.
    """
    kind = vertex.kind
    properties = vertex.settable_properties()
    query = f"MERGE (v:{kind.label} {{{kind.natural_key}: $key}})"
    if properties:
        assignments = ", ".join(f"v.{name} = $p_{name}" for name in properties)
        query += f" SET {assignments}"
    params = {"key": vertex.key_value()}
    params.update({f"p_{name}": value for name, value in properties.items()})
    return query, params


def relationship_batch_query(kind: EdgeKind, resolved: bool = True) -> str:
    """UNWIND-and-MERGE statement writing one chunk of ``kind`` edges.

    Rows are maps with ``source``, ``target`` and, for resolved upgradable
    targets, ``extra``. Key-only targets are MERGEd; every other endpoint must
    already exist.
    """
    source, target = kind.source, kind.target
    lines = [
        "UNWIND $rows AS rel",
        f"MATCH (s:{source.label} {{{source.natural_key}: rel.source}})",
    ]
    if target in UPGRADE_PROPERTIES:
        lines.append(f"MERGE (t:{target.label} {{{target.natural_key}: rel.target}})")
        if resolved:
            lines.append(f"SET t.{UPGRADE_PROPERTIES[target]} = rel.extra")
    else:
        lines.append(f"MATCH (t:{target.label} {{{target.natural_key}: rel.target}})")
    lines.append(f"MERGE (s)-[:{kind.value}]->(t)")
    return "\n".join(lines)


async def clear_graph(gateway: AgeGraphGateway) -> bool:
    """Delete every edge, then every vertex.

    Returns False without touching anything when the graph does not exist.
    """
    if not await gateway.graph_exists():
        logger.info(f"Graph '{gateway.graph_name}' does not exist, nothing to clear")
        return False
    await gateway.execute("MATCH ()-[e]->() DELETE e")
    await gateway.execute("MATCH (v) DELETE v")
    logger.info(f"Cleared graph '{gateway.graph_name}'")
    return True


@dataclass
class RelationalSources:
    doctors: DoctorRepository
    cases: MedicalCaseRepository
    codes: ICD10CodeRepository
    specialties: MedicalSpecialtyRepository
    facilities: FacilityRepository
    experiences: ClinicalExperienceRepository
    consultations: Optional[ConsultationRepository] = None


class EtlCache:
    """Reference data memoized for a single ETL run.

    A new cache is made for each ``build_graph`` call and cleared when the
    run ends, so lookups never outlive the data they were loaded from.
    """

    def __init__(self, sources: RelationalSources):
        self._sources = sources
        self._doctors: Optional[List[Doctor]] = None
        self._cases: Optional[List[MedicalCase]] = None
        self._experiences: Optional[List[ClinicalExperience]] = None
        self._specialties: Optional[Dict[str, MedicalSpecialty]] = None
        self._codes: Optional[Dict[str, ICD10Code]] = None

    async def doctors(self) -> List[Doctor]:
        if self._doctors is None:
            self._doctors = await self._sources.doctors.find_all()
        return self._doctors

    async def cases(self) -> List[MedicalCase]:
        if self._cases is None:
            self._cases = await self._sources.cases.find_all()
        return self._cases

    async def experiences(self) -> List[ClinicalExperience]:
        if self._experiences is None:
            self._experiences = await self._sources.experiences.find_all()
        return self._experiences

    async def specialties_by_name(self) -> Dict[str, MedicalSpecialty]:
        if self._specialties is None:
            self._specialties = {
                specialty.name.strip().lower(): specialty
                for specialty in await self._sources.specialties.find_all()
            }
        return self._specialties

    async def codes_by_code(self) -> Dict[str, ICD10Code]:
        if self._codes is None:
            self._codes = {
                code.code.strip(): code for code in await self._sources.codes.find_all()
            }
        return self._codes

    async def resolve_target(self, kind: VertexKind, key: str) -> GraphVertex:
        """Canonical vertex for a natural key, or a key-only degraded one."""
        if kind is VertexKind.MEDICAL_SPECIALTY:
            specialty = (await self.specialties_by_name()).get(key.strip().lower())
            if specialty is not None:
                return medical_specialty_vertex(specialty)
            return MedicalSpecialtyVertex(name=key)
        if kind is VertexKind.ICD10_CODE:
            code = (await self.codes_by_code()).get(key.strip())
            if code is not None:
                return icd10_code_vertex(code)
            return ICD10CodeVertex(code=key)
        raise ValueError(f"{kind.label} vertices are never resolved from reference data")

    def clear(self) -> None:
        self._doctors = None
        self._cases = None
        self._experiences = None
        self._specialties = None
        self._codes = None


@dataclass
class PhaseResult:
    name: str
    created: int = 0
    failed: int = 0
    skipped: bool = False
    failures: List[PartialFailure] = field(default_factory=list)
    duration: float = 0.0

    def record_failure(self, failure: PartialFailure, rows: int = 1) -> None:
        self.failed += rows
        self.failures.append(failure)


@dataclass
class BuildReport:
    phases: Dict[str, PhaseResult] = field(default_factory=dict)
    cancelled: bool = False
    duration: float = 0.0

    @property
    def total_created(self) -> int:
        return sum(phase.created for phase in self.phases.values())

    @property
    def total_failed(self) -> int:
        return sum(phase.failed for phase in self.phases.values())


class MedicalGraphBuilder:
    def __init__(
        self,
        gateway: AgeGraphGateway,
        sources: RelationalSources,
        batch_size: int = DEFAULT_BATCH_SIZE,
        concurrency: int = 8,
        chunk_retry_attempts: int = 3,
        chunk_retry_wait: float = 1.0,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.gateway = gateway
        self.sources = sources
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.chunk_retry_attempts = chunk_retry_attempts
        self.chunk_retry_wait = chunk_retry_wait

    @classmethod
    def from_settings(
        cls, gateway: AgeGraphGateway, sources: RelationalSources, settings: GraphSettings
    ) -> "MedicalGraphBuilder":
        return cls(
            gateway,
            sources,
            batch_size=settings.batch_size,
            concurrency=settings.etl_concurrency,
            chunk_retry_attempts=settings.chunk_retry_attempts,
            chunk_retry_wait=settings.chunk_retry_wait,
        )

    # Full build

    async def build_graph(
        self, should_continue: Optional[Callable[[], bool]] = None
    ) -> BuildReport:
        """Rebuild the graph from the relational sources.

        ``should_continue`` is polled between phases; returning False stops
        the run before the next phase and marks the report cancelled.
        """
        started = time.perf_counter()
        report = BuildReport()
        cache = EtlCache(self.sources)
        logger.info(f"Starting graph build for '{self.gateway.graph_name}'")

        phases: List[Tuple[str, Callable[[EtlCache], Awaitable[PhaseResult]]]] = [
            ("Doctor", self._doctor_phase),
            ("MedicalCase", self._case_phase),
            ("ICD10Code", self._code_phase),
            ("MedicalSpecialty", self._specialty_phase),
            ("Facility", self._facility_phase),
            ("indexes", self._index_phase),
        ]
        phases.extend(
            (kind.value, partial(self._edge_phase, kind)) for kind in EdgeKind
        )

        try:
            await self.gateway.ensure_graph()
            for name, run in phases:
                if should_continue is not None and not should_continue():
                    logger.warning(f"Graph build cancelled before phase {name}")
                    report.cancelled = True
                    break
                phase_started = time.perf_counter()
                result = await run(cache)
                result.duration = time.perf_counter() - phase_started
                report.phases[name] = result
                logger.info(
                    f"Phase {name}: {result.created} written, {result.failed} failed "
                    f"in {result.duration:.2f}s"
                )
        finally:
            cache.clear()

        report.duration = time.perf_counter() - started
        logger.info(
            f"Graph build finished in {report.duration:.2f}s: "
            f"{report.total_created} written, {report.total_failed} failed"
        )
        return report

    async def clear_graph(self) -> bool:
        return await clear_graph(self.gateway)

    # Vertices

    async def upsert_vertex(self, vertex: GraphVertex) -> None:
        query, params = vertex_upsert_query(vertex)
        await self.gateway.execute(query, params)

    async def create_doctor_vertex(self, doctor: Doctor) -> None:
        await self.upsert_vertex(doctor_vertex(doctor))

    async def create_medical_case_vertex(self, case: MedicalCase) -> None:
        await self.upsert_vertex(medical_case_vertex(case))

    async def create_icd10_code_vertex(self, code: ICD10Code) -> None:
        await self.upsert_vertex(icd10_code_vertex(code))

    async def create_medical_specialty_vertex(self, specialty: MedicalSpecialty) -> None:
        await self.upsert_vertex(medical_specialty_vertex(specialty))

    async def create_facility_vertex(self, facility: Facility) -> None:
        await self.upsert_vertex(facility_vertex(facility))

    async def create_vertices(
        self,
        name: str,
        records: Sequence[R],
        to_vertex: Callable[[R], GraphVertex],
    ) -> PhaseResult:
        """Upsert records concurrently; a failing row is counted and skipped."""
        result = PhaseResult(name)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _upsert(position: int, record: R) -> Optional[PartialFailure]:
            async with semaphore:
                try:
                    vertex = to_vertex(record)
                except ROW_ERRORS as e:
                    return PartialFailure(f"{name} row {position}", e)
                try:
                    await self.upsert_vertex(vertex)
                except ROW_ERRORS as e:
                    return PartialFailure(f"{name} {vertex.key_value()}", e)
                return None

        outcomes = await asyncio.gather(
            *(_upsert(position, record) for position, record in enumerate(records))
        )
        for outcome in outcomes:
            if outcome is None:
                result.created += 1
            else:
                logger.error(f"Failed to create vertex {outcome}")
                result.record_failure(outcome)
        return result

    async def _doctor_phase(self, cache: EtlCache) -> PhaseResult:
        return await self.create_vertices("Doctor", await cache.doctors(), doctor_vertex)

    async def _case_phase(self, cache: EtlCache) -> PhaseResult:
        return await self.create_vertices(
            "MedicalCase", await cache.cases(), medical_case_vertex
        )

    async def _code_phase(self, cache: EtlCache) -> PhaseResult:
        codes = list((await cache.codes_by_code()).values())
        return await self.create_vertices("ICD10Code", codes, icd10_code_vertex)

    async def _specialty_phase(self, cache: EtlCache) -> PhaseResult:
        specialties = list((await cache.specialties_by_name()).values())
        return await self.create_vertices(
            "MedicalSpecialty", specialties, medical_specialty_vertex
        )

    async def _facility_phase(self, cache: EtlCache) -> PhaseResult:
        facilities = await self.sources.facilities.find_all()
        return await self.create_vertices("Facility", facilities, facility_vertex)

    # Indexes

    async def create_indexes(self) -> PhaseResult:
        """GIN indexes on each label table's properties column.

        Label tables only exist once a vertex of that label was written, so
        missing tables are skipped. Failures are logged and never raised.
        """
        result = PhaseResult("indexes")
        graph_name = self.gateway.graph_name
        for kind in VertexKind:
            table = f'"{graph_name}"."{kind.label}"'
            index_name = f"idx_{graph_name}_{kind.label.lower()}_props"
            try:
                rows = await self.gateway.execute_sql(
                    "SELECT to_regclass(%(table)s) IS NOT NULL AS present", {"table": table}
                )
                if not rows or not rows[0]["present"]:
                    logger.debug(f"Label table {table} missing, index skipped")
                    continue
                await self.gateway.execute_sql(
                    sql.SQL("CREATE INDEX IF NOT EXISTS {} ON {}.{} USING gin (properties)")
                    .format(
                        sql.Identifier(index_name),
                        sql.Identifier(graph_name),
                        sql.Identifier(kind.label),
                    )
                )
                result.created += 1
            except GraphOperationError as e:
                logger.debug(f"Index creation for {kind.label}: {e.get_message()}")
                result.record_failure(PartialFailure(index_name, e))
        return result

    async def _index_phase(self, cache: EtlCache) -> PhaseResult:
        return await self.create_indexes()

    # Edges

    async def _edge_pairs(self, kind: EdgeKind, cache: EtlCache) -> Optional[List[Tuple[str, str]]]:
        if kind is EdgeKind.TREATED:
            return [(e.doctor_id, e.case_id) for e in await cache.experiences()]
        if kind is EdgeKind.CONSULTED_ON:
            if self.sources.consultations is None:
                return None
            return list(await self.sources.consultations.find_all_pairs())
        if kind is EdgeKind.SPECIALIZES_IN:
            return [(d.id, name) for d in await cache.doctors() for name in d.specialties]
        if kind is EdgeKind.TREATS_CONDITION:
            cases = {case.id: case for case in await cache.cases()}
            return [
                (experience.doctor_id, code)
                for experience in await cache.experiences()
                if experience.case_id in cases
                for code in cases[experience.case_id].icd10_codes
            ]
        if kind is EdgeKind.HAS_CONDITION:
            return [(c.id, code) for c in await cache.cases() for code in c.icd10_codes]
        if kind is EdgeKind.REQUIRES_SPECIALTY:
            return [
                (c.id, c.required_specialty)
                for c in await cache.cases()
                if c.required_specialty
            ]
        if kind is EdgeKind.AFFILIATED_WITH:
            return [(d.id, f) for d in await cache.doctors() for f in d.facility_ids]
        raise ValueError(f"Unknown edge kind {kind}")

    async def _edge_phase(self, kind: EdgeKind, cache: EtlCache) -> PhaseResult:
        pairs = await self._edge_pairs(kind, cache)
        if pairs is None:
            logger.info(f"No source configured for {kind.value} edges, phase skipped")
            return PhaseResult(kind.value, skipped=True)
        return await self.create_relationships_batch(kind, pairs, cache)

    async def create_relationships_batch(
        self,
        kind: EdgeKind,
        pairs: Iterable[Tuple[str, str]],
        cache: Optional[EtlCache] = None,
    ) -> PhaseResult:
        """Deduplicate ``(source, target)`` pairs and write them in chunks.

        Upgradable targets missing from the reference data are written as
        key-only vertices, in a separate statement from resolved ones.
        """
        result = PhaseResult(kind.value)
        unique = sorted(
            {
                (source.strip(), target.strip())
                for source, target in pairs
                if source and target and source.strip() and target.strip()
            }
        )
        if not unique:
            return result

        if kind.target not in UPGRADE_PROPERTIES:
            rows = [{"source": source, "target": target} for source, target in unique]
            await self._write_chunks(kind, rows, True, result)
            return result

        cache = cache or EtlCache(self.sources)
        extra_property = UPGRADE_PROPERTIES[kind.target]
        resolved: Dict[Tuple[str, str], Dict[str, Any]] = {}
        degraded: Dict[Tuple[str, str], Dict[str, Any]] = {}
        for source, target in unique:
            vertex = await cache.resolve_target(kind.target, target)
            key = (source, vertex.key_value())
            if vertex.is_degraded:
                degraded[key] = {"source": source, "target": vertex.key_value()}
            else:
                resolved[key] = {
                    "source": source,
                    "target": vertex.key_value(),
                    "extra": vertex.graph_properties()[extra_property],
                }
        if degraded:
            missing = sorted({row["target"] for row in degraded.values()})
            logger.warning(
                f"{kind.target.label} not found in reference data, creating key-only "
                f"vertices for {kind.value}: {', '.join(missing)}"
            )
        await self._write_chunks(kind, list(resolved.values()), True, result)
        await self._write_chunks(kind, list(degraded.values()), False, result)
        return result

    async def _write_chunks(
        self,
        kind: EdgeKind,
        rows: List[Dict[str, Any]],
        resolved: bool,
        result: PhaseResult,
    ) -> None:
        query = relationship_batch_query(kind, resolved)
        for start in range(0, len(rows), self.batch_size):
            chunk = rows[start:start + self.batch_size]
            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self.chunk_retry_attempts),
                    wait=wait_exponential(multiplier=self.chunk_retry_wait, max=10),
                    retry=retry_if_exception_type((GraphOperationError,)),
                    reraise=True,
                ):
                    with attempt:
                        await self.gateway.execute(query, {"rows": chunk})
                result.created += len(chunk)
            except GraphOperationError as e:
                failure = PartialFailure(
                    f"{kind.value} rows {start}-{start + len(chunk) - 1}", e
                )
                logger.error(f"Failed to write relationship chunk {failure}")
                result.record_failure(failure, rows=len(chunk))

    async def create_relationship(
        self,
        kind: EdgeKind,
        source: str,
        target: str,
        cache: Optional[EtlCache] = None,
    ) -> None:
        """Write a single edge; raises GraphOperationError if it fails."""
        result = await self.create_relationships_batch(kind, [(source, target)], cache)
        if result.failures:
            raise result.failures[0].cause

    async def create_treated_relationship(self, doctor_id: str, case_id: str) -> None:
        await self.create_relationship(EdgeKind.TREATED, doctor_id, case_id)

    async def create_consulted_on_relationship(self, doctor_id: str, case_id: str) -> None:
        await self.create_relationship(EdgeKind.CONSULTED_ON, doctor_id, case_id)

    async def create_specializes_in_relationship(
        self, doctor_id: str, specialty_name: str, cache: Optional[EtlCache] = None
    ) -> None:
        await self.create_relationship(EdgeKind.SPECIALIZES_IN, doctor_id, specialty_name, cache)

    async def create_treats_condition_relationship(
        self, doctor_id: str, code: str, cache: Optional[EtlCache] = None
    ) -> None:
        await self.create_relationship(EdgeKind.TREATS_CONDITION, doctor_id, code, cache)

    async def create_has_condition_relationship(
        self, case_id: str, code: str, cache: Optional[EtlCache] = None
    ) -> None:
        await self.create_relationship(EdgeKind.HAS_CONDITION, case_id, code, cache)

    async def create_requires_specialty_relationship(
        self, case_id: str, specialty_name: str, cache: Optional[EtlCache] = None
    ) -> None:
        await self.create_relationship(
            EdgeKind.REQUIRES_SPECIALTY, case_id, specialty_name, cache
        )

    async def create_affiliated_with_relationship(self, doctor_id: str, facility_id: str) -> None:
        await self.create_relationship(EdgeKind.AFFILIATED_WITH, doctor_id, facility_id)

    async def create_treated_relationships_batch(
        self, pairs: Iterable[Tuple[str, str]]
    ) -> PhaseResult:
        return await self.create_relationships_batch(EdgeKind.TREATED, pairs)

    async def create_consulted_on_relationships_batch(
        self, pairs: Iterable[Tuple[str, str]]
    ) -> PhaseResult:
        return await self.create_relationships_batch(EdgeKind.CONSULTED_ON, pairs)

    async def create_specializes_in_relationships_batch(
        self, pairs: Iterable[Tuple[str, str]], cache: Optional[EtlCache] = None
    ) -> PhaseResult:
        return await self.create_relationships_batch(EdgeKind.SPECIALIZES_IN, pairs, cache)

    async def create_treats_condition_relationships_batch(
        self, pairs: Iterable[Tuple[str, str]], cache: Optional[EtlCache] = None
    ) -> PhaseResult:
        return await self.create_relationships_batch(EdgeKind.TREATS_CONDITION, pairs, cache)

    async def create_has_condition_relationships_batch(
        self, pairs: Iterable[Tuple[str, str]], cache: Optional[EtlCache] = None
    ) -> PhaseResult:
        return await self.create_relationships_batch(EdgeKind.HAS_CONDITION, pairs, cache)

    async def create_requires_specialty_relationships_batch(
        self, pairs: Iterable[Tuple[str, str]], cache: Optional[EtlCache] = None
    ) -> PhaseResult:
        return await self.create_relationships_batch(
            EdgeKind.REQUIRES_SPECIALTY, pairs, cache
        )

    async def create_affiliated_with_relationships_batch(
        self, pairs: Iterable[Tuple[str, str]]
    ) -> PhaseResult:
        return await self.create_relationships_batch(EdgeKind.AFFILIATED_WITH, pairs)
