"""Interfaces to the relational side of the system.

Domain records are read through the protocols below; their implementations
live with the relational CRUD layer. Match records are the one thing this
package writes relationally, so a psycopg implementation is provided.
"""

import logging
from typing import List, Optional, Protocol, Sequence, Tuple

from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from .gateway import get_pool_connection
from .models import (
    ClinicalExperience,
    Doctor,
    Facility,
    ICD10Code,
    MatchRecord,
    MedicalCase,
    MedicalSpecialty,
)

logger = logging.getLogger("medgraph_match")
logger.setLevel(logging.INFO)


class DoctorRepository(Protocol):
    async def find_by_id(self, doctor_id: str) -> Optional[Doctor]: ...

    async def find_by_ids(self, doctor_ids: Sequence[str]) -> List[Doctor]: ...

    async def find_all(self, limit: Optional[int] = None) -> List[Doctor]: ...

    async def find_by_specialty(self, specialty: str, limit: int) -> List[Doctor]: ...

    async def find_by_facility_id(self, facility_id: str, limit: int) -> List[Doctor]: ...


class MedicalCaseRepository(Protocol):
    async def find_by_id(self, case_id: str) -> Optional[MedicalCase]: ...

    async def find_all(self) -> List[MedicalCase]: ...

    async def has_embedding(self, case_id: str) -> bool: ...

    async def vector_similarity(
        self, case_id: str, other_case_ids: Sequence[str]
    ) -> Optional[float]:
        """Average embedding similarity, or None when it cannot be computed."""
        ...


class ICD10CodeRepository(Protocol):
    async def find_all(self) -> List[ICD10Code]: ...


class MedicalSpecialtyRepository(Protocol):
    async def find_all(self) -> List[MedicalSpecialty]: ...


class FacilityRepository(Protocol):
    async def find_by_id(self, facility_id: str) -> Optional[Facility]: ...

    async def find_all(self) -> List[Facility]: ...


class ClinicalExperienceRepository(Protocol):
    async def find_all(self) -> List[ClinicalExperience]: ...

    async def find_by_doctor_id(self, doctor_id: str) -> List[ClinicalExperience]: ...

    async def find_by_doctor_ids(
        self, doctor_ids: Sequence[str]
    ) -> List[ClinicalExperience]: ...


class ConsultationRepository(Protocol):
    async def find_all_pairs(self) -> List[Tuple[str, str]]:
        """(doctor_id, case_id) pairs of completed consultations."""
        ...


class MatchRecordRepository(Protocol):
    async def insert_batch(self, records: Sequence[MatchRecord]) -> None: ...


CREATE_MATCH_RECORDS_TABLE = """
CREATE TABLE IF NOT EXISTS match_records (
    id TEXT PRIMARY KEY,
    case_id TEXT NOT NULL,
    doctor_id TEXT,
    facility_id TEXT,
    score DOUBLE PRECISION NOT NULL,
    rationale TEXT NOT NULL,
    rank INTEGER NOT NULL,
    status TEXT NOT NULL,
    computed_at TIMESTAMPTZ NOT NULL,
    CHECK ((doctor_id IS NULL) <> (facility_id IS NULL))
)
"""

CREATE_MATCH_RECORDS_INDEX = (
    "CREATE INDEX IF NOT EXISTS match_records_case_id_idx ON match_records (case_id)"
)

INSERT_MATCH_RECORD = """
INSERT INTO match_records
    (id, case_id, doctor_id, facility_id, score, rationale, rank, status, computed_at)
VALUES
    (%(id)s, %(case_id)s, %(doctor_id)s, %(facility_id)s, %(score)s, %(rationale)s,
     %(rank)s, %(status)s, %(computed_at)s)
"""


class PostgresMatchRecordRepository:
    """Append-only store of match records; earlier runs are never replaced."""

    def __init__(self, pool: AsyncConnectionPool):
        self.pool = pool

    async def ensure_schema(self) -> None:
        async with get_pool_connection(self.pool) as conn:
            async with conn.cursor() as cursor:
                await cursor.execute(CREATE_MATCH_RECORDS_TABLE)
                await cursor.execute(CREATE_MATCH_RECORDS_INDEX)
            await conn.commit()

    async def insert_batch(self, records: Sequence[MatchRecord]) -> None:
        if not records:
            return
        async with get_pool_connection(self.pool) as conn:
            try:
                async with conn.cursor() as cursor:
                    await cursor.executemany(
                        INSERT_MATCH_RECORD,
                        [record.model_dump(mode="json") for record in records],
                    )
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
        logger.info(f"Stored {len(records)} match records for case {records[0].case_id}")

    async def find_by_case_id(self, case_id: str) -> List[MatchRecord]:
        async with get_pool_connection(self.pool) as conn:
            async with conn.cursor(row_factory=dict_row) as cursor:
                await cursor.execute(
                    "SELECT * FROM match_records WHERE case_id = %(case_id)s "
                    "ORDER BY computed_at DESC, rank",
                    {"case_id": case_id},
                )
                rows = await cursor.fetchall()
            await conn.commit()
        return [MatchRecord(**row) for row in rows]
