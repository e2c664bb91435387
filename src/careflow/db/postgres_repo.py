"""
PostgreSQL Flow Repository

asyncpg-backed storage for flows, risk assessments and the transition log.

Features:
- One transaction per committed transition
- Optimistic concurrency via UPDATE ... WHERE version = expected
- Partial unique index: one active flow per patient and category
- Database-level immutability for the transition log and assessments
"""

import json

import asyncpg
import structlog

from careflow.db.repository import FlowRepository
from careflow.exceptions import (
    ActiveFlowExists,
    ConcurrentModification,
    FlowNotFound,
    PersistenceError,
)
from careflow.models.flow import Flow, TERMINAL_STATUSES
from careflow.models.risk import RiskAssessment
from careflow.models.transitions import TransitionRecord

logger = structlog.get_logger(__name__)

_DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

_TERMINAL_SQL = ", ".join(f"'{s.value}'" for s in sorted(TERMINAL_STATUSES, key=lambda s: s.value))

SCHEMA_SQL = f"""
    CREATE TABLE IF NOT EXISTS careflow_flows (
        id VARCHAR(64) PRIMARY KEY,
        patient_id VARCHAR(255) NOT NULL,
        category_id VARCHAR(255) NOT NULL,
        status VARCHAR(50) NOT NULL,
        version INTEGER NOT NULL,
        data JSONB NOT NULL,
        started_at TIMESTAMPTZ NOT NULL,
        last_activity_at TIMESTAMPTZ NOT NULL,
        completed_at TIMESTAMPTZ
    );

    CREATE UNIQUE INDEX IF NOT EXISTS idx_careflow_one_active_flow
        ON careflow_flows(patient_id, category_id)
        WHERE status NOT IN ({_TERMINAL_SQL});

    CREATE TABLE IF NOT EXISTS careflow_risk_assessments (
        id VARCHAR(64) PRIMARY KEY,
        sequence_number BIGSERIAL NOT NULL,
        flow_id VARCHAR(64),
        supersedes_assessment_id VARCHAR(64),
        computed_at TIMESTAMPTZ NOT NULL,
        data JSONB NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_careflow_assessments_flow
        ON careflow_risk_assessments(flow_id, sequence_number);

    CREATE TABLE IF NOT EXISTS careflow_transitions (
        id VARCHAR(64) PRIMARY KEY,
        sequence_number BIGSERIAL NOT NULL,
        flow_id VARCHAR(64) NOT NULL,
        from_status VARCHAR(50),
        to_status VARCHAR(50) NOT NULL,
        reason VARCHAR(255) NOT NULL,
        triggered_by VARCHAR(255) NOT NULL,
        occurred_at TIMESTAMPTZ NOT NULL,
        flow_version INTEGER NOT NULL,
        payload JSONB NOT NULL DEFAULT '{{}}'
    );

    CREATE INDEX IF NOT EXISTS idx_careflow_transitions_flow
        ON careflow_transitions(flow_id, sequence_number);

    CREATE OR REPLACE FUNCTION careflow_prevent_modification()
    RETURNS TRIGGER AS $$
    BEGIN
        RAISE EXCEPTION 'Append-only table: UPDATE and DELETE operations are not allowed';
    END;
    $$ LANGUAGE plpgsql;

    DROP TRIGGER IF EXISTS careflow_transitions_immutable ON careflow_transitions;
    CREATE TRIGGER careflow_transitions_immutable
        BEFORE UPDATE OR DELETE ON careflow_transitions
        FOR EACH ROW
        EXECUTE FUNCTION careflow_prevent_modification();

    DROP TRIGGER IF EXISTS careflow_assessments_immutable ON careflow_risk_assessments;
    CREATE TRIGGER careflow_assessments_immutable
        BEFORE UPDATE OR DELETE ON careflow_risk_assessments
        FOR EACH ROW
        EXECUTE FUNCTION careflow_prevent_modification();
"""


class PostgresFlowRepository(FlowRepository):
    """
    Flow repository backed by PostgreSQL.

    Usage:
        pool = await asyncpg.create_pool(settings.postgres.connection_url)
        repo = PostgresFlowRepository(pool)
        await repo.ensure_schema()
    """

    atomic = True

    def __init__(self, pool):
        """
        Initialize with an asyncpg connection pool.

        Args:
            pool: asyncpg.Pool instance
        """
        self.pool = pool

    async def ensure_schema(self):
        """Create tables, indexes and immutability triggers if missing."""
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(SCHEMA_SQL)
            logger.info("Careflow schema ensured")
        except _DB_ERRORS as e:
            raise PersistenceError(f"Failed to ensure schema: {e}") from e

    # -------------------------------------------------------------------------
    # Flows
    # -------------------------------------------------------------------------

    async def create_flow(self, flow: Flow, record: TransitionRecord) -> Flow:
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute("""
                        INSERT INTO careflow_flows (
                            id, patient_id, category_id, status, version,
                            data, started_at, last_activity_at, completed_at
                        ) VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9)
                    """,
                        flow.id,
                        flow.patient_id,
                        flow.category_id,
                        flow.status.value,
                        flow.version,
                        flow.model_dump_json(),
                        flow.started_at,
                        flow.last_activity_at,
                        flow.completed_at,
                    )
                    await self._insert_transition(conn, record)
        except asyncpg.UniqueViolationError as e:
            raise ActiveFlowExists(flow.patient_id, flow.category_id) from e
        except _DB_ERRORS as e:
            raise PersistenceError(f"Failed to create flow: {e}", flow_id=flow.id) from e
        return flow

    async def get_flow(self, flow_id: str) -> Flow | None:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT data FROM careflow_flows WHERE id = $1", flow_id
                )
        except _DB_ERRORS as e:
            raise PersistenceError(f"Failed to load flow: {e}", flow_id=flow_id) from e
        return Flow.model_validate_json(row["data"]) if row else None

    async def find_active_flow(self, patient_id: str, category_id: str) -> Flow | None:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(f"""
                    SELECT data FROM careflow_flows
                    WHERE patient_id = $1 AND category_id = $2
                      AND status NOT IN ({_TERMINAL_SQL})
                """, patient_id, category_id)
        except _DB_ERRORS as e:
            raise PersistenceError(f"Failed to look up active flow: {e}") from e
        return Flow.model_validate_json(row["data"]) if row else None

    async def update_flow(self, flow: Flow, expected_version: int) -> None:
        try:
            async with self.pool.acquire() as conn:
                await self._update_flow(conn, flow, expected_version)
        except _DB_ERRORS as e:
            raise PersistenceError(f"Failed to update flow: {e}", flow_id=flow.id) from e

    async def commit_transition(
        self,
        flow: Flow,
        records: list[TransitionRecord],
        expected_version: int,
        assessment: RiskAssessment | None = None,
    ) -> None:
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    if assessment is not None:
                        await self._insert_assessment(conn, assessment)
                    for record in records:
                        await self._insert_transition(conn, record)
                    await self._update_flow(conn, flow, expected_version)
        except _DB_ERRORS as e:
            raise PersistenceError(f"Failed to commit transition: {e}", flow_id=flow.id) from e

    async def _update_flow(self, conn, flow: Flow, expected_version: int):
        result = await conn.execute("""
            UPDATE careflow_flows
            SET status = $2, version = $3, data = $4::jsonb,
                last_activity_at = $5, completed_at = $6
            WHERE id = $1 AND version = $7
        """,
            flow.id,
            flow.status.value,
            flow.version,
            flow.model_dump_json(),
            flow.last_activity_at,
            flow.completed_at,
            expected_version,
        )
        if result.endswith(" 0"):
            actual = await conn.fetchval(
                "SELECT version FROM careflow_flows WHERE id = $1", flow.id
            )
            if actual is None:
                raise FlowNotFound(flow.id)
            raise ConcurrentModification(flow.id, expected_version, actual)

    # -------------------------------------------------------------------------
    # Transition Log
    # -------------------------------------------------------------------------

    async def get_transitions(self, flow_id: str) -> list[TransitionRecord]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch("""
                    SELECT id, flow_id, from_status, to_status, reason, triggered_by,
                           occurred_at, flow_version, payload
                    FROM careflow_transitions
                    WHERE flow_id = $1
                    ORDER BY sequence_number
                """, flow_id)
        except _DB_ERRORS as e:
            raise PersistenceError(f"Failed to load transitions: {e}", flow_id=flow_id) from e

        return [
            TransitionRecord(**{**dict(row), "payload": json.loads(row["payload"])})
            for row in rows
        ]

    async def append_transition(self, record: TransitionRecord) -> None:
        try:
            async with self.pool.acquire() as conn:
                await self._insert_transition(conn, record)
        except _DB_ERRORS as e:
            raise PersistenceError(f"Failed to append transition: {e}", flow_id=record.flow_id) from e

    async def _insert_transition(self, conn, record: TransitionRecord):
        await conn.execute("""
            INSERT INTO careflow_transitions (
                id, flow_id, from_status, to_status, reason, triggered_by,
                occurred_at, flow_version, payload
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb)
        """,
            record.id,
            record.flow_id,
            record.from_status.value if record.from_status else None,
            record.to_status.value,
            record.reason,
            record.triggered_by,
            record.occurred_at,
            record.flow_version,
            json.dumps(record.payload, default=str),
        )

    # -------------------------------------------------------------------------
    # Assessments
    # -------------------------------------------------------------------------

    async def get_assessments(self, flow_id: str) -> list[RiskAssessment]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch("""
                    SELECT data FROM careflow_risk_assessments
                    WHERE flow_id = $1
                    ORDER BY sequence_number
                """, flow_id)
        except _DB_ERRORS as e:
            raise PersistenceError(f"Failed to load assessments: {e}", flow_id=flow_id) from e
        return [RiskAssessment.model_validate_json(row["data"]) for row in rows]

    async def get_assessment(self, assessment_id: str) -> RiskAssessment | None:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT data FROM careflow_risk_assessments WHERE id = $1", assessment_id
                )
        except _DB_ERRORS as e:
            raise PersistenceError(f"Failed to load assessment: {e}") from e
        return RiskAssessment.model_validate_json(row["data"]) if row else None

    async def save_assessment(self, assessment: RiskAssessment) -> None:
        try:
            async with self.pool.acquire() as conn:
                await self._insert_assessment(conn, assessment)
        except _DB_ERRORS as e:
            raise PersistenceError(f"Failed to save assessment: {e}") from e

    async def _insert_assessment(self, conn, assessment: RiskAssessment):
        await conn.execute("""
            INSERT INTO careflow_risk_assessments (
                id, flow_id, supersedes_assessment_id, computed_at, data
            ) VALUES ($1, $2, $3, $4, $5::jsonb)
            ON CONFLICT (id) DO NOTHING
        """,
            assessment.id,
            assessment.source_flow_id,
            assessment.supersedes_assessment_id,
            assessment.computed_at,
            assessment.model_dump_json(),
        )
