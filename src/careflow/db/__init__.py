"""
Careflow Persistence

Repository interface plus in-memory and PostgreSQL implementations.
"""

from careflow.db.repository import FlowRepository
from careflow.db.memory import InMemoryFlowRepository

__all__ = [
    "FlowRepository",
    "InMemoryFlowRepository",
    "create_repository",
]


async def create_repository(settings) -> FlowRepository:
    """
    Build the repository selected by settings.app.repository_backend.

    The postgres backend opens an asyncpg pool and ensures the schema.
    """
    if settings.app.repository_backend == "postgres":
        import asyncpg
        from careflow.db.postgres_repo import PostgresFlowRepository

        pool = await asyncpg.create_pool(
            settings.postgres.connection_url,
            min_size=settings.postgres.min_pool_size,
            max_size=settings.postgres.max_pool_size,
        )
        repo = PostgresFlowRepository(pool)
        await repo.ensure_schema()
        return repo

    return InMemoryFlowRepository()
