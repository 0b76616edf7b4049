"""Pipeline result rows, written as upserts on their natural key.

A redelivered pipeline re-runs its steps; because every write lands on
(owner_id, kind, natural_key), the second run overwrites the first instead
of adding a duplicate row.
"""

from collections.abc import Sequence
from typing import Any
from uuid import UUID, uuid4

import structlog
from sqlalchemy import func
from sqlmodel import col, select

from sharpflow.db import ArtifactKind, Database, JobArtifact, utcnow_naive

log = structlog.get_logger()


class ArtifactStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def upsert(
        self,
        owner_id: str,
        job_id: UUID,
        kind: ArtifactKind,
        natural_key: str,
        payload: dict[str, Any],
    ) -> None:
        now = utcnow_naive()
        stmt = self.db.upsert(
            JobArtifact.__table__,
            {
                "id": uuid4(),
                "owner_id": owner_id,
                "job_id": job_id,
                "kind": kind.value,
                "natural_key": natural_key,
                "payload": payload,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=("owner_id", "kind", "natural_key"),
            update_fields=("job_id", "payload", "updated_at"),
        )
        async with self.db.session() as session:
            await session.execute(stmt)
            await session.commit()

    async def exists(self, owner_id: str, kind: ArtifactKind, natural_key: str) -> bool:
        async with self.db.session() as session:
            result = await session.execute(
                select(JobArtifact.id).where(
                    col(JobArtifact.owner_id) == owner_id,
                    col(JobArtifact.kind) == kind.value,
                    col(JobArtifact.natural_key) == natural_key,
                )
            )
            return result.first() is not None

    async def count(self, owner_id: str, kind: ArtifactKind, *, job_id: UUID | None = None) -> int:
        stmt = select(func.count()).select_from(JobArtifact).where(
            col(JobArtifact.owner_id) == owner_id,
            col(JobArtifact.kind) == kind.value,
        )
        if job_id is not None:
            stmt = stmt.where(col(JobArtifact.job_id) == job_id)
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def list_for_job(
        self, owner_id: str, job_id: UUID, *, kind: ArtifactKind | None = None
    ) -> Sequence[JobArtifact]:
        stmt = select(JobArtifact).where(
            col(JobArtifact.owner_id) == owner_id,
            col(JobArtifact.job_id) == job_id,
        )
        if kind is not None:
            stmt = stmt.where(col(JobArtifact.kind) == kind.value)
        async with self.db.session() as session:
            result = await session.execute(stmt.order_by(col(JobArtifact.created_at)))
            return result.scalars().all()
