"""Async database connection management.

One ``Database`` per process, built from ``Settings`` at startup and passed
to the stores that need it.
"""

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any

import structlog
from sqlalchemy import event, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

from sharpflow.config import Settings
from sharpflow.errors import PersistenceFault

log = structlog.get_logger()


class Database:
    """Owns the async engine and session factory.

    Usage:
        db = Database.from_settings(settings)

        async with db.session() as session:
            session.add(job)
            await session.commit()
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls.from_url(
            settings.database_url,
            echo=settings.database_echo,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )

    @classmethod
    def from_url(cls, url: str, *, echo: bool = False, **pool_kwargs: Any) -> "Database":
        if url.startswith("sqlite"):
            # SQLite ignores pool sizing; foreign keys need a pragma per connection
            engine = create_async_engine(url, echo=echo)

            @event.listens_for(engine.sync_engine, "connect")
            def _enable_foreign_keys(dbapi_connection: Any, _record: Any) -> None:
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

        else:
            engine = create_async_engine(url, echo=echo, pool_pre_ping=True, **pool_kwargs)
        return cls(engine)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session; connection-level failures surface as PersistenceFault."""
        try:
            async with self.session_factory() as session:
                yield session
        except IntegrityError:
            raise
        except (OperationalError, DBAPIError, OSError) as e:
            raise PersistenceFault(f"Store unavailable: {e}") from e

    async def init_db(self) -> None:
        """Create tables directly (development and tests; production uses Alembic)."""
        from sharpflow.db import models  # noqa: F401 - register tables

        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        log.info("database_initialized", dialect=self.dialect)

    async def check_health(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            log.warning("database_health_check_failed", error=str(e))
            return False

    async def close(self) -> None:
        await self.engine.dispose()

    def upsert(
        self,
        table: Any,
        values: dict[str, Any],
        *,
        index_elements: Sequence[str],
        update_fields: Sequence[str],
    ) -> Any:
        """Build an INSERT ... ON CONFLICT DO UPDATE for the current dialect."""
        insert_fn = pg_insert if self.dialect == "postgresql" else sqlite_insert
        stmt = insert_fn(table).values(**values)
        return stmt.on_conflict_do_update(
            index_elements=list(index_elements),
            set_={name: stmt.excluded[name] for name in update_fields},
        )
