"""The state store handle.

One ``StateStore`` per process. Components that persist anything receive it
explicitly; there is no module-level session. Writers go through
``transaction()``, which holds a single lock for the duration of one
database transaction so concurrent install tasks never interleave writes.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from hoard.db.base import Base
from hoard.db.engine import create_db_engine, create_session_factory
from hoard.errors import StoreFailure

logger = logging.getLogger(__name__)


class StateStore:
    """Serialized access to the package database."""

    def __init__(self, url: str, engine: AsyncEngine | None = None):
        self.url = url
        self.engine = engine or create_db_engine(url)
        self._session_factory = create_session_factory(self.engine)
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create the database file's directory and all tables."""
        import hoard.db.models  # noqa: F401 - register all ORM models

        db_url = make_url(self.url)
        try:
            if db_url.get_backend_name() == "sqlite" and db_url.database not in (None, "", ":memory:"):
                Path(db_url.database).parent.mkdir(parents=True, exist_ok=True)
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError) as exc:
            raise StoreFailure(f"State store unavailable: {exc}") from exc
        logger.debug("State store ready (%s)", db_url.render_as_string(hide_password=True))

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session for reads."""
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as exc:
            raise StoreFailure(f"State store read failed: {exc}") from exc

    @asynccontextmanager
    async def transaction(self, packages: list[str] | None = None) -> AsyncIterator[AsyncSession]:
        """Yield a session inside one transaction; commit on success.

        Any exception rolls the whole transaction back. Database errors are
        re-raised as StoreFailure naming *packages*.
        """
        async with self._write_lock:
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        yield session
            except SQLAlchemyError as exc:
                logger.error("Store transaction failed for %s: %s", packages or "-", exc)
                raise StoreFailure(f"State store transaction failed: {exc}", packages=packages) from exc
