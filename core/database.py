import logging

import numpy as np
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from core.settings import settings

logger = logging.getLogger(__name__)


def _parse_vector(value: str) -> np.ndarray:
    return np.array(value.strip("[]").split(","), dtype=np.float32)


def _sqlite_l2_distance(a: str | None, b: str | None) -> float | None:
    if a is None or b is None:
        return None
    va, vb = _parse_vector(a), _parse_vector(b)
    # SQLite has no vector(n) column type, so mixed dimensions can be stored
    if va.shape != vb.shape:
        return None
    return float(np.linalg.norm(va - vb))


def install_sqlite_functions(engine: AsyncEngine) -> None:
    """Register the vector distance function on every new SQLite connection.

    pgvector stores vectors as '[x,y,...]' text on SQLite; PostgreSQL uses the
    native <-> operator instead (see models.vector).
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _register(dbapi_connection, _record):
        dbapi_connection.create_function("l2_distance", 2, _sqlite_l2_distance)


def make_engine(url: str, **kwargs) -> AsyncEngine:
    if url.startswith("sqlite"):
        eng = create_async_engine(url, echo=False, **kwargs)
        install_sqlite_functions(eng)
        return eng
    return create_async_engine(url, echo=False, pool_size=10, max_overflow=20, **kwargs)


engine = make_engine(settings.async_database_url)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncSession:
    async with async_session() as session:
        yield session


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create extension + tables. Called once at startup by the API and each job."""
    bind = bind or engine
    from models.base import Base
    import models.knowledge  # noqa: F401  (registers tables on Base.metadata)

    async with bind.begin() as conn:
        if conn.dialect.name == "postgresql":
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Knowledge tables initialized (embedding dim=%d)", settings.embedding_dim)
