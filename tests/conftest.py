"""
Shared pytest fixtures for knowledge engine tests.

Each test gets a fresh in-memory SQLite database (aiosqlite) with the real
schema, and deterministic embedding providers that never touch the network.
"""

import asyncio
import hashlib
import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from core.database import init_db, make_engine
from core.settings import settings
from models.knowledge import EventEmbedding, KnowledgeEvent, KnowledgeInsight

DIM = settings.embedding_dim


def vec(*head: float) -> list[float]:
    """A full-dimension vector whose first components are `head`."""
    return list(head) + [0.0] * (DIM - len(head))


def previous_weekday(weekday: int, *, weeks_back: int = 0, hour: int = 10, now: datetime | None = None) -> datetime:
    """Most recent strictly-past date with the given weekday (Mon=0), at `hour` UTC."""
    now = now or datetime.now(timezone.utc)
    back = (now.weekday() - weekday) % 7 or 7
    day = now - timedelta(days=back + 7 * weeks_back)
    return day.replace(hour=hour, minute=0, second=0, microsecond=0)


class MockEmbeddingProvider:
    """
    Deterministic mock embedding provider.

    Generates consistent embeddings from a text hash; counts calls.
    """

    name = "mock"
    dimension = DIM
    max_batch_size = 64
    request_delay = 0.0

    def __init__(self):
        self.batch_calls = 0
        self.texts: list[str] = []

    def embed(self, text: str) -> list[float]:
        h = hashlib.md5(text.encode()).hexdigest()
        head = [int(h[i:i + 2], 16) / 255.0 for i in range(0, 32, 2)]
        return (head * (DIM // len(head) + 1))[:DIM]

    async def embed_batch(self, texts):
        self.batch_calls += 1
        self.texts.extend(texts)
        return [self.embed(t) for t in texts]


class ScriptedEmbeddingProvider(MockEmbeddingProvider):
    """Raises the scripted exceptions (in order) before answering normally.

    A scripted float means "sleep that many seconds" (to trip the timeout).
    """

    def __init__(self, script=(), *, drop: int = 0, max_batch_size: int = 64):
        super().__init__()
        self.script = list(script)
        self.drop = drop
        self.max_batch_size = max_batch_size

    async def embed_batch(self, texts):
        self.batch_calls += 1
        if self.script:
            step = self.script.pop(0)
            if isinstance(step, float):
                await asyncio.sleep(step)
            elif step is not None:
                raise step
        vectors = [self.embed(t) for t in texts]
        return vectors[: len(vectors) - self.drop] if self.drop else vectors


@pytest_asyncio.fixture
async def engine():
    eng = make_engine("sqlite+aiosqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def mock_provider():
    return MockEmbeddingProvider()


@pytest.fixture
def add_event(session_factory):
    """Insert a KnowledgeEvent directly (bypassing the sink) and return it."""

    async def _add(
        user_id: uuid.UUID,
        content: str = "did a thing",
        *,
        source: str = "today:reflection",
        event_type: str = "log",
        timestamp: datetime | None = None,
        mood: str | None = None,
        embedding: list[float] | None = None,
    ) -> KnowledgeEvent:
        async with session_factory() as s:
            event = KnowledgeEvent(
                user_id=user_id,
                source=source,
                event_type=event_type,
                content=content,
                timestamp=timestamp or datetime.now(timezone.utc) - timedelta(hours=1),
                mood=mood,
                tags=[],
                raw_metadata={},
            )
            s.add(event)
            await s.flush()
            if embedding is not None:
                s.add(EventEmbedding(event_id=event.id, embedding=embedding))
            await s.commit()
            return event

    return _add


@pytest.fixture
def count_rows(session_factory):
    async def _count(model, *where) -> int:
        async with session_factory() as s:
            stmt = select(func.count()).select_from(model)
            if where:
                stmt = stmt.where(*where)
            return (await s.execute(stmt)).scalar_one()

    return _count


@pytest.fixture
def all_insights(session_factory):
    async def _all(user_id: uuid.UUID | None = None) -> list[KnowledgeInsight]:
        async with session_factory() as s:
            stmt = select(KnowledgeInsight).order_by(KnowledgeInsight.created_at)
            if user_id is not None:
                stmt = stmt.where(KnowledgeInsight.user_id == user_id)
            return list((await s.execute(stmt)).scalars().all())

    return _all
