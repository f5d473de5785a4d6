"""Embedding pipeline: keeps knowledge_event_embeddings caught up with knowledge_events.

One run = select the newest un-embedded events, embed them through the
configured provider, upsert the vectors. Any provider failure that survives
the single retry ends the run with nothing from the batch persisted; the next
run picks the same backlog up again.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.database import async_session
from core.settings import settings
from models.base import utcnow
from models.knowledge import EventEmbedding, KnowledgeEvent
from services.embeddings import EmbeddingProvider, EmbeddingProviderError, TransientProviderError

logger = logging.getLogger(__name__)


class BatchShapeError(EmbeddingProviderError):
    """Provider returned a different number of vectors than texts."""


@dataclass
class EmbeddingRunResult:
    selected: int = 0
    embedded: int = 0
    aborted: bool = False
    reason: str | None = None


class EmbeddingPipeline:
    def __init__(
        self,
        provider: EmbeddingProvider,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
        *,
        batch_size: int = settings.embedding_batch_size,
        call_timeout: float = settings.embedding_timeout_seconds,
        retry_delay: float = settings.embedding_retry_delay_seconds,
    ):
        self.provider = provider
        self.session_factory = session_factory
        self.batch_size = batch_size
        self.call_timeout = call_timeout
        self.retry_delay = retry_delay

    async def select_unembedded(self, db: AsyncSession, limit: int) -> list[KnowledgeEvent]:
        """Newest first: under backlog, recent activity becomes searchable before old debt."""
        stmt = (
            select(KnowledgeEvent)
            .outerjoin(EventEmbedding, EventEmbedding.event_id == KnowledgeEvent.id)
            .where(EventEmbedding.event_id.is_(None))
            .order_by(KnowledgeEvent.timestamp.desc())
            .limit(limit)
        )
        return list((await db.execute(stmt)).scalars().all())

    async def _call_once(self, texts: Sequence[str]) -> list[list[float]]:
        return await asyncio.wait_for(self.provider.embed_batch(texts), timeout=self.call_timeout)

    async def _call_provider(self, texts: Sequence[str]) -> list[list[float]]:
        """Bounded call with exactly one fixed-delay retry on transient failure."""
        try:
            return await self._call_once(texts)
        except (TransientProviderError, asyncio.TimeoutError) as e:
            logger.warning("Transient embedding failure (%s), retrying once in %.1fs", _describe(e), self.retry_delay)
        await asyncio.sleep(self.retry_delay)
        try:
            return await self._call_once(texts)
        except (TransientProviderError, asyncio.TimeoutError) as e:
            raise TransientProviderError(f"provider failed after retry: {_describe(e)}") from e

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """One vector per text, in order. Raises on any failure; never returns a partial batch."""
        step = max(1, self.provider.max_batch_size)
        vectors: list[list[float]] = []
        for start in range(0, len(texts), step):
            if start and self.provider.request_delay:
                await asyncio.sleep(self.provider.request_delay)
            chunk = texts[start:start + step]
            out = await self._call_provider(chunk)
            if out is None or len(out) != len(chunk):
                raise BatchShapeError(f"Expected {len(chunk)} vectors, got {len(out) if out is not None else 0}")
            vectors.extend(out)
        if len(vectors) != len(texts):
            raise BatchShapeError(f"Expected {len(texts)} vectors, got {len(vectors)}")
        return vectors

    async def persist(self, db: AsyncSession, event_id: uuid.UUID, vector: Sequence[float]) -> None:
        """Insert or overwrite the vector for one event. Caller commits."""
        insert = pg_insert if db.get_bind().dialect.name == "postgresql" else sqlite_insert
        stmt = insert(EventEmbedding).values(event_id=event_id, embedding=list(vector), created_at=utcnow())
        stmt = stmt.on_conflict_do_update(
            index_elements=[EventEmbedding.event_id],
            set_={"embedding": stmt.excluded.embedding, "created_at": stmt.excluded.created_at},
        )
        await db.execute(stmt)

    async def run(self) -> EmbeddingRunResult:
        result = EmbeddingRunResult()
        async with self.session_factory() as db:
            events = await self.select_unembedded(db, self.batch_size)
            result.selected = len(events)
            if not events:
                logger.info("No new knowledge events to embed.")
                return result

            logger.info("Embedding %d knowledge events with %s", len(events), self.provider.name)
            try:
                vectors = await self.embed_batch([e.content for e in events])
            except BatchShapeError as e:
                logger.error("Embedding response length mismatch: %s", e)
                return _abort(result, str(e))
            except EmbeddingProviderError as e:
                logger.error("Knowledge embedding run aborted: %s", e)
                return _abort(result, str(e))
            except Exception as e:
                logger.exception("Knowledge embedding job failed")
                return _abort(result, _describe(e))

            try:
                for event, vector in zip(events, vectors, strict=True):
                    await self.persist(db, event.id, vector)
                await db.commit()
            except Exception as e:
                await db.rollback()
                logger.exception("Failed to store embeddings; batch left for next run")
                return _abort(result, f"persist failed: {e}")

        result.embedded = len(vectors)
        logger.info("Stored embeddings for %d knowledge events.", result.embedded)
        return result


def _describe(e: BaseException) -> str:
    return str(e) or type(e).__name__


def _abort(result: EmbeddingRunResult, reason: str) -> EmbeddingRunResult:
    result.aborted = True
    result.reason = reason
    return result
