"""Event capture: the single "log this" entry point every feature calls.

Best-effort sink. A failure here must never block or fail the feature that
triggered it, so record() validates quietly and swallows storage errors.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Protocol

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.database import async_session
from models.base import utcnow
from models.knowledge import EventType, KnowledgeEvent
from services.auth import current_user_id, require_api_key
from services.schemas import KnowledgeEventCreate

logger = logging.getLogger(__name__)

EVENT_TYPES = frozenset(t.value for t in EventType)


class KnowledgeSink(Protocol):
    async def record(
        self,
        *,
        user_id: uuid.UUID | str | None,
        source: str | None,
        event_type: str | None,
        content: str | None,
        timestamp: datetime | None = None,
        project_id: uuid.UUID | None = None,
        mood: str | None = None,
        raw_metadata: dict | None = None,
    ) -> None:
        ...


def _as_uuid(value) -> uuid.UUID | None:
    if not value:
        return None
    try:
        return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
    except ValueError:
        return None


def _as_utc(ts: datetime | None) -> datetime:
    if ts is None:
        return utcnow()
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


class DatabaseKnowledgeSink:
    """Appends KnowledgeEvent rows. Never raises."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = async_session):
        self.session_factory = session_factory

    async def record(
        self,
        *,
        user_id: uuid.UUID | str | None,
        source: str | None,
        event_type: str | None,
        content: str | None,
        timestamp: datetime | None = None,
        project_id: uuid.UUID | None = None,
        mood: str | None = None,
        raw_metadata: dict | None = None,
    ) -> None:
        user_id = _as_uuid(user_id)
        content = (content or "").strip()
        event_type = getattr(event_type, "value", event_type)
        if not user_id or not source or not content or event_type not in EVENT_TYPES:
            logger.debug("Dropping knowledge event (source=%r, event_type=%r): missing field", source, event_type)
            return

        try:
            async with self.session_factory() as db:
                db.add(
                    KnowledgeEvent(
                        user_id=user_id,
                        source=source,
                        event_type=event_type,
                        content=content,
                        timestamp=_as_utc(timestamp),
                        project_id=project_id,
                        mood=mood or None,
                        tags=[],
                        raw_metadata=raw_metadata or {},
                    )
                )
                await db.commit()
        except Exception:
            # Log but don't break the user flow
            logger.exception("Failed to create knowledge event (source=%s)", source)


knowledge_sink: KnowledgeSink = DatabaseKnowledgeSink()


router = APIRouter(prefix="/knowledge", tags=["knowledge"], dependencies=[Depends(require_api_key)])


@router.post("/events", status_code=202)
async def capture_event(req: KnowledgeEventCreate, user_id: uuid.UUID = Depends(current_user_id)):
    """Accepts anything; invalid or failed events are dropped silently."""
    await knowledge_sink.record(
        user_id=user_id,
        source=req.source,
        event_type=req.event_type,
        content=req.content,
        timestamp=req.timestamp,
        project_id=req.project_id,
        mood=req.mood,
        raw_metadata=req.raw_metadata,
    )
    return {"accepted": True}
