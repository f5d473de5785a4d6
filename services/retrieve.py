"""Semantic retrieval: "what else did I log that resembles this?"

Pure embedding distance, no recency weighting. Both the anchor and every
candidate are filtered on user_id in the same statement.
"""

import uuid
from dataclasses import dataclass

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from core.database import get_db as get_session
from models.knowledge import EventEmbedding, KnowledgeEvent
from models.vector import l2_distance
from services.auth import current_user_id, require_api_key
from services.schemas import KnowledgeEventOut, SimilarEventOut

router = APIRouter(prefix="/knowledge", tags=["knowledge"], dependencies=[Depends(require_api_key)])


@dataclass
class SimilarEvent:
    event: KnowledgeEvent
    distance: float


async def find_similar_events(
    db: AsyncSession, user_id: uuid.UUID, event_id: uuid.UUID, k: int = 5
) -> list[SimilarEvent]:
    """K nearest events of the same user, closest first, anchor excluded.

    An anchor without an embedding yet returns nothing, and so does k < 1.
    """
    if k < 1:
        return []

    anchor_embedding = aliased(EventEmbedding)
    anchor_event = aliased(KnowledgeEvent)
    raw_distance = l2_distance(EventEmbedding.embedding, anchor_embedding.embedding)
    distance = raw_distance.label("distance")

    stmt = (
        select(KnowledgeEvent, distance)
        .join(EventEmbedding, EventEmbedding.event_id == KnowledgeEvent.id)
        .join(anchor_embedding, anchor_embedding.event_id == event_id)
        .join(anchor_event, anchor_event.id == anchor_embedding.event_id)
        .where(
            anchor_event.user_id == user_id,
            KnowledgeEvent.user_id == user_id,
            KnowledgeEvent.id != event_id,
            raw_distance.is_not(None),
        )
        .order_by(distance.asc())
        .limit(k)
    )
    rows = (await db.execute(stmt)).all()
    return [SimilarEvent(event=r[0], distance=float(r.distance)) for r in rows]


@router.get("/events/{event_id}/similar", response_model=list[SimilarEventOut])
async def similar_events(
    event_id: uuid.UUID,
    k: int = Query(5, ge=1, le=50),
    user_id: uuid.UUID = Depends(current_user_id),
    db: AsyncSession = Depends(get_session),
):
    hits = await find_similar_events(db, user_id, event_id, k)
    return [
        SimilarEventOut(event=KnowledgeEventOut.model_validate(h.event), distance=h.distance)
        for h in hits
    ]
