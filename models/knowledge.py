"""Knowledge engine models: the append-only event log, its embeddings, and insights."""
import uuid
from datetime import datetime
from enum import Enum as PyEnum

from pgvector.sqlalchemy import Vector
from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, Uuid, false, func
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from core.settings import settings
from models.base import Base, utcnow

# JSONB / text[] on PostgreSQL, plain JSON elsewhere (SQLite in tests and local dev)
JsonDict = JSON().with_variant(JSONB(), "postgresql")
StringList = JSON().with_variant(ARRAY(String), "postgresql")


class EventType(str, PyEnum):
    create = "create"
    update = "update"
    upsert = "upsert"
    delete = "delete"
    log = "log"


class InsightScope(str, PyEnum):
    emotion = "emotion"
    daily = "daily"
    money = "money"
    project = "project"
    account = "account"


class KnowledgeEvent(Base):
    """One logged user activity. Append-only: never updated or deleted by the engine."""
    __tablename__ = "knowledge_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    source: Mapped[str] = mapped_column(Text)  # e.g. "today:reflection", "projects:task_completed"
    event_type: Mapped[str] = mapped_column(String(20))  # create | update | upsert | delete | log
    content: Mapped[str] = mapped_column(Text)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    project_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    mood: Mapped[str | None] = mapped_column(Text, nullable=True)
    sentiment: Mapped[str | None] = mapped_column(Text, nullable=True)  # reserved for later enrichment
    intensity: Mapped[int | None] = mapped_column(Integer, nullable=True)  # 1-5, reserved
    tags: Mapped[list[str]] = mapped_column(StringList, default=list)
    raw_metadata: Mapped[dict] = mapped_column(JsonDict, default=dict)


class EventEmbedding(Base):
    """At most one vector per event. Dimension is fixed for the whole table."""
    __tablename__ = "knowledge_event_embeddings"

    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("knowledge_events.id", ondelete="CASCADE"), primary_key=True
    )
    embedding = mapped_column(Vector(settings.embedding_dim), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    __table_args__ = (
        Index(
            "idx_knowledge_embeddings_vector",
            "embedding",
            postgresql_using="ivfflat",
            postgresql_with={"lists": 100},
            postgresql_ops={"embedding": "vector_l2_ops"},
        ),
    )


class KnowledgeInsight(Base):
    """A synthesized observation with an evidence trail.

    dismissed_at and muted are independent; either one hides the insight.
    """
    __tablename__ = "knowledge_insights"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    scope: Mapped[str] = mapped_column(Text)  # emotion | daily | money | project | account
    title: Mapped[str] = mapped_column(Text)
    body: Mapped[str] = mapped_column(Text)
    sources: Mapped[list[str]] = mapped_column(StringList, default=list)  # event ids
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dismissed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    muted: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    meta: Mapped[dict] = mapped_column(JsonDict, default=dict)


Index("idx_knowledge_events_user_time", KnowledgeEvent.user_id, KnowledgeEvent.timestamp.desc())
Index(
    "idx_knowledge_insights_user_scope",
    KnowledgeInsight.user_id,
    KnowledgeInsight.scope,
    KnowledgeInsight.created_at.desc(),
)
