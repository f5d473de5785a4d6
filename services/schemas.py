import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from models.knowledge import EventType


# --- Knowledge events ---

class KnowledgeEventCreate(BaseModel):
    # Loose on purpose: invalid input is dropped by the sink, not rejected.
    source: str = ""
    event_type: str = ""
    content: str = ""
    timestamp: datetime | None = None
    project_id: uuid.UUID | None = None
    mood: str | None = None
    raw_metadata: dict = Field(default_factory=dict)


class KnowledgeEventOut(BaseModel):
    id: uuid.UUID
    source: str
    event_type: EventType
    content: str
    timestamp: datetime
    project_id: uuid.UUID | None
    mood: str | None

    class Config:
        from_attributes = True


class SimilarEventOut(BaseModel):
    event: KnowledgeEventOut
    distance: float


# --- Insights ---

class InsightOut(BaseModel):
    id: uuid.UUID
    scope: str
    title: str
    body: str
    confidence: float
    created_at: datetime
    seen_at: datetime | None
    dismissed_at: datetime | None
    muted: bool
    meta: dict

    class Config:
        from_attributes = True


class InsightList(BaseModel):
    insights: list[InsightOut]


class MuteRequest(BaseModel):
    # If set, also mute every non-dismissed insight in this scope
    scope: str | None = None


class ProjectStats(BaseModel):
    total: int = 0
    avg_progress: float = 0.0


class TaskStats(BaseModel):
    total: int = 0
    completed: int = 0


class MoneyStats(BaseModel):
    count: int = 0
    total: float = 0.0


class AccountStats(BaseModel):
    """Account activity counts gathered by the caller (last 30 days where relevant)."""
    projects: ProjectStats = Field(default_factory=ProjectStats)
    tasks: TaskStats = Field(default_factory=TaskStats)
    expenses: MoneyStats = Field(default_factory=MoneyStats)
    income: MoneyStats = Field(default_factory=MoneyStats)
    intentions: int = 0
    emotions: int = 0
    calendar: int = 0
    lists: int = 0


class AccountFeedbackOut(BaseModel):
    title: str
    body: str
    stats: AccountStats
    generated_at: datetime
