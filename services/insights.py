"""Insight generation job + the read path and user-facing mutators for insights.

The generator only ever inserts. seen_at / dismissed_at / muted belong to the
user-facing endpoints below.

Deduplication is a plain read followed by a write with no lock: two runs that
overlap can both pass the check and insert the same insight. This is accepted.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Sequence
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.database import async_session, get_db as get_session
from core.settings import settings
from models.base import utcnow
from models.knowledge import InsightScope, KnowledgeEvent, KnowledgeInsight
from services.auth import current_user_id, require_api_key
from services.detectors import DEFAULT_DETECTORS, Detector, InsightCandidate
from services.schemas import AccountFeedbackOut, AccountStats, InsightList, InsightOut, MuteRequest

logger = logging.getLogger(__name__)

WINDOW_DAYS = 30
MIN_EVENTS = 5
DEDUP_DAYS = 7
RECENT_PAGE_SIZE = 5
ACCOUNT_FEEDBACK_CONFIDENCE = 0.9


@dataclass
class InsightRunResult:
    users: int = 0
    skipped: int = 0
    created: int = 0
    detector_failures: int = 0


class InsightGenerator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
        *,
        detectors: Sequence[Detector] = DEFAULT_DETECTORS,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.detectors = tuple(detectors)
        self.tz = tz or ZoneInfo(settings.insight_timezone)
        self.clock = clock

    async def users_with_events(self, db: AsyncSession) -> list[uuid.UUID]:
        stmt = select(KnowledgeEvent.user_id).distinct()
        return list((await db.execute(stmt)).scalars().all())

    async def recent_events(self, db: AsyncSession, user_id: uuid.UUID, now: datetime) -> list[KnowledgeEvent]:
        stmt = (
            select(KnowledgeEvent)
            .where(
                KnowledgeEvent.user_id == user_id,
                KnowledgeEvent.timestamp >= now - timedelta(days=WINDOW_DAYS),
            )
            .order_by(KnowledgeEvent.timestamp.desc())
        )
        return list((await db.execute(stmt)).scalars().all())

    async def has_recent_duplicate(
        self, db: AsyncSession, user_id: uuid.UUID, candidate: InsightCandidate, now: datetime
    ) -> bool:
        stmt = (
            select(KnowledgeInsight.id)
            .where(
                KnowledgeInsight.user_id == user_id,
                KnowledgeInsight.scope == candidate.scope,
                KnowledgeInsight.title.icontains(candidate.title_pattern, autoescape=True),
                KnowledgeInsight.dismissed_at.is_(None),
                KnowledgeInsight.created_at >= now - timedelta(days=DEDUP_DAYS),
            )
            .limit(1)
        )
        return (await db.execute(stmt)).first() is not None

    async def generate_for_user(self, db: AsyncSession, user_id: uuid.UUID, result: InsightRunResult) -> int:
        now = self.clock()
        events = await self.recent_events(db, user_id, now)
        if len(events) < MIN_EVENTS:
            logger.info("User %s: not enough events (%d), skipping", user_id, len(events))
            result.skipped += 1
            return 0

        created = 0
        for detector in self.detectors:
            try:
                candidate = detector(events, self.tz)
            except Exception:
                logger.exception("Detector %s failed for user %s", getattr(detector, "__name__", detector), user_id)
                result.detector_failures += 1
                continue
            if candidate is None:
                continue

            if await self.has_recent_duplicate(db, user_id, candidate, now):
                logger.debug("User %s: %r already surfaced this week", user_id, candidate.title)
                continue

            db.add(
                KnowledgeInsight(
                    user_id=user_id,
                    scope=candidate.scope,
                    title=candidate.title,
                    body=candidate.body,
                    sources=candidate.sources,
                    confidence=candidate.confidence,
                    created_at=now,
                    meta=candidate.meta,
                )
            )
            await db.commit()
            created += 1
            logger.info("User %s: generated %s insight: %s", user_id, candidate.scope, candidate.title)
        return created

    async def run(self) -> InsightRunResult:
        result = InsightRunResult()
        async with self.session_factory() as db:
            user_ids = await self.users_with_events(db)

        for user_id in user_ids:
            result.users += 1
            # Fresh session per user so one user's failure can't poison the next
            async with self.session_factory() as db:
                try:
                    result.created += await self.generate_for_user(db, user_id, result)
                except Exception:
                    await db.rollback()
                    logger.exception("Insight generation failed for user %s", user_id)

        logger.info(
            "Insight generation complete: %d users, %d skipped, %d created",
            result.users, result.skipped, result.created,
        )
        return result


# --- Read path + external mutators ---

async def list_active_insights(db: AsyncSession, user_id: uuid.UUID, limit: int = RECENT_PAGE_SIZE) -> list[KnowledgeInsight]:
    """Non-dismissed, non-muted; highest confidence first, then newest."""
    stmt = (
        select(KnowledgeInsight)
        .where(
            KnowledgeInsight.user_id == user_id,
            KnowledgeInsight.dismissed_at.is_(None),
            KnowledgeInsight.muted.is_(False),
        )
        .order_by(KnowledgeInsight.confidence.desc(), KnowledgeInsight.created_at.desc())
        .limit(limit)
    )
    return list((await db.execute(stmt)).scalars().all())


async def _set_fields(db: AsyncSession, user_id: uuid.UUID, insight_id: uuid.UUID, **values) -> bool:
    stmt = (
        update(KnowledgeInsight)
        .where(KnowledgeInsight.id == insight_id, KnowledgeInsight.user_id == user_id)
        .values(**values)
    )
    res = await db.execute(stmt)
    await db.commit()
    return res.rowcount > 0


async def mark_seen(db: AsyncSession, user_id: uuid.UUID, insight_id: uuid.UUID) -> bool:
    return await _set_fields(db, user_id, insight_id, seen_at=utcnow())


async def dismiss(db: AsyncSession, user_id: uuid.UUID, insight_id: uuid.UUID) -> bool:
    return await _set_fields(db, user_id, insight_id, dismissed_at=utcnow())


async def mute(db: AsyncSession, user_id: uuid.UUID, insight_id: uuid.UUID, scope: str | None = None) -> bool:
    found = await _set_fields(db, user_id, insight_id, muted=True)
    if scope:
        await db.execute(
            update(KnowledgeInsight)
            .where(
                KnowledgeInsight.user_id == user_id,
                KnowledgeInsight.scope == scope,
                KnowledgeInsight.dismissed_at.is_(None),
            )
            .values(muted=True)
        )
        await db.commit()
    return found


# --- Account feedback ---

def _plural(n: int, word: str) -> str:
    return f"{n} {word}{'' if n == 1 else 's'}"


def build_account_feedback(stats: AccountStats) -> tuple[str, str]:
    observations: list[str] = []
    recommendations: list[str] = []

    projects = stats.projects
    if projects.total > 0:
        progress = round(projects.avg_progress)
        if projects.avg_progress < 30:
            observations.append(f"You have {_plural(projects.total, 'active project')}, but average progress is {progress}%.")
            recommendations.append("Consider focusing on fewer projects or breaking them into smaller milestones.")
        elif projects.avg_progress > 70:
            verb = "are" if projects.total > 1 else "is"
            observations.append(f"Great progress! Your {_plural(projects.total, 'project')} {verb} {progress}% complete on average.")
        else:
            observations.append(f"You're making steady progress across {_plural(projects.total, 'project')} ({progress}% average).")
    else:
        observations.append("No active projects yet.")
        recommendations.append("Consider starting a project to track meaningful progress.")

    tasks = stats.tasks
    if tasks.total > 0:
        rate = tasks.completed / tasks.total * 100
        if rate > 80:
            observations.append(f"Excellent task completion rate: {round(rate)}% ({tasks.completed}/{tasks.total} tasks).")
        elif rate < 50:
            observations.append(f"Task completion rate is {round(rate)}% ({tasks.completed}/{tasks.total} tasks).")
            recommendations.append("Try breaking down larger tasks or reviewing your task list regularly.")
        else:
            observations.append(f"You've completed {tasks.completed} of {tasks.total} tasks ({round(rate)}% completion rate).")

    if stats.expenses.count > 0 or stats.income.count > 0:
        net = stats.income.total - stats.expenses.total
        if net > 0:
            observations.append(
                f"Positive cash flow: ${net:,.2f} net income after {_plural(stats.expenses.count, 'expense')} this month."
            )
        elif net < 0:
            observations.append(f"Negative cash flow: ${abs(net):,.2f} more expenses than income this month.")
            recommendations.append("Review your spending patterns and consider adjusting your budget.")
        if stats.expenses.count > 50:
            observations.append(f"You're tracking expenses actively ({stats.expenses.count} entries this month).")
    else:
        observations.append("No financial data tracked yet.")
        recommendations.append("Start tracking income and expenses for better financial awareness.")

    if stats.intentions > 0:
        observations.append(f"You've set {_plural(stats.intentions, 'daily intention')} in the last 30 days.")
        if stats.intentions < 10:
            recommendations.append("Setting daily intentions more consistently can help focus your day.")
    if stats.emotions > 0:
        observations.append(f"You've logged {_plural(stats.emotions, 'emotion')} in the last 30 days.")
    if stats.calendar > 0:
        observations.append(f"You have {_plural(stats.calendar, 'calendar event')} scheduled this month.")
    if stats.lists > 0:
        observations.append(f"You're using {_plural(stats.lists, 'list')} to organize your thoughts.")

    activity = projects.total + tasks.total + stats.intentions + stats.emotions + stats.calendar
    if activity == 0:
        title = "Getting Started"
        summary = "Your account is new. Start by creating a project, setting daily intentions, or tracking your expenses."
    elif activity < 20:
        title = "Building Momentum"
        summary = "You're getting started with the system. Keep building consistency by using it daily."
    elif activity < 100:
        title = "Active User"
        summary = "You're actively using the system. Great consistency!"
    else:
        title = "Power User"
        summary = "You're making excellent use of the system with high engagement across multiple features."

    lines = [summary, "", "**Observations:**", *(f"• {o}" for o in observations), ""]
    if recommendations:
        lines += ["**Recommendations:**", *(f"• {r}" for r in recommendations)]
    return title, "\n".join(lines)


async def record_account_feedback(db: AsyncSession, user_id: uuid.UUID, stats: AccountStats) -> AccountFeedbackOut:
    title, body = build_account_feedback(stats)
    generated_at = datetime.now(timezone.utc)
    db.add(
        KnowledgeInsight(
            user_id=user_id,
            scope=InsightScope.account.value,
            title=title,
            body=body,
            sources=[],
            confidence=ACCOUNT_FEEDBACK_CONFIDENCE,
            created_at=generated_at,
            meta={
                "type": "account_feedback",
                "stats": stats.model_dump(),
                "generated_at": generated_at.isoformat(),
            },
        )
    )
    await db.commit()
    return AccountFeedbackOut(title=title, body=body, stats=stats, generated_at=generated_at)


router = APIRouter(prefix="/insights", tags=["insights"], dependencies=[Depends(require_api_key)])


@router.get("", response_model=InsightList)
async def get_insights(user_id: uuid.UUID = Depends(current_user_id), db: AsyncSession = Depends(get_session)):
    insights = await list_active_insights(db, user_id)
    return InsightList(insights=[InsightOut.model_validate(i) for i in insights])


@router.post("/account-feedback", response_model=AccountFeedbackOut, status_code=201)
async def account_feedback(
    stats: AccountStats,
    user_id: uuid.UUID = Depends(current_user_id),
    db: AsyncSession = Depends(get_session),
):
    return await record_account_feedback(db, user_id, stats)


@router.post("/{insight_id}/seen")
async def seen_insight(
    insight_id: uuid.UUID, user_id: uuid.UUID = Depends(current_user_id), db: AsyncSession = Depends(get_session)
):
    if not await mark_seen(db, user_id, insight_id):
        raise HTTPException(404, "Insight not found")
    return {"success": True}


@router.post("/{insight_id}/dismiss")
async def dismiss_insight(
    insight_id: uuid.UUID, user_id: uuid.UUID = Depends(current_user_id), db: AsyncSession = Depends(get_session)
):
    if not await dismiss(db, user_id, insight_id):
        raise HTTPException(404, "Insight not found")
    return {"success": True}


@router.post("/{insight_id}/mute")
async def mute_insight(
    insight_id: uuid.UUID,
    req: MuteRequest | None = None,
    user_id: uuid.UUID = Depends(current_user_id),
    db: AsyncSession = Depends(get_session),
):
    if not await mute(db, user_id, insight_id, req.scope if req else None):
        raise HTTPException(404, "Insight not found")
    return {"success": True}
