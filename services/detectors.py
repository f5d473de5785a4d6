"""Rule-based pattern detectors over a user's recent knowledge events.

Each detector looks at one slice of events and returns at most one
InsightCandidate. Thresholds and confidences are fixed constants.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Callable, Sequence

from models.knowledge import InsightScope, KnowledgeEvent

DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

MOOD_CONFIDENCE = 0.7
PRODUCTIVITY_CONFIDENCE = 0.6
WEEKEND_SPENDING_CONFIDENCE = 0.65
MORNING_PRODUCTIVITY_CONFIDENCE = 0.6

MOOD_MIN_COUNT = 3
MOOD_MAX_SOURCES = 5

REFLECTION_SOURCE = "today:reflection"
PRODUCTIVITY_KEYWORDS = ("productive", "focused", "accomplished")
PRODUCTIVITY_MIN_REFLECTIONS = 5
PRODUCTIVITY_MIN_COUNT = 3

EXPENSE_SOURCE = "money:expense"
WEEKEND_MIN_EXPENSES = 5
WEEKEND_MIN_COUNT = 3

TASK_COMPLETED_SOURCE = "projects:task_completed"
MORNING_HOURS = (6, 12)
MORNING_MIN_COMPLETIONS = 3
MORNING_MIN_COUNT = 2

PATTERN_MAX_SOURCES = 3


@dataclass
class InsightCandidate:
    scope: str
    title: str
    body: str
    # Case-insensitive substring of title used for the cooldown check
    title_pattern: str
    confidence: float
    sources: list[str] = field(default_factory=list)
    meta: dict = field(default_factory=dict)


Detector = Callable[[Sequence[KnowledgeEvent], tzinfo], "InsightCandidate | None"]


def local_time(ts: datetime, tz: tzinfo) -> datetime:
    """Naive timestamps are UTC (SQLite drops the offset)."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(tz)


def normalize_mood(mood: str) -> str:
    return mood.strip().lower()


MOOD_MESSAGES = {
    "overwhelmed": (
        "Feeling overwhelmed pattern",
        "I noticed you've felt overwhelmed {count} times recently. Want to explore what's behind it?",
    ),
    "focused": (
        "Feeling focused pattern",
        "You've felt focused {count} times recently. What helps you get into that state?",
    ),
    "grateful": (
        "Grateful moments",
        "You've expressed gratitude {count} times recently. That's a good sign. What's making you feel grateful?",
    ),
    "frustrated": (
        "Frustrated pattern",
        "I noticed some frustration ({count} times). Want to talk about what's causing it?",
    ),
}


def detect_mood_pattern(events: Sequence[KnowledgeEvent], tz: tzinfo) -> InsightCandidate | None:
    mood_events = [(normalize_mood(e.mood), e) for e in events if e.mood and e.mood.strip()]
    if not mood_events:
        return None

    # Ties go to the mood seen first, i.e. the most recent one
    mood, count = Counter(m for m, _ in mood_events).most_common(1)[0]
    if count < MOOD_MIN_COUNT:
        return None

    title, body = MOOD_MESSAGES.get(
        mood,
        (f"Mood pattern: {mood}", "You've felt {mood} {count} times recently. Want to explore that pattern?"),
    )
    supporting = [e for m, e in mood_events if m == mood]
    return InsightCandidate(
        scope=InsightScope.emotion.value,
        title=title,
        body=body.format(mood=mood, count=count),
        title_pattern=mood,
        confidence=MOOD_CONFIDENCE,
        sources=[str(e.id) for e in supporting[:MOOD_MAX_SOURCES]],
        meta={
            "pattern": "mood",
            "mood": mood,
            "count": count,
            "total": len(mood_events),
            "threshold": MOOD_MIN_COUNT,
        },
    )


def detect_productivity_pattern(events: Sequence[KnowledgeEvent], tz: tzinfo) -> InsightCandidate | None:
    reflections = [e for e in events if e.source == REFLECTION_SOURCE]
    if len(reflections) < PRODUCTIVITY_MIN_REFLECTIONS:
        return None

    productive = [
        r for r in reflections
        if any(word in r.content.lower() for word in PRODUCTIVITY_KEYWORDS)
    ]
    if len(productive) < PRODUCTIVITY_MIN_COUNT:
        return None

    best_day = Counter(local_time(r.timestamp, tz).weekday() for r in productive).most_common(1)[0][0]
    return InsightCandidate(
        scope=InsightScope.daily.value,
        title="Productivity pattern",
        body=f"You've felt most productive on {DAY_NAMES[best_day]}s recently. Maybe that's when you're in your flow?",
        title_pattern="productivity",
        confidence=PRODUCTIVITY_CONFIDENCE,
        sources=[str(e.id) for e in productive[:PATTERN_MAX_SOURCES]],
        meta={
            "pattern": "productivity",
            "count": len(productive),
            "reflections": len(reflections),
            "keywords": list(PRODUCTIVITY_KEYWORDS),
            "threshold": PRODUCTIVITY_MIN_COUNT,
            "min_reflections": PRODUCTIVITY_MIN_REFLECTIONS,
        },
    )


def detect_weekend_spending(events: Sequence[KnowledgeEvent], tz: tzinfo) -> InsightCandidate | None:
    expenses = [e for e in events if e.source == EXPENSE_SOURCE]
    if len(expenses) < WEEKEND_MIN_EXPENSES:
        return None

    weekend = [e for e in expenses if local_time(e.timestamp, tz).weekday() >= 5]
    if len(weekend) < WEEKEND_MIN_COUNT:
        return None

    return InsightCandidate(
        scope=InsightScope.money.value,
        title="Weekend spending pattern",
        body=(
            f"I noticed you tend to spend more on weekends. That's {len(weekend)} out of "
            f"{len(expenses)} expenses. Want to explore if that's intentional?"
        ),
        title_pattern="weekend",
        confidence=WEEKEND_SPENDING_CONFIDENCE,
        sources=[str(e.id) for e in weekend[:PATTERN_MAX_SOURCES]],
        meta={
            "pattern": "weekend_spending",
            "count": len(weekend),
            "expenses": len(expenses),
            "threshold": WEEKEND_MIN_COUNT,
            "min_expenses": WEEKEND_MIN_EXPENSES,
        },
    )


def detect_morning_productivity(events: Sequence[KnowledgeEvent], tz: tzinfo) -> InsightCandidate | None:
    completions = [e for e in events if e.source == TASK_COMPLETED_SOURCE]
    if len(completions) < MORNING_MIN_COMPLETIONS:
        return None

    start, end = MORNING_HOURS
    morning = [e for e in completions if start <= local_time(e.timestamp, tz).hour < end]
    if len(morning) < MORNING_MIN_COUNT:
        return None

    return InsightCandidate(
        scope=InsightScope.project.value,
        title="Morning productivity pattern",
        body=(
            f"You've completed {len(morning)} tasks in the morning recently. "
            "Maybe that's when you're most focused?"
        ),
        title_pattern="morning",
        confidence=MORNING_PRODUCTIVITY_CONFIDENCE,
        sources=[str(e.id) for e in morning[:PATTERN_MAX_SOURCES]],
        meta={
            "pattern": "morning_productivity",
            "count": len(morning),
            "completions": len(completions),
            "hours": list(MORNING_HOURS),
            "threshold": MORNING_MIN_COUNT,
            "min_completions": MORNING_MIN_COMPLETIONS,
        },
    )


DEFAULT_DETECTORS: tuple[Detector, ...] = (
    detect_mood_pattern,
    detect_productivity_pattern,
    detect_weekend_spending,
    detect_morning_productivity,
)
