"""Per-competency aggregation over a rolling window, trend labels and streaks."""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

import db
from schemas import CompetencyOverview, CompetencySummary

logger = logging.getLogger(__name__)

WINDOW_DAYS = 30
SPLIT_DAYS = 15
TREND_DELTA = 3.0


@dataclass(frozen=True)
class ScoreSample:
    name: str
    score: float
    completed_at: datetime


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def classify_trend(recent: List[float], older: List[float]) -> Optional[str]:
    """``improving``/``declining``/``stable``, or ``None`` when a half has no data."""
    if not recent or not older:
        return None
    delta = sum(recent) / len(recent) - sum(older) / len(older)
    if delta > TREND_DELTA:
        return "improving"
    if delta < -TREND_DELTA:
        return "declining"
    return "stable"


def aggregate_competencies(
    samples: Iterable[ScoreSample],
    now: datetime,
    *,
    window_days: int = WINDOW_DAYS,
    split_days: int = SPLIT_DAYS,
) -> List[CompetencySummary]:
    now = _as_utc(now)
    window_start = now - timedelta(days=window_days)
    split_at = now - timedelta(days=split_days)

    scores: Dict[str, List[float]] = defaultdict(list)
    recent: Dict[str, List[float]] = defaultdict(list)
    older: Dict[str, List[float]] = defaultdict(list)
    for sample in samples:
        completed = _as_utc(sample.completed_at)
        if completed < window_start:
            continue
        scores[sample.name].append(float(sample.score))
        if completed >= split_at:
            recent[sample.name].append(float(sample.score))
        else:
            older[sample.name].append(float(sample.score))

    summaries = [
        CompetencySummary(
            name=name,
            score=_round_half_up(sum(values) / len(values)),
            trend=classify_trend(recent.get(name, []), older.get(name, [])),
            samples=len(values),
        )
        for name, values in scores.items()
    ]
    summaries.sort(key=lambda item: (-item.score, item.name))
    return summaries


def compute_streak(completed: Iterable[datetime | date], today: date) -> int:
    """Consecutive UTC days with a completion, anchored at today or yesterday."""
    days = set()
    for value in completed:
        if isinstance(value, datetime):
            days.add(_as_utc(value).date())
        else:
            days.add(value)
    if not days:
        return 0
    latest = max(days)
    if latest not in (today, today - timedelta(days=1)):
        return 0
    streak = 0
    cursor = latest
    while cursor in days:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


class CompetencyTrendEngine:
    """Reads a learner's completed sessions and builds the competency overview."""

    def __init__(self, db_module=db) -> None:
        self._db = db_module

    def samples(self, user_id: str, now: datetime, *, window_days: int = WINDOW_DAYS) -> List[ScoreSample]:
        sessions = self._db.list_completed_sessions(
            user_id, since=_as_utc(now) - timedelta(days=window_days)
        )
        completed_at = {s.id: s.completed_at for s in sessions if s.completed_at is not None}
        rows = self._db.list_competency_scores_for_sessions(list(completed_at))
        return [
            ScoreSample(name=row.competency_name, score=row.score, completed_at=completed_at[row.session_id])
            for row in rows
        ]

    def aggregate(self, user_id: str, now: datetime) -> List[CompetencySummary]:
        return aggregate_competencies(self.samples(user_id, now), now)

    def streak(self, user_id: str, now: datetime) -> int:
        # Not limited to the trend window.
        sessions = self._db.list_completed_sessions(user_id)
        return compute_streak(
            (s.completed_at for s in sessions if s.completed_at is not None),
            _as_utc(now).date(),
        )

    def overview(self, user_id: str, now: datetime) -> CompetencyOverview:
        competencies = self.aggregate(user_id, now)
        streak = self.streak(user_id, now)
        logger.debug("Competency overview for %s: %d competencies, streak %d", user_id, len(competencies), streak)
        return CompetencyOverview(competencies=competencies, streak=streak, window_days=WINDOW_DAYS)
