"""Previous-best comparison, coaching recommendations and the executive report."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

import db
from schemas import (
    CoachingRecommendation,
    ComparisonMetric,
    CompetencyScore,
    SessionRecord,
    SessionSummary,
)

logger = logging.getLogger(__name__)

OVERALL_METRIC = "Overall Score"
WEAK_THRESHOLD = 70.0
STRONG_THRESHOLD = 80.0
PRACTICE_THRESHOLD = 75.0
MAX_RECOMMENDATIONS = 3

RelatedScenarioLookup = Callable[[str], Optional[Dict[str, Any]]]


def _change_type(delta: float) -> str:
    if delta > 0:
        return "increase"
    if delta < 0:
        return "decrease"
    return "stable"


def _fmt(score: float) -> str:
    return f"{float(score):g}"


def compare_with_previous(
    current_overall: float,
    current: Sequence[CompetencyScore],
    previous_overall: Optional[float],
    previous: Sequence[CompetencyScore],
) -> List[ComparisonMetric]:
    """Overall score always, competencies only when their score moved."""
    prev_overall = float(previous_overall or 0)
    overall_delta = float(current_overall or 0) - prev_overall
    metrics = [
        ComparisonMetric(
            name=OVERALL_METRIC,
            current=float(current_overall or 0),
            previous=prev_overall,
            change=abs(overall_delta),
            change_type=_change_type(overall_delta),
        )
    ]

    current_map = {row.competency_name: float(row.score) for row in current}
    previous_map = {row.competency_name: float(row.score) for row in previous}
    names = list(current_map)
    names.extend(name for name in previous_map if name not in current_map)
    for name in names:
        now_score = current_map.get(name, 0.0)
        then_score = previous_map.get(name, 0.0)
        delta = now_score - then_score
        if delta == 0:
            continue
        metrics.append(
            ComparisonMetric(
                name=name,
                current=now_score,
                previous=then_score,
                change=abs(delta),
                change_type=_change_type(delta),
            )
        )
    return metrics


def coaching_recommendations(
    competencies: Sequence[CompetencyScore],
    overall_score: Optional[float],
    find_related: RelatedScenarioLookup,
) -> List[CoachingRecommendation]:
    weak = sorted(
        (row for row in competencies if float(row.score) < WEAK_THRESHOLD),
        key=lambda row: (float(row.score), row.competency_name),
    )[:MAX_RECOMMENDATIONS]

    recommendations: List[CoachingRecommendation] = []
    for row in weak:
        related = find_related(row.competency_name)
        name = row.competency_name
        recommendations.append(
            CoachingRecommendation(
                id=f"rec-{row.id}",
                title=f"Improve {name}",
                description=row.feedback
                or f"Your {name} score is {_fmt(row.score)}%. Focus on this area to improve your overall performance.",
                action_type="scenario" if related else "resource",
                action_label="Start Scenario" if related else "View Resource",
                related_scenario_id=related["id"] if related else None,
            )
        )

    if not recommendations and float(overall_score or 0) < PRACTICE_THRESHOLD:
        recommendations.append(
            CoachingRecommendation(
                id="rec-general",
                title="Practice More Scenarios",
                description=(
                    "Your overall score suggests more practice would be beneficial. "
                    "Try completing similar scenarios to build confidence."
                ),
                action_type="scenario",
                action_label="Browse Scenarios",
            )
        )
    return recommendations


def _headline(overall: float, comparison: Sequence[ComparisonMetric]) -> str:
    if comparison:
        overall_metric = comparison[0]
        if overall_metric.change_type == "increase":
            return f"New personal best: up {_fmt(overall_metric.change)} points on your previous best."
        if overall_metric.change_type == "decrease":
            return f"{_fmt(overall_metric.change)} points below your previous best."
        return "Matched your previous best."
    if overall >= STRONG_THRESHOLD:
        return "Strong first attempt."
    return "First attempt recorded."


def build_session_summary(
    session: SessionRecord,
    *,
    scenario_title: str,
    competencies: Sequence[CompetencyScore],
    comparison: Sequence[ComparisonMetric],
    recommendations: Sequence[CoachingRecommendation],
    answers_total: int,
    answers_correct: int,
    total_turns: int,
    streak: int,
    now: Optional[datetime] = None,
) -> SessionSummary:
    overall = float(session.overall_score or 0)
    duration = 0
    if session.started_at and session.completed_at:
        duration = round((session.completed_at - session.started_at).total_seconds() / 60)
    accuracy = None
    if answers_total:
        accuracy = round(answers_correct / answers_total * 100, 1)

    payload: Dict[str, Any] = {
        "session_id": session.id,
        "scenario_id": session.scenario_id,
        "scenario_title": scenario_title,
        "overall_score": overall,
        "xp_earned": session.xp_earned,
        "duration_minutes": max(0, duration),
        "total_turns": total_turns,
        "competencies": list(competencies),
        "strengths": [c.competency_name for c in competencies if float(c.score) >= STRONG_THRESHOLD],
        "improvement_areas": [c.competency_name for c in competencies if float(c.score) < WEAK_THRESHOLD],
        "assessments_answered": answers_total,
        "assessment_accuracy": accuracy,
        "previous_best": list(comparison),
        "recommendations": list(recommendations),
        "streak": streak,
        "headline": _headline(overall, comparison),
    }
    if now is not None:
        payload["generated_at"] = now
    return SessionSummary(**payload)


class ReportAssembler:
    """Loads the rows a report needs for one completed session."""

    def __init__(self, db_module=db) -> None:
        self._db = db_module

    def find_related_scenario(self, competency_name: str, *, exclude_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        matches = self._db.list_scenarios_with_tag(competency_name, exclude_id=exclude_id, limit=1)
        return matches[0] if matches else None

    def previous_best(self, session: SessionRecord) -> List[ComparisonMetric]:
        previous = self._db.find_previous_best_session(session.user_id, session.scenario_id, session.id)
        if previous is None:
            return []
        return compare_with_previous(
            session.overall_score or 0,
            self._db.list_competency_scores(session.id),
            previous.overall_score,
            self._db.list_competency_scores(previous.id),
        )

    def recommendations(self, session: SessionRecord) -> List[CoachingRecommendation]:
        return coaching_recommendations(
            self._db.list_competency_scores(session.id),
            session.overall_score,
            self.find_related_scenario,
        )

    def summary(self, session: SessionRecord, *, streak: int, now: Optional[datetime] = None) -> SessionSummary:
        scenario = self._db.get_scenario(session.scenario_id) or {}
        competencies = self._db.list_competency_scores(session.id)
        answers = self._db.list_answers(session.id)
        summary = build_session_summary(
            session,
            scenario_title=scenario.get("title") or "Unknown Scenario",
            competencies=competencies,
            comparison=self.previous_best(session),
            recommendations=coaching_recommendations(
                competencies, session.overall_score, self.find_related_scenario
            ),
            answers_total=len(answers),
            answers_correct=sum(1 for a in answers if a.is_correct),
            total_turns=self._db.count_turns(session.id),
            streak=streak,
            now=now,
        )
        logger.info("Built summary for session %s (score %s)", session.id, summary.overall_score)
        return summary
