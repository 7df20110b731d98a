"""Session lifecycle: ownership and status checks in front of the engines.

Every public operation takes a ``CallerContext``. Sessions are looked up by
``(session_id, ctx.user_id)`` so a caller can never reach another user's rows;
a session that exists but belongs to someone else is reported as ``NotFound``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import db
from engines import scoring
from engines.competency_trends import CompetencyTrendEngine
from engines.reporting import ReportAssembler
from engines.trigger_policy import AssessmentTriggerPolicy
from engines.turn_ledger import TurnLedger
from errors import InvalidState, NotFound
from identity import CallerContext, require_context
from schemas import (
    AssessmentQuestion,
    CoachingRecommendation,
    ComparisonMetric,
    CompetencyInput,
    CompetencyOverview,
    CompetencyScore,
    CompetencySummary,
    SessionAssessmentAnswer,
    SessionRecord,
    SessionSummary,
    TriggerVerdict,
    TurnMetrics,
    TurnRecord,
)

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("in-progress", "paused")

CompetencyArg = Union[
    Mapping[str, float],
    Sequence[Union[CompetencyInput, Mapping[str, Any]]],
    None,
]


def _feedback_type(score: float) -> str:
    if score >= 80:
        return "positive"
    if score < 70:
        return "negative"
    return "neutral"


def _normalize_competencies(competencies: CompetencyArg) -> List[CompetencyInput]:
    if not competencies:
        return []
    if isinstance(competencies, Mapping):
        items: Iterable[Any] = (
            {"name": name, "score": value} for name, value in competencies.items()
        )
    else:
        items = competencies
    normalized: Dict[str, CompetencyInput] = {}
    for item in items:
        entry = item if isinstance(item, CompetencyInput) else CompetencyInput.model_validate(item)
        # Last value wins for a repeated name.
        normalized[entry.name.strip()] = entry
    return list(normalized.values())


def _metrics_dict(metrics: Union[TurnMetrics, Mapping[str, Any], None]) -> Optional[Dict[str, Any]]:
    if metrics is None:
        return None
    if isinstance(metrics, TurnMetrics):
        return metrics.model_dump(exclude_none=True)
    return TurnMetrics.model_validate(dict(metrics)).model_dump(exclude_none=True)


class SessionStateMachine:
    """Coordinates the turn ledger, trigger policy, grading and reporting."""

    def __init__(
        self,
        db_module=db,
        *,
        generator=None,
        ledger: Optional[TurnLedger] = None,
        policy: Optional[AssessmentTriggerPolicy] = None,
        trends: Optional[CompetencyTrendEngine] = None,
        reports: Optional[ReportAssembler] = None,
    ) -> None:
        self._db = db_module
        self.ledger = ledger or TurnLedger(db_module)
        self.policy = policy or AssessmentTriggerPolicy(db_module, generator, ledger=self.ledger)
        self.trends = trends or CompetencyTrendEngine(db_module)
        self.reports = reports or ReportAssembler(db_module)

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------
    def _owned(self, ctx: CallerContext, session_id: str) -> SessionRecord:
        ctx = require_context(ctx)
        session = self._db.get_session(session_id, ctx.user_id)
        if session is None:
            raise NotFound(f"session {session_id} not found")
        return session

    def get_session(self, ctx: CallerContext, session_id: str) -> SessionRecord:
        return self._owned(ctx, session_id)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def start_session(self, ctx: CallerContext, scenario_id: str) -> SessionRecord:
        """Create a session, or hand back the caller's in-progress one for the scenario."""
        ctx = require_context(ctx)
        existing = self._db.find_in_progress_session(ctx.user_id, scenario_id)
        if existing is not None:
            logger.info("Resuming in-progress session %s for %s", existing.id, ctx.user_id)
            return existing

        scenario = self._db.get_scenario(scenario_id)
        if scenario is None or not scenario.get("is_active", True):
            raise NotFound(f"scenario {scenario_id} not found")

        session = self._db.create_session(ctx.user_id, scenario_id, now=ctx.now)
        self._db.mark_scenario_started(ctx.user_id, scenario_id, now=ctx.now)
        logger.info("Started session %s (user=%s, scenario=%s)", session.id, ctx.user_id, scenario_id)
        return session

    def _transition(
        self,
        ctx: CallerContext,
        session_id: str,
        from_statuses: Sequence[str],
        to_status: str,
        **fields: Any,
    ) -> SessionRecord:
        session = self._owned(ctx, session_id)
        if session.status not in from_statuses:
            raise InvalidState(f"cannot move session from {session.status} to {to_status}")
        changed = self._db.transition_session(
            session.id, ctx.user_id, from_statuses, to_status, now=ctx.now, **fields
        )
        if not changed:
            # Another request moved the session first.
            current = self._owned(ctx, session_id)
            raise InvalidState(f"cannot move session from {current.status} to {to_status}")
        logger.info("Session %s: %s -> %s", session.id, session.status, to_status)
        return self._owned(ctx, session_id)

    def pause_session(self, ctx: CallerContext, session_id: str) -> SessionRecord:
        return self._transition(ctx, session_id, ("in-progress",), "paused")

    def resume_session(self, ctx: CallerContext, session_id: str) -> SessionRecord:
        return self._transition(ctx, session_id, ("paused",), "in-progress")

    def abandon_session(self, ctx: CallerContext, session_id: str) -> SessionRecord:
        return self._transition(ctx, session_id, ACTIVE_STATUSES, "abandoned")

    def complete_session(
        self,
        ctx: CallerContext,
        session_id: str,
        overall_score: float,
        xp_earned: int = 0,
        competencies: CompetencyArg = None,
    ) -> List[CompetencySummary]:
        """Close the session, store its scores and return the rolling aggregation."""
        entries = _normalize_competencies(competencies)
        if not 0 <= float(overall_score) <= 100:
            raise ValueError("overall_score must be between 0 and 100")

        session = self._transition(
            ctx,
            session_id,
            ACTIVE_STATUSES,
            "completed",
            overall_score=float(overall_score),
            xp_earned=int(xp_earned or 0),
        )
        self._db.insert_competency_scores(
            session.id,
            [
                {
                    "competency_name": entry.name.strip(),
                    "score": entry.score,
                    "feedback": entry.feedback,
                    "feedback_type": entry.feedback_type or _feedback_type(entry.score),
                }
                for entry in entries
            ],
            now=ctx.now,
        )
        self._db.record_scenario_completion(
            ctx.user_id, session.scenario_id, session.id, float(overall_score), now=ctx.now
        )
        return self.trends.aggregate(ctx.user_id, ctx.now)

    # ------------------------------------------------------------------
    # turns and knowledge checks
    # ------------------------------------------------------------------
    def record_turn(
        self,
        ctx: CallerContext,
        session_id: str,
        speaker: str,
        message: str,
        metrics: Union[TurnMetrics, Mapping[str, Any], None] = None,
    ) -> Dict[str, Any]:
        session = self._owned(ctx, session_id)
        if session.status != "in-progress":
            raise InvalidState(f"cannot record a turn on a {session.status} session")

        snapshot = _metrics_dict(metrics)
        turn = self.ledger.append(session.id, speaker, message, metrics=snapshot, now=ctx.now)
        self._db.record_turn_progress(
            session.id, ctx.user_id, turn.turn_number, metrics=snapshot, now=ctx.now
        )
        verdict = self.policy.should_trigger(session, now=ctx.now)
        return {
            "turn_id": turn.id,
            "turn_number": turn.turn_number,
            "assessment_trigger": verdict,
        }

    def get_transcript(self, ctx: CallerContext, session_id: str) -> List[TurnRecord]:
        session = self._owned(ctx, session_id)
        return self.ledger.transcript(session.id)

    def check_trigger(self, ctx: CallerContext, session_id: str) -> TriggerVerdict:
        session = self._owned(ctx, session_id)
        if session.status != "in-progress":
            return TriggerVerdict(trigger=False, reason=f"Session is {session.status}")
        return self.policy.should_trigger(session, now=ctx.now)

    def get_immediate_assessment(self, ctx: CallerContext, session_id: str) -> Optional[AssessmentQuestion]:
        session = self._owned(ctx, session_id)
        if session.status not in ACTIVE_STATUSES:
            return None
        return self.policy.get_immediate_assessment(session)

    def _question_for(self, session: SessionRecord, assessment_id: str) -> AssessmentQuestion:
        question = self._db.get_question(assessment_id)
        if question is None:
            raise NotFound(f"assessment {assessment_id} not found")
        if question.source == "dynamic":
            if question.session_id != session.id:
                raise NotFound(f"assessment {assessment_id} not found")
        elif question.scenario_id != session.scenario_id:
            raise NotFound(f"assessment {assessment_id} not found")
        return question

    def submit_answer(
        self,
        ctx: CallerContext,
        session_id: str,
        assessment_id: str,
        submitted_answer: str,
    ) -> SessionAssessmentAnswer:
        """Grade and store an answer; resubmitting replaces the earlier one."""
        session = self._owned(ctx, session_id)
        if session.status not in ACTIVE_STATUSES:
            raise InvalidState(f"cannot answer on a {session.status} session")
        question = self._question_for(session, assessment_id)
        result = scoring.score(question, submitted_answer)
        answer = self._db.upsert_answer(
            session.id,
            question.id,
            str(submitted_answer),
            is_correct=result.is_correct,
            score=result.score,
            feedback=result.feedback,
            now=ctx.now,
        )
        logger.info(
            "Graded %s for session %s: correct=%s score=%s",
            question.id,
            session.id,
            result.is_correct,
            result.score,
        )
        return answer

    def list_answers(self, ctx: CallerContext, session_id: str) -> List[SessionAssessmentAnswer]:
        session = self._owned(ctx, session_id)
        return self._db.list_answers(session.id)

    # ------------------------------------------------------------------
    # reporting
    # ------------------------------------------------------------------
    def get_competencies(self, ctx: CallerContext, session_id: str) -> List[CompetencyScore]:
        session = self._owned(ctx, session_id)
        return self._db.list_competency_scores(session.id)

    def previous_best(self, ctx: CallerContext, session_id: str) -> List[ComparisonMetric]:
        return self.reports.previous_best(self._owned(ctx, session_id))

    def recommendations(self, ctx: CallerContext, session_id: str) -> List[CoachingRecommendation]:
        return self.reports.recommendations(self._owned(ctx, session_id))

    def _completed(self, ctx: CallerContext, session_id: str) -> SessionRecord:
        session = self._owned(ctx, session_id)
        if session.status != "completed":
            raise InvalidState("only completed sessions can be summarised")
        return session

    def generate_summary(self, ctx: CallerContext, session_id: str) -> SessionSummary:
        session = self._completed(ctx, session_id)
        summary = self.reports.summary(
            session, streak=self.trends.streak(ctx.user_id, ctx.now), now=ctx.now
        )
        self._db.save_session_summary(session.id, summary.model_dump(mode="json"), now=ctx.now)
        return summary

    def get_summary(self, ctx: CallerContext, session_id: str) -> SessionSummary:
        session = self._completed(ctx, session_id)
        stored = self._db.get_session_summary(session.id)
        if stored is not None:
            return SessionSummary.model_validate(stored)
        return self.generate_summary(ctx, session_id)

    def competency_overview(self, ctx: CallerContext) -> CompetencyOverview:
        ctx = require_context(ctx)
        return self.trends.overview(ctx.user_id, ctx.now)
