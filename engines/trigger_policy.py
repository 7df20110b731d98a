"""Decides when to interrupt a session with a knowledge check, and which one."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

import db
from engines.turn_ledger import TurnLedger
from env_validation import get_env_int
from question_generator import CONTEXT_TURNS, Fallback, Generated
from schemas import AssessmentQuestion, SessionRecord, TriggerVerdict

logger = logging.getLogger(__name__)

_ASSESSMENT_LOGGER = logging.getLogger("coachlab.assessment")

STRONG_CLARITY = 80.0
STRONG_EMPATHY = 70.0
STRONG_WINDOW = 3


@dataclass(frozen=True)
class TriggerThresholds:
    min_user_turns: int = 3
    cadence_turns: int = 5
    strong_cadence_turns: int = 3
    idle_minutes: int = 10

    @classmethod
    def from_env(cls) -> "TriggerThresholds":
        return cls(
            min_user_turns=get_env_int("TRIGGER_MIN_USER_TURNS", cls.min_user_turns),
            cadence_turns=get_env_int("TRIGGER_CADENCE_TURNS", cls.cadence_turns),
            strong_cadence_turns=get_env_int("TRIGGER_STRONG_CADENCE_TURNS", cls.strong_cadence_turns),
            idle_minutes=get_env_int("TRIGGER_IDLE_MINUTES", cls.idle_minutes),
        )


@dataclass
class DecisionSnapshot:
    """Everything the decision rule may look at for one session."""

    session_id: str
    total_turns: int
    user_turns: int
    answered_count: int
    elapsed_minutes: float
    recent_user_metrics: List[Dict[str, Any]] = field(default_factory=list)
    scenario: Optional[Dict[str, Any]] = None


DecisionRule = Callable[[DecisionSnapshot], Tuple[bool, str]]


def _average(values: Sequence[float]) -> Optional[float]:
    if not values:
        return None
    return sum(values) / len(values)


def _strong_recent_performance(metrics: Sequence[Dict[str, Any]]) -> bool:
    window = list(metrics)[-STRONG_WINDOW:]
    if len(window) < STRONG_WINDOW:
        return False
    clarity = _average([float(m["clarity"]) for m in window if m.get("clarity") is not None])
    empathy = _average([float(m["empathy"]) for m in window if m.get("empathy") is not None])
    if clarity is None or empathy is None:
        return False
    return clarity > STRONG_CLARITY and empathy > STRONG_EMPATHY


def default_decision(
    snapshot: DecisionSnapshot,
    thresholds: TriggerThresholds = TriggerThresholds(),
) -> Tuple[bool, str]:
    """Turn-cadence rule with a faster cadence for strong performers and an idle fallback."""
    if snapshot.user_turns < thresholds.min_user_turns:
        return False, "Not enough interactions yet"

    strong = _strong_recent_performance(snapshot.recent_user_metrics)
    cadence = thresholds.strong_cadence_turns if strong else thresholds.cadence_turns
    due = snapshot.user_turns // max(1, cadence)
    if snapshot.answered_count < due:
        if strong:
            return True, "Strong recent performance; checking understanding"
        return True, f"Knowledge check due after {snapshot.user_turns} learner turns"

    if snapshot.answered_count == 0 and snapshot.elapsed_minutes >= thresholds.idle_minutes:
        return True, f"No knowledge check yet after {int(snapshot.elapsed_minutes)} minutes"

    return False, "Waiting for a natural decision point"


def _json_log(payload: Dict[str, Any]) -> None:
    try:
        _ASSESSMENT_LOGGER.info(json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str))
    except (TypeError, ValueError):
        _ASSESSMENT_LOGGER.info(repr(payload))


class AssessmentTriggerPolicy:
    """Consults the ledger and answer history, then picks at most one question.

    Dynamic questions come first. Any failure of the generator falls back to
    the scenario's static bank, and an exhausted bank yields ``trigger=False``.
    """

    def __init__(
        self,
        db_module=db,
        generator=None,
        *,
        decide: Optional[DecisionRule] = None,
        ledger: Optional[TurnLedger] = None,
    ) -> None:
        self._db = db_module
        self._generator = generator
        self._decide = decide or partial(default_decision, thresholds=TriggerThresholds.from_env())
        self._ledger = ledger or TurnLedger(db_module)

    def snapshot(self, session: SessionRecord, *, now: Optional[datetime] = None) -> DecisionSnapshot:
        now = now or datetime.now(timezone.utc)
        started = session.started_at or session.created_at or now
        elapsed = max(0.0, (now - started).total_seconds() / 60.0)
        recent = self._ledger.recent(session.id, limit=CONTEXT_TURNS)
        return DecisionSnapshot(
            session_id=session.id,
            total_turns=self._ledger.count(session.id),
            user_turns=self._ledger.count(session.id, "user"),
            answered_count=len(self._db.answered_assessment_ids(session.id)),
            elapsed_minutes=elapsed,
            recent_user_metrics=[t.metrics for t in recent if t.speaker == "user" and t.metrics],
            scenario=self._db.get_scenario(session.scenario_id),
        )

    def should_trigger(self, session: SessionRecord, *, now: Optional[datetime] = None) -> TriggerVerdict:
        snap = self.snapshot(session, now=now)
        trigger, reason = self._decide(snap)
        assessment = None
        source = None
        if trigger:
            assessment, source = self._select(session, snap.scenario)
            if assessment is None:
                trigger, reason = False, "No unanswered knowledge checks remain"
        _json_log(
            {
                "event": "assessment_trigger",
                "session_id": session.id,
                "user_turns": snap.user_turns,
                "answered": snap.answered_count,
                "trigger": trigger,
                "reason": reason,
                "assessment_id": assessment.id if assessment else None,
                "source": source,
            }
        )
        return TriggerVerdict(trigger=trigger, reason=reason, assessment=assessment)

    def get_immediate_assessment(self, session: SessionRecord) -> Optional[AssessmentQuestion]:
        scenario = self._db.get_scenario(session.scenario_id)
        assessment, source = self._select(session, scenario)
        _json_log(
            {
                "event": "immediate_assessment",
                "session_id": session.id,
                "assessment_id": assessment.id if assessment else None,
                "source": source,
            }
        )
        return assessment

    def _select(
        self,
        session: SessionRecord,
        scenario: Optional[Dict[str, Any]],
    ) -> Tuple[Optional[AssessmentQuestion], Optional[str]]:
        answered = self._db.answered_assessment_ids(session.id)

        for pending in self._db.list_dynamic_questions(session.id):
            if pending.id not in answered:
                return pending, "dynamic"

        generated = self._generate(session, scenario, answered)
        if generated is not None:
            return generated, "dynamic"

        for question in self._db.list_static_questions(session.scenario_id):
            if question.id not in answered:
                return question, "static"
        return None, None

    def _generate(
        self,
        session: SessionRecord,
        scenario: Optional[Dict[str, Any]],
        answered: Set[str],
    ) -> Optional[AssessmentQuestion]:
        if self._generator is None:
            return None
        result = self._generator.generate(
            session.id,
            (scenario or {}).get("title"),
            scenario_id=session.scenario_id,
            turns=self._ledger.recent(session.id, limit=CONTEXT_TURNS),
        )
        if isinstance(result, Fallback):
            logger.info("Falling back to static bank for session %s: %s", session.id, result.reason)
            return None
        if isinstance(result, Generated) and result.question.id not in answered:
            return self._db.save_question(result.question)
        return None
