"""Grading of submitted knowledge-check answers.

``score`` is a pure function of the question definition and the submitted
answer. Persisting the outcome is the caller's job.
"""

from __future__ import annotations

from typing import Optional

from schemas import AssessmentOption, AssessmentQuestion, GradeResult

FULL_CREDIT = 100
NO_CREDIT = 0
# Short answers are matched literally; a near miss still earns half credit.
SHORT_ANSWER_PARTIAL_CREDIT = 50


def _normalize(value: Optional[str]) -> str:
    return str(value or "").strip().casefold()


def _selected_option(question: AssessmentQuestion, submitted: str) -> Optional[AssessmentOption]:
    """Resolve a submission to an option by id first, then by exact text."""
    for option in question.options:
        if option.id == submitted:
            return option
    for option in question.options:
        if option.text == submitted:
            return option
    needle = _normalize(submitted)
    for option in question.options:
        if _normalize(option.text) == needle:
            return option
    return None


def _score_multiple_choice(question: AssessmentQuestion, submitted: str) -> GradeResult:
    selected = _selected_option(question, submitted)
    correct = question.correct_option()
    if selected is not None and selected.is_correct:
        return GradeResult(
            is_correct=True,
            score=FULL_CREDIT,
            feedback=question.explanation or "Correct! Well done.",
        )
    correct_text = correct.text if correct is not None else "N/A"
    feedback = f"Incorrect. The correct answer was: {correct_text}"
    if question.explanation:
        feedback = f"{feedback}. {question.explanation}"
    return GradeResult(is_correct=False, score=NO_CREDIT, feedback=feedback)


def _score_true_false(question: AssessmentQuestion, submitted: str) -> GradeResult:
    reference = _normalize(question.reference_answer)
    if reference and _normalize(submitted) == reference:
        return GradeResult(is_correct=True, score=FULL_CREDIT, feedback="Correct!")
    return GradeResult(
        is_correct=False,
        score=NO_CREDIT,
        feedback=f"Incorrect. The correct answer was: {question.reference_answer or 'N/A'}",
    )


def _score_short_answer(question: AssessmentQuestion, submitted: str) -> GradeResult:
    reference = _normalize(question.reference_answer)
    if reference and _normalize(submitted) == reference:
        return GradeResult(is_correct=True, score=FULL_CREDIT, feedback="Correct!")
    return GradeResult(
        is_correct=False,
        score=SHORT_ANSWER_PARTIAL_CREDIT,
        feedback="Your answer is close, but not quite right.",
    )


_SCORERS = {
    "multiple-choice": _score_multiple_choice,
    "true-false": _score_true_false,
    "short-answer": _score_short_answer,
}


def score(question: AssessmentQuestion, submitted_answer: str) -> GradeResult:
    """Grade ``submitted_answer`` against ``question``."""
    scorer = _SCORERS[question.question_type]
    return scorer(question, str(submitted_answer if submitted_answer is not None else ""))
