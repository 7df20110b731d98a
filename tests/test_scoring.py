import pytest

from engines.scoring import score
from schemas import AssessmentOption, AssessmentQuestion


def _mc(explanation=None):
    return AssessmentQuestion(
        id="q1",
        scenario_id="s1",
        question_type="multiple-choice",
        prompt="Pick one",
        options=[
            AssessmentOption(id="opt-0", text="Interrupt"),
            AssessmentOption(id="opt-1", text="Reflect back", is_correct=True),
            AssessmentOption(id="opt-2", text="Change topic"),
        ],
        explanation=explanation,
    )


def test_multiple_choice_correct_by_option_id():
    result = score(_mc(), "opt-1")
    assert result.is_correct is True
    assert result.score == 100
    assert result.feedback == "Correct! Well done."


def test_multiple_choice_correct_by_option_text():
    result = score(_mc(), "reflect back ")
    assert result.is_correct is True
    assert result.score == 100


def test_multiple_choice_wrong_names_correct_option():
    result = score(_mc(explanation="Reflection shows you listened."), "opt-0")
    assert result.is_correct is False
    assert result.score == 0
    assert "Reflect back" in result.feedback
    assert result.feedback.startswith("Incorrect. The correct answer was: Reflect back")


def test_multiple_choice_unknown_option_is_wrong():
    assert score(_mc(), "opt-9").score == 0


@pytest.mark.parametrize("submitted", ["true", "TRUE", " True "])
def test_true_false_is_case_insensitive(submitted):
    question = AssessmentQuestion(
        id="tf", scenario_id="s1", question_type="true_false", prompt="?", reference_answer="True"
    )
    result = score(question, submitted)
    assert result.is_correct is True
    assert result.score == 100


def test_true_false_wrong():
    question = AssessmentQuestion(
        id="tf", scenario_id="s1", question_type="true-false", prompt="?", reference_answer="false"
    )
    result = score(question, "true")
    assert result.is_correct is False
    assert result.score == 0


def test_short_answer_exact_match_after_folding():
    question = AssessmentQuestion(
        id="sa", scenario_id="s1", question_type="short-answer", prompt="?", reference_answer="Anchor"
    )
    result = score(question, "  ANCHOR ")
    assert result.is_correct is True
    assert result.score == 100
    assert result.feedback == "Correct!"


@pytest.mark.parametrize("submitted", ["anchoring", "", "something else entirely"])
def test_short_answer_never_scores_zero(submitted):
    question = AssessmentQuestion(
        id="sa", scenario_id="s1", question_type="short-answer", prompt="?", reference_answer="anchor"
    )
    result = score(question, submitted)
    assert result.is_correct is False
    assert result.score == 50
    assert "close, but not quite right" in result.feedback
