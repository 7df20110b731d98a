from pathlib import Path

import pytest

import db
from scenario_bank import DEFAULT_BANK_PATH, ScenarioBank, ScenarioValidationError

SAMPLE = """
scenarios:
  - id: upset-client
    title: Calming an Upset Client
    tags: [Empathy, Active Listening]
    estimated_xp: 120
    questions:
      - id: uc-1
        type: multiple_choice
        prompt: First move?
        options:
          - Explain policy
          - text: Acknowledge frustration
            correct: true
      - id: uc-2
        type: true-false
        prompt: Interrupting helps.
        answer: false
      - id: uc-3
        type: short-answer
        prompt: Name the listening technique.
        answer: reflecting
        order_index: 10
"""


@pytest.fixture
def sample_bank(tmp_path: Path) -> Path:
    path = tmp_path / "scenarios.yaml"
    path.write_text(SAMPLE, encoding="utf-8")
    return path


def test_bank_loads_and_syncs(temp_db, sample_bank: Path):
    bank = ScenarioBank(sample_bank)

    assert [s["id"] for s in bank.scenarios] == ["upset-client"]
    scenario = db.get_scenario("upset-client")
    assert scenario["tags"] == ["Empathy", "Active Listening"]
    assert scenario["estimated_xp"] == 120

    stored = db.list_static_questions("upset-client")
    assert [q.id for q in stored] == ["uc-1", "uc-2", "uc-3"]
    mc, tf, sa = stored
    assert mc.question_type == "multiple-choice"
    assert mc.correct_option().text == "Acknowledge frustration"
    assert mc.options[0].id == "uc-1-opt-0"
    assert tf.reference_answer == "false"
    assert sa.order_index == 10


def test_sync_is_idempotent(temp_db, sample_bank: Path):
    ScenarioBank(sample_bank)
    ScenarioBank(sample_bank)
    assert len(db.list_static_questions("upset-client")) == 3


def test_bundled_bank_is_valid():
    bank = ScenarioBank(DEFAULT_BANK_PATH, auto_sync=False)
    assert len(bank.scenarios) >= 3
    assert all(bank.questions_for(s["id"]) for s in bank.scenarios)


@pytest.mark.parametrize(
    "body, message",
    [
        ("scenarios: {}", "'scenarios' list"),
        ("scenarios:\n  - id: a\n", "missing required field 'title'"),
        ("scenarios:\n  - {id: a, title: A}\n  - {id: a, title: B}\n", "Duplicate scenario id"),
        (
            "scenarios:\n  - id: a\n    title: A\n    questions:\n"
            "      - {id: q, type: essay, prompt: p}\n",
            "unsupported question type",
        ),
        (
            "scenarios:\n  - id: a\n    title: A\n    questions:\n"
            "      - {id: q, type: multiple-choice, prompt: p, options: [x, y]}\n",
            "exactly one correct option",
        ),
        (
            "scenarios:\n  - id: a\n    title: A\n    questions:\n"
            "      - {id: q, type: true-false, prompt: p, answer: maybe}\n",
            "true or false",
        ),
        (
            "scenarios:\n  - id: a\n    title: A\n    questions:\n"
            "      - {id: q, type: short-answer, prompt: p}\n",
            "must provide an answer",
        ),
    ],
)
def test_invalid_banks_are_rejected(tmp_path: Path, body, message):
    path = tmp_path / "bad.yaml"
    path.write_text(body, encoding="utf-8")
    with pytest.raises(ScenarioValidationError, match=message):
        ScenarioBank(path, auto_sync=False)


def test_missing_file(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        ScenarioBank(tmp_path / "nope.yaml", auto_sync=False)
