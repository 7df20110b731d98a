import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Reset the connection pool for each test
    monkeypatch.setattr(db, "_pool", db.SQLiteConnectionPool(str(db_path), max_connections=10))
    db.init()
    return str(db_path)


@pytest.fixture
def seeded_scenario(temp_db):
    """One scenario with a small static bank: MC, true/false and short answer."""
    import db
    from schemas import AssessmentOption, AssessmentQuestion

    db.upsert_scenario(
        "feedback",
        "Delivering Difficult Feedback",
        tags=["Directness", "Empathy"],
        estimated_xp=150,
    )
    db.upsert_scenario("listening-lab", "Active Listening Lab", tags=["Active Listening"])
    db.save_question(
        AssessmentQuestion(
            id="q-mc",
            scenario_id="feedback",
            question_type="multiple-choice",
            prompt="Best opening?",
            options=[
                AssessmentOption(id="a", text="Soften with praise"),
                AssessmentOption(id="b", text="Name the behaviour and impact", is_correct=True),
                AssessmentOption(id="c", text="Compare with peers"),
            ],
            explanation="Concrete behaviour keeps it factual.",
            order_index=0,
            created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
    )
    db.save_question(
        AssessmentQuestion(
            id="q-tf",
            scenario_id="feedback",
            question_type="true-false",
            prompt="Timely feedback works better.",
            reference_answer="true",
            order_index=1,
            created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
    )
    db.save_question(
        AssessmentQuestion(
            id="q-sa",
            scenario_id="feedback",
            question_type="short-answer",
            prompt="Name the SBI model.",
            reference_answer="Situation Behaviour Impact",
            order_index=2,
            created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
    )
    return "feedback"
