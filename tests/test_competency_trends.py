from datetime import date, datetime, timedelta, timezone

import pytest

import db
from engines.competency_trends import (
    CompetencyTrendEngine,
    ScoreSample,
    aggregate_competencies,
    classify_trend,
    compute_streak,
)

NOW = datetime(2024, 3, 31, 12, 0, tzinfo=timezone.utc)


def _samples(name, older, recent):
    samples = [ScoreSample(name, s, NOW - timedelta(days=20 + i)) for i, s in enumerate(older)]
    samples += [ScoreSample(name, s, NOW - timedelta(days=2 + i)) for i, s in enumerate(recent)]
    return samples


@pytest.mark.parametrize(
    "older, recent, expected",
    [
        ([60, 62, 61], [70, 72, 71], "improving"),
        ([70, 72, 71], [60, 62, 61], "declining"),
        ([65, 66], [66, 65], "stable"),
    ],
)
def test_trend_classification(older, recent, expected):
    assert classify_trend(recent, older) == expected
    [summary] = aggregate_competencies(_samples("Empathy", older, recent), NOW)
    assert summary.trend == expected


def test_no_trend_without_both_halves():
    [summary] = aggregate_competencies(_samples("Clarity", [], [70, 80]), NOW)
    assert summary.trend is None
    assert summary.score == 75
    assert summary.samples == 2


def test_window_excludes_old_samples_and_sorts_by_score():
    samples = [
        ScoreSample("Clarity", 90, NOW - timedelta(days=1)),
        ScoreSample("Empathy", 70, NOW - timedelta(days=3)),
        ScoreSample("Empathy", 71, NOW - timedelta(days=4)),
        ScoreSample("Directness", 10, NOW - timedelta(days=45)),
    ]
    summaries = aggregate_competencies(samples, NOW)
    assert [s.name for s in summaries] == ["Clarity", "Empathy"]
    assert summaries[1].score == 71  # 70.5 rounds half up


def test_streak_counts_consecutive_days():
    days = [date(2024, 1, 1), date(2024, 1, 2), date(2024, 1, 3)]
    assert compute_streak(days, date(2024, 1, 3)) == 3


def test_streak_anchored_at_yesterday():
    days = [date(2024, 1, 1), date(2024, 1, 2)]
    assert compute_streak(days, date(2024, 1, 3)) == 2


def test_streak_broken_after_gap():
    assert compute_streak([date(2024, 1, 1)], date(2024, 1, 4)) == 0
    assert compute_streak([], date(2024, 1, 4)) == 0


def test_streak_uses_utc_dates():
    late_evening = datetime(2024, 1, 2, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
    # 04:30 UTC on the 3rd
    assert compute_streak([late_evening], date(2024, 1, 3)) == 1


def _complete(user, scenario, when, scores):
    session = db.create_session(user, scenario, now=when - timedelta(minutes=20))
    db.transition_session(session.id, user, ("in-progress",), "completed", now=when, overall_score=80, xp_earned=10)
    db.insert_competency_scores(
        session.id,
        [{"competency_name": name, "score": value} for name, value in scores.items()],
        now=when,
    )
    return session


def test_engine_overview_from_store(seeded_scenario):
    _complete("learner-1", "feedback", NOW - timedelta(days=20), {"Empathy": 60})
    _complete("learner-1", "feedback", NOW - timedelta(days=1), {"Empathy": 70, "Clarity": 88})
    _complete("learner-1", "feedback", NOW, {"Empathy": 80})
    _complete("someone-else", "feedback", NOW, {"Empathy": 5})

    overview = CompetencyTrendEngine().overview("learner-1", NOW)

    by_name = {c.name: c for c in overview.competencies}
    assert by_name["Empathy"].score == 70
    assert by_name["Empathy"].trend == "improving"
    assert by_name["Clarity"].trend is None
    assert overview.streak == 2
    assert overview.window_days == 30
