import sqlite3
import threading
from datetime import datetime, timezone

import pytest

import db
from engines.turn_ledger import TurnLedger
from errors import PersistenceConflict


def _session(user="learner-1", scenario="feedback"):
    return db.create_session(user, scenario, now=datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))


def test_turn_numbers_are_gap_free(seeded_scenario):
    session = _session()
    ledger = TurnLedger()

    numbers = [ledger.append(session.id, "user", f"message {i}").turn_number for i in range(6)]

    assert numbers == [1, 2, 3, 4, 5, 6]
    transcript = ledger.transcript(session.id)
    assert [t.turn_number for t in transcript] == [1, 2, 3, 4, 5, 6]
    assert [t.message for t in transcript][0] == "message 0"


def test_next_turn_number_and_counts(seeded_scenario):
    session = _session()
    ledger = TurnLedger()
    assert ledger.next_turn_number(session.id) == 1

    ledger.append(session.id, "user", "hi")
    ledger.append(session.id, "client", "hello")

    assert ledger.next_turn_number(session.id) == 3
    assert ledger.count(session.id) == 2
    assert ledger.count(session.id, "user") == 1


def test_recent_returns_latest_turns_in_order(seeded_scenario):
    session = _session()
    ledger = TurnLedger()
    for i in range(5):
        ledger.append(session.id, "user", f"m{i}")

    recent = ledger.recent(session.id, limit=2)

    assert [t.message for t in recent] == ["m3", "m4"]


def test_concurrent_appends_stay_unique(seeded_scenario):
    session = _session()
    ledger = TurnLedger()
    errors = []

    def worker(idx):
        try:
            ledger.append(session.id, "user", f"parallel {idx}")
        except (PersistenceConflict, sqlite3.Error) as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    numbers = [t.turn_number for t in ledger.transcript(session.id)]
    assert numbers == list(range(1, 9))


def test_concurrent_metric_merges_keep_every_key(seeded_scenario):
    session = _session()
    errors = []

    def worker(idx):
        try:
            db.record_turn_progress(session.id, "learner-1", idx + 1, metrics={f"metric_{idx}": idx})
        except sqlite3.Error as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    stored = db.get_session(session.id, "learner-1")
    assert stored.real_time_metrics == {f"metric_{i}": i for i in range(8)}
    assert stored.current_turn == 8


def test_unknown_speaker_is_rejected(seeded_scenario):
    session = _session()
    with pytest.raises(ValueError):
        TurnLedger().append(session.id, "narrator", "nope")


class _CollidingDB:
    """Raises a uniqueness violation for the first ``failures`` inserts."""

    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def insert_turn(self, session_id, speaker, message, *, metrics=None, now=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise sqlite3.IntegrityError("UNIQUE constraint failed: session_turns.session_id, session_turns.turn_number")
        return db.insert_turn(session_id, speaker, message, metrics=metrics, now=now)


def test_single_collision_is_retried(seeded_scenario):
    session = _session()
    fake = _CollidingDB(failures=1)

    turn = TurnLedger(fake).append(session.id, "user", "after retry")

    assert fake.calls == 2
    assert turn.turn_number == 1


def test_second_collision_raises_conflict(seeded_scenario):
    session = _session()
    fake = _CollidingDB(failures=2)

    with pytest.raises(PersistenceConflict):
        TurnLedger(fake).append(session.id, "user", "never stored")

    assert fake.calls == 2
    assert db.count_turns(session.id) == 0
