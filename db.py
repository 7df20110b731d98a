import json
import logging
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence
from uuid import uuid4

from db_pool import SQLiteConnectionPool
from schemas import (
    AssessmentOption,
    AssessmentQuestion,
    CompetencyScore,
    SessionAssessmentAnswer,
    SessionRecord,
    TurnRecord,
)

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "coachlab.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)

_SESSION_COLUMNS = (
    "id, user_id, scenario_id, status, started_at, completed_at, current_turn, total_turns, "
    "overall_score, xp_earned, real_time_metrics, created_at, updated_at"
)
_QUESTION_COLUMNS = (
    "id, scenario_id, question_type, prompt, options, reference_answer, explanation, "
    "order_index, source, session_id, created_at"
)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()) -> int:
    with _pool.get_connection() as con:
        cur = con.execute(sql, tuple(params))
        con.commit()
        return cur.rowcount


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, tuple(params))
        return cur.fetchall()


def new_id(prefix: str = "") -> str:
    return f"{prefix}{uuid4().hex}"


def _iso(value: Optional[datetime] = None) -> str:
    value = value or datetime.now(timezone.utc)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            try:
                parsed = datetime.strptime(text, "%Y-%m-%d %H:%M:%S")
            except ValueError:
                logger.warning("Unparseable timestamp in store: %r", value)
                return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _decode_json_field(value: Optional[str], default: Any = None) -> Any:
    if value is None or value == "":
        return default
    try:
        return json.loads(value)
    except (TypeError, json.JSONDecodeError):
        logger.warning("Invalid JSON payload in store: %r", value)
        return default


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, default=str)


# -------------- schema --------------
def init():
    with _conn() as con:
        con.executescript(
            """
            CREATE TABLE IF NOT EXISTS scenarios (
              id            TEXT PRIMARY KEY,
              title         TEXT NOT NULL,
              description   TEXT,
              category      TEXT,
              tags          TEXT NOT NULL DEFAULT '[]',
              estimated_xp  INTEGER NOT NULL DEFAULT 0,
              is_active     INTEGER NOT NULL DEFAULT 1,
              created_at    TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sessions (
              id                 TEXT PRIMARY KEY,
              user_id            TEXT NOT NULL,
              scenario_id        TEXT NOT NULL REFERENCES scenarios(id),
              status             TEXT NOT NULL CHECK (status IN
                                   ('not-started','in-progress','completed','paused','abandoned')),
              started_at         TEXT,
              completed_at       TEXT,
              current_turn       INTEGER NOT NULL DEFAULT 0,
              total_turns        INTEGER NOT NULL DEFAULT 0,
              overall_score      REAL,
              xp_earned          INTEGER NOT NULL DEFAULT 0,
              real_time_metrics  TEXT NOT NULL DEFAULT '{}',
              created_at         TEXT NOT NULL,
              updated_at         TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_sessions_user_scenario
              ON sessions(user_id, scenario_id, status);
            CREATE INDEX IF NOT EXISTS idx_sessions_user_completed
              ON sessions(user_id, status, completed_at);

            CREATE TABLE IF NOT EXISTS session_turns (
              id           TEXT PRIMARY KEY,
              session_id   TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
              turn_number  INTEGER NOT NULL CHECK (turn_number > 0),
              speaker      TEXT NOT NULL CHECK (speaker IN ('user','ai-coach','client','system')),
              message      TEXT NOT NULL,
              metrics      TEXT,
              created_at   TEXT NOT NULL,
              UNIQUE (session_id, turn_number)
            );

            CREATE TABLE IF NOT EXISTS assessment_questions (
              id                TEXT PRIMARY KEY,
              scenario_id       TEXT NOT NULL,
              question_type     TEXT NOT NULL CHECK (question_type IN
                                  ('multiple-choice','true-false','short-answer')),
              prompt            TEXT NOT NULL,
              options           TEXT NOT NULL DEFAULT '[]',
              reference_answer  TEXT,
              explanation       TEXT,
              order_index       INTEGER NOT NULL DEFAULT 0,
              source            TEXT NOT NULL DEFAULT 'static' CHECK (source IN ('static','dynamic')),
              session_id        TEXT,
              created_at        TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_questions_scenario
              ON assessment_questions(scenario_id, source, order_index, created_at);

            CREATE TABLE IF NOT EXISTS session_assessment_answers (
              id                TEXT PRIMARY KEY,
              session_id        TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
              assessment_id     TEXT NOT NULL,
              submitted_answer  TEXT NOT NULL,
              is_correct        INTEGER NOT NULL,
              score             INTEGER NOT NULL CHECK (score BETWEEN 0 AND 100),
              feedback          TEXT NOT NULL,
              answered_at       TEXT NOT NULL,
              UNIQUE (session_id, assessment_id)
            );

            CREATE TABLE IF NOT EXISTS competency_scores (
              id               TEXT PRIMARY KEY,
              session_id       TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
              competency_name  TEXT NOT NULL,
              score            REAL NOT NULL CHECK (score BETWEEN 0 AND 100),
              feedback         TEXT,
              feedback_type    TEXT NOT NULL DEFAULT 'neutral'
                                 CHECK (feedback_type IN ('positive','neutral','negative')),
              created_at       TEXT NOT NULL,
              UNIQUE (session_id, competency_name)
            );

            CREATE TABLE IF NOT EXISTS user_scenario_progress (
              user_id           TEXT NOT NULL,
              scenario_id       TEXT NOT NULL,
              status            TEXT NOT NULL,
              best_score        REAL,
              attempts_count    INTEGER NOT NULL DEFAULT 0,
              last_session_id   TEXT,
              last_accessed_at  TEXT,
              completed_at      TEXT,
              PRIMARY KEY (user_id, scenario_id)
            );

            CREATE TABLE IF NOT EXISTS session_summaries (
              session_id    TEXT PRIMARY KEY REFERENCES sessions(id) ON DELETE CASCADE,
              payload       TEXT NOT NULL,
              generated_at  TEXT NOT NULL
            );
            """
        )
        con.commit()


# -------------- scenarios --------------
def upsert_scenario(
    scenario_id: str,
    title: str,
    *,
    description: Optional[str] = None,
    category: Optional[str] = None,
    tags: Sequence[str] = (),
    estimated_xp: int = 0,
    is_active: bool = True,
) -> None:
    _exec(
        """
        INSERT INTO scenarios (id, title, description, category, tags, estimated_xp, is_active, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
          title = excluded.title,
          description = excluded.description,
          category = excluded.category,
          tags = excluded.tags,
          estimated_xp = excluded.estimated_xp,
          is_active = excluded.is_active
        """,
        (
            scenario_id,
            title,
            description,
            category,
            json_dumps(list(tags)),
            int(estimated_xp),
            1 if is_active else 0,
            _iso(),
        ),
    )


def _scenario_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "title": row["title"],
        "description": row["description"],
        "category": row["category"],
        "tags": _decode_json_field(row["tags"], []),
        "estimated_xp": row["estimated_xp"],
        "is_active": bool(row["is_active"]),
    }


def get_scenario(scenario_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM scenarios WHERE id = ?", (scenario_id,))
    return _scenario_from_row(rows[0]) if rows else None


def list_scenarios_with_tag(tag: str, *, exclude_id: Optional[str] = None, limit: int = 1) -> List[Dict[str, Any]]:
    """Active scenarios whose tag list contains ``tag`` (case-insensitive)."""
    rows = _query(
        """
        SELECT * FROM scenarios
        WHERE is_active = 1
          AND (? IS NULL OR id != ?)
          AND EXISTS (
            SELECT 1 FROM json_each(scenarios.tags) WHERE lower(json_each.value) = lower(?)
          )
        ORDER BY created_at ASC, id ASC
        LIMIT ?
        """,
        (exclude_id, exclude_id, tag, int(limit)),
    )
    return [_scenario_from_row(row) for row in rows]


# -------------- sessions --------------
def _session_from_row(row: sqlite3.Row) -> SessionRecord:
    return SessionRecord(
        id=row["id"],
        user_id=row["user_id"],
        scenario_id=row["scenario_id"],
        status=row["status"],
        started_at=_parse_timestamp(row["started_at"]),
        completed_at=_parse_timestamp(row["completed_at"]),
        current_turn=row["current_turn"],
        total_turns=row["total_turns"],
        overall_score=row["overall_score"],
        xp_earned=row["xp_earned"],
        real_time_metrics=_decode_json_field(row["real_time_metrics"], {}),
        created_at=_parse_timestamp(row["created_at"]),
        updated_at=_parse_timestamp(row["updated_at"]),
    )


def create_session(user_id: str, scenario_id: str, *, now: Optional[datetime] = None) -> SessionRecord:
    session_id = new_id()
    stamp = _iso(now)
    _exec(
        f"""
        INSERT INTO sessions ({_SESSION_COLUMNS})
        VALUES (?, ?, ?, 'in-progress', ?, NULL, 0, 0, NULL, 0, '{{}}', ?, ?)
        """,
        (session_id, user_id, scenario_id, stamp, stamp, stamp),
    )
    session = get_session(session_id, user_id)
    assert session is not None
    return session


def get_session(session_id: str, user_id: str) -> Optional[SessionRecord]:
    """Return the session only when it belongs to ``user_id``."""
    rows = _query(
        f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ? AND user_id = ?",
        (session_id, user_id),
    )
    return _session_from_row(rows[0]) if rows else None


def find_in_progress_session(user_id: str, scenario_id: str) -> Optional[SessionRecord]:
    rows = _query(
        f"""
        SELECT {_SESSION_COLUMNS} FROM sessions
        WHERE user_id = ? AND scenario_id = ? AND status = 'in-progress'
        ORDER BY created_at DESC
        LIMIT 1
        """,
        (user_id, scenario_id),
    )
    return _session_from_row(rows[0]) if rows else None


def record_turn_progress(
    session_id: str,
    user_id: str,
    turn_number: int,
    *,
    metrics: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> None:
    """Move ``current_turn`` forward and merge the latest metrics snapshot."""
    with _conn() as con:
        con.execute("BEGIN IMMEDIATE")
        row = con.execute(
            "SELECT real_time_metrics FROM sessions WHERE id = ? AND user_id = ?",
            (session_id, user_id),
        ).fetchone()
        if row is None:
            return
        snapshot = _decode_json_field(row["real_time_metrics"], {}) or {}
        if metrics:
            snapshot.update({k: v for k, v in metrics.items() if v is not None})
        con.execute(
            """
            UPDATE sessions
            SET current_turn = MAX(current_turn, ?),
                total_turns = MAX(total_turns, ?),
                real_time_metrics = ?,
                updated_at = ?
            WHERE id = ? AND user_id = ?
            """,
            (turn_number, turn_number, json_dumps(snapshot), _iso(now), session_id, user_id),
        )
        con.commit()


def transition_session(
    session_id: str,
    user_id: str,
    from_statuses: Sequence[str],
    to_status: str,
    *,
    now: Optional[datetime] = None,
    overall_score: Optional[float] = None,
    xp_earned: Optional[int] = None,
) -> bool:
    """Conditionally move a session between statuses.

    The status guard lives in the UPDATE itself, so two concurrent
    completions cannot both succeed and ``completed_at`` is written once.
    """
    if not from_statuses:
        return False
    stamp = _iso(now)
    placeholders = ", ".join("?" for _ in from_statuses)
    assignments = ["status = ?", "updated_at = ?"]
    params: List[Any] = [to_status, stamp]
    if to_status == "completed":
        assignments.append("completed_at = ?")
        params.append(stamp)
    if overall_score is not None:
        assignments.append("overall_score = ?")
        params.append(float(overall_score))
    if xp_earned is not None:
        assignments.append("xp_earned = ?")
        params.append(int(xp_earned))
    params.extend([session_id, user_id, *from_statuses])
    changed = _exec(
        f"""
        UPDATE sessions SET {", ".join(assignments)}
        WHERE id = ? AND user_id = ? AND status IN ({placeholders})
        """,
        params,
    )
    return changed == 1


def list_completed_sessions(
    user_id: str,
    *,
    since: Optional[datetime] = None,
    scenario_id: Optional[str] = None,
) -> List[SessionRecord]:
    clauses = ["user_id = ?", "status = 'completed'", "completed_at IS NOT NULL"]
    params: List[Any] = [user_id]
    if since is not None:
        clauses.append("completed_at >= ?")
        params.append(_iso(since))
    if scenario_id is not None:
        clauses.append("scenario_id = ?")
        params.append(scenario_id)
    rows = _query(
        f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE {' AND '.join(clauses)} ORDER BY completed_at DESC",
        params,
    )
    return [_session_from_row(row) for row in rows]


def find_previous_best_session(user_id: str, scenario_id: str, exclude_session_id: str) -> Optional[SessionRecord]:
    """Highest-scoring other completed session, most recent first on ties."""
    rows = _query(
        f"""
        SELECT {_SESSION_COLUMNS} FROM sessions
        WHERE user_id = ? AND scenario_id = ? AND status = 'completed' AND id != ?
        ORDER BY COALESCE(overall_score, 0) DESC, completed_at DESC
        LIMIT 1
        """,
        (user_id, scenario_id, exclude_session_id),
    )
    return _session_from_row(rows[0]) if rows else None


# -------------- turns --------------
def _turn_from_row(row: sqlite3.Row) -> TurnRecord:
    return TurnRecord(
        id=row["id"],
        session_id=row["session_id"],
        turn_number=row["turn_number"],
        speaker=row["speaker"],
        message=row["message"],
        metrics=_decode_json_field(row["metrics"], None),
        created_at=_parse_timestamp(row["created_at"]),
    )


def count_turns(session_id: str, speaker: Optional[str] = None) -> int:
    if speaker is None:
        rows = _query("SELECT COUNT(*) AS n FROM session_turns WHERE session_id = ?", (session_id,))
    else:
        rows = _query(
            "SELECT COUNT(*) AS n FROM session_turns WHERE session_id = ? AND speaker = ?",
            (session_id, speaker),
        )
    return int(rows[0]["n"]) if rows else 0


def insert_turn(
    session_id: str,
    speaker: str,
    message: str,
    *,
    metrics: Optional[Dict[str, Any]] = None,
    turn_number: Optional[int] = None,
    now: Optional[datetime] = None,
) -> TurnRecord:
    """Insert a turn numbered from the current count under a write lock.

    Raises ``sqlite3.IntegrityError`` when the number is already taken.
    """
    turn_id = new_id()
    stamp = _iso(now)
    with _conn() as con:
        con.execute("BEGIN IMMEDIATE")
        if turn_number is None:
            row = con.execute(
                "SELECT COUNT(*) AS n FROM session_turns WHERE session_id = ?", (session_id,)
            ).fetchone()
            turn_number = int(row["n"]) + 1
        con.execute(
            """
            INSERT INTO session_turns (id, session_id, turn_number, speaker, message, metrics, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                turn_id,
                session_id,
                int(turn_number),
                speaker,
                message,
                json_dumps(metrics) if metrics is not None else None,
                stamp,
            ),
        )
        con.commit()
    return TurnRecord(
        id=turn_id,
        session_id=session_id,
        turn_number=int(turn_number),
        speaker=speaker,
        message=message,
        metrics=metrics,
        created_at=_parse_timestamp(stamp),
    )


def list_turns(session_id: str, *, limit: Optional[int] = None) -> List[TurnRecord]:
    if limit is None:
        rows = _query(
            "SELECT * FROM session_turns WHERE session_id = ? ORDER BY turn_number ASC",
            (session_id,),
        )
        return [_turn_from_row(row) for row in rows]
    rows = _query(
        "SELECT * FROM session_turns WHERE session_id = ? ORDER BY turn_number DESC LIMIT ?",
        (session_id, int(limit)),
    )
    return [_turn_from_row(row) for row in reversed(rows)]


# -------------- assessment questions --------------
def _question_from_row(row: sqlite3.Row) -> AssessmentQuestion:
    options = _decode_json_field(row["options"], []) or []
    return AssessmentQuestion(
        id=row["id"],
        scenario_id=row["scenario_id"],
        question_type=row["question_type"],
        prompt=row["prompt"],
        options=[AssessmentOption(**option) for option in options],
        reference_answer=row["reference_answer"],
        explanation=row["explanation"],
        order_index=row["order_index"],
        source=row["source"],
        session_id=row["session_id"],
        created_at=_parse_timestamp(row["created_at"]),
    )


def save_question(question: AssessmentQuestion) -> AssessmentQuestion:
    """Insert or refresh a question definition."""
    created_at = question.created_at or datetime.now(timezone.utc)
    _exec(
        f"""
        INSERT INTO assessment_questions ({_QUESTION_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
          scenario_id = excluded.scenario_id,
          question_type = excluded.question_type,
          prompt = excluded.prompt,
          options = excluded.options,
          reference_answer = excluded.reference_answer,
          explanation = excluded.explanation,
          order_index = excluded.order_index
        """,
        (
            question.id,
            question.scenario_id,
            question.question_type,
            question.prompt,
            json_dumps([option.model_dump() for option in question.options]),
            question.reference_answer,
            question.explanation,
            int(question.order_index),
            question.source,
            question.session_id,
            _iso(created_at),
        ),
    )
    stored = get_question(question.id)
    assert stored is not None
    return stored


def get_question(question_id: str) -> Optional[AssessmentQuestion]:
    rows = _query(f"SELECT {_QUESTION_COLUMNS} FROM assessment_questions WHERE id = ?", (question_id,))
    return _question_from_row(rows[0]) if rows else None


def list_static_questions(scenario_id: str) -> List[AssessmentQuestion]:
    rows = _query(
        f"""
        SELECT {_QUESTION_COLUMNS} FROM assessment_questions
        WHERE scenario_id = ? AND source = 'static'
        ORDER BY order_index ASC, created_at ASC, id ASC
        """,
        (scenario_id,),
    )
    return [_question_from_row(row) for row in rows]


def list_dynamic_questions(session_id: str) -> List[AssessmentQuestion]:
    rows = _query(
        f"""
        SELECT {_QUESTION_COLUMNS} FROM assessment_questions
        WHERE session_id = ? AND source = 'dynamic'
        ORDER BY created_at ASC, id ASC
        """,
        (session_id,),
    )
    return [_question_from_row(row) for row in rows]


# -------------- answers --------------
def _answer_from_row(row: sqlite3.Row) -> SessionAssessmentAnswer:
    return SessionAssessmentAnswer(
        id=row["id"],
        session_id=row["session_id"],
        assessment_id=row["assessment_id"],
        submitted_answer=row["submitted_answer"],
        is_correct=bool(row["is_correct"]),
        score=row["score"],
        feedback=row["feedback"],
        answered_at=_parse_timestamp(row["answered_at"]),
    )


def upsert_answer(
    session_id: str,
    assessment_id: str,
    submitted_answer: str,
    *,
    is_correct: bool,
    score: int,
    feedback: str,
    now: Optional[datetime] = None,
) -> SessionAssessmentAnswer:
    """One row per (session, assessment); a resubmission overwrites it."""
    with _conn() as con:
        con.execute(
            """
            INSERT INTO session_assessment_answers
              (id, session_id, assessment_id, submitted_answer, is_correct, score, feedback, answered_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(session_id, assessment_id) DO UPDATE SET
              submitted_answer = excluded.submitted_answer,
              is_correct = excluded.is_correct,
              score = excluded.score,
              feedback = excluded.feedback,
              answered_at = excluded.answered_at
            """,
            (
                new_id(),
                session_id,
                assessment_id,
                submitted_answer,
                1 if is_correct else 0,
                int(score),
                feedback,
                _iso(now),
            ),
        )
        con.commit()
        row = con.execute(
            "SELECT * FROM session_assessment_answers WHERE session_id = ? AND assessment_id = ?",
            (session_id, assessment_id),
        ).fetchone()
    return _answer_from_row(row)


def list_answers(session_id: str) -> List[SessionAssessmentAnswer]:
    rows = _query(
        "SELECT * FROM session_assessment_answers WHERE session_id = ? ORDER BY answered_at ASC",
        (session_id,),
    )
    return [_answer_from_row(row) for row in rows]


def answered_assessment_ids(session_id: str) -> set[str]:
    rows = _query(
        "SELECT assessment_id FROM session_assessment_answers WHERE session_id = ?",
        (session_id,),
    )
    return {row["assessment_id"] for row in rows if row["assessment_id"]}


# -------------- competency scores --------------
def _competency_from_row(row: sqlite3.Row) -> CompetencyScore:
    return CompetencyScore(
        id=row["id"],
        session_id=row["session_id"],
        competency_name=row["competency_name"],
        score=row["score"],
        feedback=row["feedback"],
        feedback_type=row["feedback_type"],
        created_at=_parse_timestamp(row["created_at"]),
    )


def insert_competency_scores(
    session_id: str,
    entries: Sequence[Dict[str, Any]],
    *,
    now: Optional[datetime] = None,
) -> List[CompetencyScore]:
    if not entries:
        return []
    stamp = _iso(now)
    with _conn() as con:
        con.executemany(
            """
            INSERT INTO competency_scores
              (id, session_id, competency_name, score, feedback, feedback_type, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    new_id(),
                    session_id,
                    entry["competency_name"],
                    float(entry["score"]),
                    entry.get("feedback"),
                    entry.get("feedback_type") or "neutral",
                    stamp,
                )
                for entry in entries
            ],
        )
        con.commit()
    return list_competency_scores(session_id)


def list_competency_scores(session_id: str) -> List[CompetencyScore]:
    rows = _query(
        "SELECT * FROM competency_scores WHERE session_id = ? ORDER BY score DESC, competency_name ASC",
        (session_id,),
    )
    return [_competency_from_row(row) for row in rows]


def list_competency_scores_for_sessions(session_ids: Sequence[str]) -> List[CompetencyScore]:
    if not session_ids:
        return []
    placeholders = ", ".join("?" for _ in session_ids)
    rows = _query(
        f"SELECT * FROM competency_scores WHERE session_id IN ({placeholders})",
        list(session_ids),
    )
    return [_competency_from_row(row) for row in rows]


# -------------- scenario progress --------------
def mark_scenario_started(user_id: str, scenario_id: str, *, now: Optional[datetime] = None) -> None:
    stamp = _iso(now)
    _exec(
        """
        INSERT INTO user_scenario_progress (user_id, scenario_id, status, attempts_count, last_accessed_at)
        VALUES (?, ?, 'in-progress', 0, ?)
        ON CONFLICT(user_id, scenario_id) DO UPDATE SET
          status = CASE WHEN user_scenario_progress.status = 'completed'
                        THEN user_scenario_progress.status ELSE 'in-progress' END,
          last_accessed_at = excluded.last_accessed_at
        """,
        (user_id, scenario_id, stamp),
    )


def record_scenario_completion(
    user_id: str,
    scenario_id: str,
    session_id: str,
    score: float,
    *,
    now: Optional[datetime] = None,
) -> None:
    """Keep the best score seen so far and count the attempt."""
    stamp = _iso(now)
    _exec(
        """
        INSERT INTO user_scenario_progress
          (user_id, scenario_id, status, best_score, attempts_count, last_session_id, last_accessed_at, completed_at)
        VALUES (?, ?, 'completed', ?, 1, ?, ?, ?)
        ON CONFLICT(user_id, scenario_id) DO UPDATE SET
          status = 'completed',
          best_score = MAX(COALESCE(user_scenario_progress.best_score, 0), excluded.best_score),
          attempts_count = user_scenario_progress.attempts_count + 1,
          last_session_id = excluded.last_session_id,
          last_accessed_at = excluded.last_accessed_at,
          completed_at = excluded.completed_at
        """,
        (user_id, scenario_id, float(score), session_id, stamp, stamp),
    )


def get_scenario_progress(user_id: str, scenario_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        "SELECT * FROM user_scenario_progress WHERE user_id = ? AND scenario_id = ?",
        (user_id, scenario_id),
    )
    if not rows:
        return None
    row = rows[0]
    return {
        "user_id": row["user_id"],
        "scenario_id": row["scenario_id"],
        "status": row["status"],
        "best_score": row["best_score"],
        "attempts_count": row["attempts_count"],
        "last_session_id": row["last_session_id"],
        "last_accessed_at": _parse_timestamp(row["last_accessed_at"]),
        "completed_at": _parse_timestamp(row["completed_at"]),
    }


# -------------- summaries --------------
def save_session_summary(session_id: str, payload: Dict[str, Any], *, now: Optional[datetime] = None) -> None:
    _exec(
        """
        INSERT INTO session_summaries (session_id, payload, generated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(session_id) DO UPDATE SET
          payload = excluded.payload,
          generated_at = excluded.generated_at
        """,
        (session_id, json_dumps(payload), _iso(now)),
    )


def get_session_summary(session_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT payload FROM session_summaries WHERE session_id = ?", (session_id,))
    if not rows:
        return None
    return _decode_json_field(rows[0]["payload"], None)
