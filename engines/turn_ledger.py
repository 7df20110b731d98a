"""Append-only ledger of conversational turns."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

import db
from errors import PersistenceConflict
from schemas import SPEAKERS, TurnRecord

logger = logging.getLogger(__name__)


class TurnLedger:
    """Numbers and stores turns for a session.

    Numbers are ``count + 1``, counted and inserted under ``BEGIN IMMEDIATE``.
    ``UNIQUE(session_id, turn_number)`` still rejects a duplicate from any
    other writer; the ledger then recomputes and retries once before giving up.
    """

    def __init__(self, db_module=db, *, max_attempts: int = 2) -> None:
        self._db = db_module
        self._max_attempts = max(1, max_attempts)

    def next_turn_number(self, session_id: str) -> int:
        return self._db.count_turns(session_id) + 1

    def append(
        self,
        session_id: str,
        speaker: str,
        message: str,
        *,
        metrics: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> TurnRecord:
        if speaker not in SPEAKERS:
            raise ValueError(f"unknown speaker: {speaker!r}")
        last_error: Optional[sqlite3.IntegrityError] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                return self._db.insert_turn(
                    session_id,
                    speaker,
                    message,
                    metrics=metrics,
                    now=now,
                )
            except sqlite3.IntegrityError as exc:
                last_error = exc
                logger.warning(
                    "Turn number collision for session %s (attempt %s/%s): %s",
                    session_id,
                    attempt,
                    self._max_attempts,
                    exc,
                )
        raise PersistenceConflict(
            f"could not assign a turn number for session {session_id}"
        ) from last_error

    def transcript(self, session_id: str) -> List[TurnRecord]:
        return self._db.list_turns(session_id)

    def recent(self, session_id: str, limit: int = 10) -> List[TurnRecord]:
        return self._db.list_turns(session_id, limit=limit)

    def count(self, session_id: str, speaker: Optional[str] = None) -> int:
        return self._db.count_turns(session_id, speaker)
