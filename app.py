# app.py: coachlab session & assessment API
# - Bearer / X-Token identity resolved into an explicit CallerContext
# - Domain errors mapped to HTTP status codes in one place
# - Knowledge checks are served without their answer keys

import logging
import os
import sqlite3
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import db
from env_validation import validate_environment
from errors import EngineError
from identity import CallerContext, IdentityResolver
from question_generator import QuestionGenerator
from scenario_bank import load_scenarios
from schemas import (
    AssessmentQuestion,
    CompetencyInput,
    SessionRecord,
    TriggerVerdict,
    TurnMetrics,
)
from sessions import SessionStateMachine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        validate_environment()
        db.init()
        load_scenarios(os.getenv("SCENARIO_BANK_PATH") or None)
        logger.info(
            "Question generator %s",
            "enabled" if GENERATOR.enabled else "disabled (static bank only)",
        )
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="coachlab", version="1.0.0", lifespan=_lifespan)

IDENTITY = IdentityResolver.from_env()
GENERATOR = QuestionGenerator.from_env()
ENGINE = SessionStateMachine(db, generator=GENERATOR)


@app.exception_handler(EngineError)
async def _engine_error(_: Request, exc: EngineError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(ValueError)
async def _value_error(_: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(sqlite3.Error)
async def _storage_error(request: Request, exc: sqlite3.Error):
    logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "internal error"})


def _caller(request: Request) -> CallerContext:
    return IDENTITY.resolve(
        request.headers.get("authorization"),
        request.headers.get("x-token"),
    )


def _public_question(question: Optional[AssessmentQuestion]) -> Optional[Dict[str, Any]]:
    if question is None:
        return None
    return {
        "id": question.id,
        "scenario_id": question.scenario_id,
        "question_type": question.question_type,
        "prompt": question.prompt,
        "options": [{"id": o.id, "text": o.text} for o in question.options],
        "source": question.source,
    }


def _public_verdict(verdict: TriggerVerdict) -> Dict[str, Any]:
    return {
        "trigger": verdict.trigger,
        "reason": verdict.reason,
        "assessment": _public_question(verdict.assessment),
    }


# ---------- Request bodies ----------
class StartSessionBody(BaseModel):
    scenario_id: str = Field(min_length=1)


class TurnBody(BaseModel):
    speaker: str = Field(pattern=r"^(user|ai-coach|client|system)$")
    message: str = Field(min_length=1)
    metrics: Optional[TurnMetrics] = None


class CompleteBody(BaseModel):
    overall_score: float = Field(ge=0, le=100)
    xp_earned: int = Field(default=0, ge=0)
    competencies: List[CompetencyInput] = Field(default_factory=list)


class AnswerBody(BaseModel):
    assessment_id: str = Field(min_length=1)
    answer: str


# ---------- Health ----------
@app.get("/health")
def health():
    return {"ok": True, "generator": GENERATOR.enabled}


# ---------- Sessions ----------
@app.post("/sessions", response_model=SessionRecord)
def start_session(body: StartSessionBody, ctx: CallerContext = Depends(_caller)):
    return ENGINE.start_session(ctx, body.scenario_id)


@app.get("/sessions/{session_id}", response_model=SessionRecord)
def get_session(session_id: str, ctx: CallerContext = Depends(_caller)):
    return ENGINE.get_session(ctx, session_id)


@app.post("/sessions/{session_id}/pause", response_model=SessionRecord)
def pause_session(session_id: str, ctx: CallerContext = Depends(_caller)):
    return ENGINE.pause_session(ctx, session_id)


@app.post("/sessions/{session_id}/resume", response_model=SessionRecord)
def resume_session(session_id: str, ctx: CallerContext = Depends(_caller)):
    return ENGINE.resume_session(ctx, session_id)


@app.post("/sessions/{session_id}/abandon", response_model=SessionRecord)
def abandon_session(session_id: str, ctx: CallerContext = Depends(_caller)):
    return ENGINE.abandon_session(ctx, session_id)


@app.post("/sessions/{session_id}/complete")
def complete_session(session_id: str, body: CompleteBody, ctx: CallerContext = Depends(_caller)):
    aggregation = ENGINE.complete_session(
        ctx,
        session_id,
        body.overall_score,
        body.xp_earned,
        body.competencies,
    )
    return {
        "session": ENGINE.get_session(ctx, session_id),
        "competencies": aggregation,
    }


# ---------- Turns ----------
@app.post("/sessions/{session_id}/turns")
def record_turn(session_id: str, body: TurnBody, ctx: CallerContext = Depends(_caller)):
    result = ENGINE.record_turn(ctx, session_id, body.speaker, body.message, body.metrics)
    return {
        "turn_id": result["turn_id"],
        "turn_number": result["turn_number"],
        "assessment_trigger": _public_verdict(result["assessment_trigger"]),
    }


@app.get("/sessions/{session_id}/turns")
def transcript(session_id: str, ctx: CallerContext = Depends(_caller)):
    return {"turns": ENGINE.get_transcript(ctx, session_id)}


# ---------- Knowledge checks ----------
@app.get("/sessions/{session_id}/assessment-trigger")
def assessment_trigger(session_id: str, ctx: CallerContext = Depends(_caller)):
    return _public_verdict(ENGINE.check_trigger(ctx, session_id))


@app.get("/sessions/{session_id}/assessment")
def immediate_assessment(session_id: str, ctx: CallerContext = Depends(_caller)):
    return {"assessment": _public_question(ENGINE.get_immediate_assessment(ctx, session_id))}


@app.post("/sessions/{session_id}/answers")
def submit_answer(session_id: str, body: AnswerBody, ctx: CallerContext = Depends(_caller)):
    return ENGINE.submit_answer(ctx, session_id, body.assessment_id, body.answer)


@app.get("/sessions/{session_id}/answers")
def list_answers(session_id: str, ctx: CallerContext = Depends(_caller)):
    return {"answers": ENGINE.list_answers(ctx, session_id)}


# ---------- Reporting ----------
@app.get("/sessions/{session_id}/competencies")
def session_competencies(session_id: str, ctx: CallerContext = Depends(_caller)):
    return {"competencies": ENGINE.get_competencies(ctx, session_id)}


@app.get("/sessions/{session_id}/previous-best")
def previous_best(session_id: str, ctx: CallerContext = Depends(_caller)):
    return {"metrics": ENGINE.previous_best(ctx, session_id)}


@app.get("/sessions/{session_id}/recommendations")
def recommendations(session_id: str, ctx: CallerContext = Depends(_caller)):
    return {"recommendations": ENGINE.recommendations(ctx, session_id)}


@app.get("/sessions/{session_id}/summary")
def fetch_summary(session_id: str, ctx: CallerContext = Depends(_caller)):
    return ENGINE.get_summary(ctx, session_id)


@app.post("/sessions/{session_id}/summary")
def generate_summary(session_id: str, ctx: CallerContext = Depends(_caller)):
    return ENGINE.generate_summary(ctx, session_id)


@app.get("/learner/competencies")
def learner_competencies(ctx: CallerContext = Depends(_caller)):
    return ENGINE.competency_overview(ctx)
