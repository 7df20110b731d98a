"""Client for the external dynamic knowledge-check generator.

The generator is an OpenAI-compatible chat-completions endpoint. Every call is
bounded by a timeout and every failure is folded into a ``Fallback`` result,
so callers never block or error on it.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Union
from uuid import uuid4

import requests

from env_validation import get_env_float, get_env_str
from errors import GeneratorUnavailable
from prompts import PromptTemplate, get_prompt
from schemas import (
    AssessmentOption,
    AssessmentQuestion,
    GeneratedQuestionPayload,
    TurnRecord,
    parse_json_safe,
)

logger = logging.getLogger(__name__)

_GENERATOR_LOGGER = logging.getLogger("coachlab.generator")

DEFAULT_TIMEOUT_SECONDS = 8.0
DEFAULT_MODEL = "gpt-4o-mini"
CONTEXT_TURNS = 10
DYNAMIC_ID_PREFIX = "dynamic-"

_SPEAKER_LABELS = {
    "user": "Learner",
    "ai-coach": "AI Coach",
    "client": "Client",
    "system": "System",
}


@dataclass(frozen=True)
class Generated:
    question: AssessmentQuestion


@dataclass(frozen=True)
class Fallback:
    reason: str


GenerationResult = Union[Generated, Fallback]


def _conversation_text(turns: Sequence[TurnRecord]) -> str:
    return "\n".join(
        f"{_SPEAKER_LABELS.get(turn.speaker, turn.speaker)}: {turn.message}" for turn in turns
    )


def _json_log(payload: dict[str, Any]) -> None:
    try:
        _GENERATOR_LOGGER.info(json.dumps(payload, ensure_ascii=False, sort_keys=True))
    except (TypeError, ValueError):
        _GENERATOR_LOGGER.info(repr(payload))


class QuestionGenerator:
    """Produces one conversation-contextual multiple-choice question."""

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        model: str = DEFAULT_MODEL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        api_key: Optional[str] = None,
        prompt: Optional[PromptTemplate] = None,
    ) -> None:
        self.url = url
        self.model = model
        self.timeout = timeout
        self.api_key = api_key
        self._prompt = prompt

    @classmethod
    def from_env(cls) -> "QuestionGenerator":
        return cls(
            get_env_str("QUESTION_GENERATOR_URL"),
            model=get_env_str("QUESTION_GENERATOR_MODEL", DEFAULT_MODEL) or DEFAULT_MODEL,
            timeout=get_env_float("QUESTION_GENERATOR_TIMEOUT", DEFAULT_TIMEOUT_SECONDS),
            api_key=get_env_str("QUESTION_GENERATOR_API_KEY"),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    @property
    def prompt(self) -> PromptTemplate:
        if self._prompt is None:
            self._prompt = get_prompt("knowledge_check")
        return self._prompt

    def generate(
        self,
        session_id: str,
        scenario_title: Optional[str],
        *,
        scenario_id: str,
        turns: Sequence[TurnRecord],
    ) -> GenerationResult:
        if not self.enabled:
            return Fallback("generator not configured")
        recent = list(turns)[-CONTEXT_TURNS:]
        if not recent:
            return Fallback("no conversation turns yet")

        start = time.perf_counter()
        outcome = "generated"
        try:
            content = self._request(scenario_title or "the training scenario", recent)
            question = self._to_question(content, scenario_id=scenario_id, session_id=session_id)
            return Generated(question)
        except GeneratorUnavailable as exc:
            outcome = "fallback"
            logger.warning("Dynamic question generation failed for session %s: %s", session_id, exc)
            return Fallback(str(exc))
        finally:
            _json_log(
                {
                    "event": "question_generation",
                    "session_id": session_id,
                    "model": self.model,
                    "prompt_version": self.prompt.prompt_version,
                    "latency_ms": int((time.perf_counter() - start) * 1000),
                    "outcome": outcome,
                }
            )

    def _request(self, scenario_title: str, turns: Sequence[TurnRecord]) -> str:
        system, user = self.prompt.render(
            scenario_title=scenario_title,
            conversation=_conversation_text(turns),
        )
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": 0.4,
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = requests.post(self.url, json=payload, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.Timeout as exc:
            raise GeneratorUnavailable(f"generator timed out after {self.timeout}s") from exc
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else "?"
            raise GeneratorUnavailable(f"generator HTTP {status}") from exc
        except (requests.RequestException, ValueError) as exc:
            raise GeneratorUnavailable(f"generator error: {exc}") from exc

        try:
            return data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            try:
                return data["choices"][0]["text"]
            except (KeyError, IndexError, TypeError):
                raise GeneratorUnavailable("unexpected generator response shape") from None

    def _to_question(self, content: str, *, scenario_id: str, session_id: str) -> AssessmentQuestion:
        try:
            parsed = parse_json_safe(content or "", GeneratedQuestionPayload)
        except ValueError as exc:
            raise GeneratorUnavailable(f"invalid question payload: {exc}") from exc

        correct = parsed.correct_answer.strip()
        if correct not in parsed.options:
            raise GeneratorUnavailable("correct answer not among options")

        options = [
            AssessmentOption(id=f"opt-{idx}", text=text, is_correct=(text == correct))
            for idx, text in enumerate(parsed.options)
        ]
        return AssessmentQuestion(
            id=f"{DYNAMIC_ID_PREFIX}{uuid4().hex}",
            scenario_id=scenario_id,
            question_type="multiple-choice",
            prompt=parsed.question_text.strip(),
            options=options,
            reference_answer=correct,
            explanation=parsed.explanation,
            order_index=0,
            source="dynamic",
            session_id=session_id,
        )
