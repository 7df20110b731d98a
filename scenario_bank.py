"""Scenario catalogue and static knowledge-check bank loaded from YAML."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

import db
from schemas import AssessmentOption, AssessmentQuestion, normalize_question_type

logger = logging.getLogger(__name__)

DEFAULT_BANK_PATH = Path(__file__).resolve().parent / "scenarios.yaml"


class ScenarioValidationError(ValueError):
    """Raised when a scenario or question from the YAML bank fails validation."""


class ScenarioBank:
    """Loads, validates and syncs scenarios with their static question banks."""

    REQUIRED_SCENARIO_FIELDS = ("id", "title")
    REQUIRED_QUESTION_FIELDS = ("id", "type", "prompt")

    def __init__(self, path: str | Path = DEFAULT_BANK_PATH, *, auto_sync: bool = True) -> None:
        self.path = Path(path)
        self._scenarios: List[Dict[str, Any]] = []
        self._questions: List[AssessmentQuestion] = []
        self._load(auto_sync=auto_sync)

    # ------------------------------------------------------------------
    # loading & validation
    # ------------------------------------------------------------------
    def _load(self, *, auto_sync: bool) -> None:
        if not self.path.exists():
            raise FileNotFoundError(f"Scenario bank file not found: {self.path}")

        with self.path.open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}

        entries = raw.get("scenarios") if isinstance(raw, dict) else None
        if not isinstance(entries, list):
            raise ScenarioValidationError("Scenario bank root must contain a 'scenarios' list")

        scenarios: List[Dict[str, Any]] = []
        questions: List[AssessmentQuestion] = []
        seen_scenarios: set[str] = set()
        seen_questions: set[str] = set()
        for entry in entries:
            if not isinstance(entry, dict):
                raise ScenarioValidationError("Each scenario must be a mapping")
            for field in self.REQUIRED_SCENARIO_FIELDS:
                if entry.get(field) in (None, ""):
                    raise ScenarioValidationError(
                        f"Scenario {entry.get('id')} missing required field '{field}'"
                    )

            scenario_id = str(entry["id"])
            if scenario_id in seen_scenarios:
                raise ScenarioValidationError(f"Duplicate scenario id detected: {scenario_id}")
            seen_scenarios.add(scenario_id)

            tags = entry.get("tags") or []
            if not isinstance(tags, list):
                raise ScenarioValidationError(f"Scenario {scenario_id} tags must be a list")

            try:
                estimated_xp = int(entry.get("estimated_xp") or 0)
            except (TypeError, ValueError) as exc:
                raise ScenarioValidationError(f"Scenario {scenario_id} estimated_xp must be an integer") from exc

            scenarios.append(
                {
                    "id": scenario_id,
                    "title": str(entry["title"]),
                    "description": entry.get("description"),
                    "category": entry.get("category"),
                    "tags": [str(tag) for tag in tags],
                    "estimated_xp": estimated_xp,
                    "is_active": bool(entry.get("is_active", True)),
                }
            )

            raw_questions = entry.get("questions") or []
            if not isinstance(raw_questions, list):
                raise ScenarioValidationError(f"Scenario {scenario_id} questions must be a list")
            for position, raw_question in enumerate(raw_questions):
                question = self._parse_question(scenario_id, raw_question, position)
                if question.id in seen_questions:
                    raise ScenarioValidationError(f"Duplicate question id detected: {question.id}")
                seen_questions.add(question.id)
                questions.append(question)

        self._scenarios = scenarios
        self._questions = questions

        if auto_sync:
            self.sync()

    def _parse_question(self, scenario_id: str, entry: Any, position: int) -> AssessmentQuestion:
        if not isinstance(entry, dict):
            raise ScenarioValidationError(f"Scenario {scenario_id} questions must be mappings")
        for field in self.REQUIRED_QUESTION_FIELDS:
            if entry.get(field) in (None, ""):
                raise ScenarioValidationError(
                    f"Question {entry.get('id')} in {scenario_id} missing required field '{field}'"
                )

        question_id = str(entry["id"])
        try:
            question_type = normalize_question_type(entry["type"])
        except ValueError as exc:
            raise ScenarioValidationError(f"Question {question_id}: {exc}") from exc

        options: List[AssessmentOption] = []
        reference = entry.get("answer")
        if question_type == "multiple-choice":
            raw_options = entry.get("options")
            if not isinstance(raw_options, list) or len(raw_options) < 2:
                raise ScenarioValidationError(f"Question {question_id} needs at least two options")
            for idx, raw_option in enumerate(raw_options):
                if isinstance(raw_option, str):
                    raw_option = {"text": raw_option}
                if not isinstance(raw_option, dict) or not str(raw_option.get("text") or "").strip():
                    raise ScenarioValidationError(f"Question {question_id} option {idx} must have text")
                options.append(
                    AssessmentOption(
                        id=str(raw_option.get("id") or f"{question_id}-opt-{idx}"),
                        text=str(raw_option["text"]).strip(),
                        is_correct=bool(raw_option.get("correct", False)),
                    )
                )
            if sum(1 for option in options if option.is_correct) != 1:
                raise ScenarioValidationError(f"Question {question_id} must flag exactly one correct option")
            reference = next(option.text for option in options if option.is_correct)
        elif question_type == "true-false":
            if isinstance(reference, bool):
                reference = "true" if reference else "false"
            if str(reference or "").strip().lower() not in {"true", "false"}:
                raise ScenarioValidationError(f"Question {question_id} answer must be true or false")
            reference = str(reference).strip().lower()
        elif not str(reference or "").strip():
            raise ScenarioValidationError(f"Question {question_id} must provide an answer")

        try:
            order_index = int(entry.get("order_index", position))
        except (TypeError, ValueError) as exc:
            raise ScenarioValidationError(f"Question {question_id} order_index must be an integer") from exc

        return AssessmentQuestion(
            id=question_id,
            scenario_id=scenario_id,
            question_type=question_type,
            prompt=str(entry["prompt"]).strip(),
            options=options,
            reference_answer=str(reference).strip() if reference is not None else None,
            explanation=entry.get("explanation"),
            order_index=order_index,
            source="static",
        )

    # ------------------------------------------------------------------
    # accessors
    # ------------------------------------------------------------------
    @property
    def scenarios(self) -> List[Dict[str, Any]]:
        return list(self._scenarios)

    @property
    def questions(self) -> List[AssessmentQuestion]:
        return list(self._questions)

    def questions_for(self, scenario_id: str) -> List[AssessmentQuestion]:
        return [q for q in self._questions if q.scenario_id == scenario_id]

    def sync(self) -> None:
        """Upsert every scenario and question; safe to run on each start-up."""
        for scenario in self._scenarios:
            db.upsert_scenario(
                scenario["id"],
                scenario["title"],
                description=scenario["description"],
                category=scenario["category"],
                tags=scenario["tags"],
                estimated_xp=scenario["estimated_xp"],
                is_active=scenario["is_active"],
            )
        for question in self._questions:
            db.save_question(question)
        logger.info(
            "Synced %d scenarios and %d questions from %s",
            len(self._scenarios),
            len(self._questions),
            self.path,
        )


def load_scenarios(path: Optional[str | Path] = None) -> ScenarioBank:
    """Validate the bank at ``path`` (default: the bundled file) and sync it into the database."""
    return ScenarioBank(path or DEFAULT_BANK_PATH, auto_sync=True)
