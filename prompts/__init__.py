"""Versioned prompt templates for the knowledge-check generator.

Each ``*.json`` file in this directory defines one template with a system and
a user part. Templates are validated when first loaded and then cached.
"""
from __future__ import annotations

import json
import string
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, FrozenSet, Mapping, Optional

PROMPTS_DIR = Path(__file__).resolve().parent

_REQUIRED_KEYS = ("id", "prompt_version", "description", "system_template", "user_template")


def _placeholders(template: str) -> FrozenSet[str]:
    return frozenset(
        name for _, name, _, _ in string.Formatter().parse(template) if name
    )


@dataclass(frozen=True)
class PromptTemplate:
    id: str
    prompt_version: str
    description: str
    system_template: str
    user_template: str

    @property
    def placeholders(self) -> FrozenSet[str]:
        return _placeholders(self.system_template) | _placeholders(self.user_template)

    def render(self, **values: str) -> tuple[str, str]:
        missing = sorted(self.placeholders - values.keys())
        if missing:
            raise KeyError(f"Prompt '{self.id}' needs values for: {', '.join(missing)}")
        return self.system_template.format(**values), self.user_template.format(**values)

    @classmethod
    def from_file(cls, path: Path) -> "PromptTemplate":
        data = json.loads(path.read_text(encoding="utf-8"))
        absent = [key for key in _REQUIRED_KEYS if not data.get(key)]
        if absent:
            raise ValueError(f"{path.name}: missing prompt keys {', '.join(absent)}")
        template = cls(**{key: str(data[key]) for key in _REQUIRED_KEYS})
        # Surfaces unbalanced braces at load time rather than on first use.
        _ = template.placeholders
        return template


@lru_cache(maxsize=None)
def load_prompts(directory: Optional[Path] = None) -> Mapping[str, PromptTemplate]:
    root = Path(directory) if directory else PROMPTS_DIR
    registry: Dict[str, PromptTemplate] = {}
    for path in sorted(p for p in root.glob("*.json") if p.is_file()):
        template = PromptTemplate.from_file(path)
        key = template.id.lower()
        if key in registry:
            raise ValueError(f"Prompt id '{template.id}' defined twice ({path.name})")
        registry[key] = template
    if not registry:
        raise RuntimeError(f"No prompt templates under {root}")
    return registry


def get_prompt(prompt_id: str) -> PromptTemplate:
    registry = load_prompts()
    try:
        return registry[prompt_id.lower()]
    except KeyError:
        raise KeyError(
            f"Unknown prompt '{prompt_id}'. Available: {', '.join(sorted(registry))}"
        ) from None


__all__ = ["PromptTemplate", "load_prompts", "get_prompt", "PROMPTS_DIR"]
