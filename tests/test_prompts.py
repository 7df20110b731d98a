import json
from pathlib import Path

import pytest

from prompts import PromptTemplate, get_prompt, load_prompts


def test_knowledge_check_prompt_renders():
    template = get_prompt("Knowledge_Check")
    assert template.placeholders == {"scenario_title", "conversation"}

    system, user = template.render(scenario_title="Giving Feedback", conversation="user: hi")
    assert "JSON" in system
    assert "Giving Feedback" in user
    assert '"question_text"' in user


def test_render_requires_every_placeholder():
    with pytest.raises(KeyError, match="conversation"):
        get_prompt("knowledge_check").render(scenario_title="x")


def test_unknown_prompt_lists_available():
    with pytest.raises(KeyError, match="knowledge_check"):
        get_prompt("missing")


def _write(directory: Path, name: str, **data):
    (directory / name).write_text(json.dumps(data), encoding="utf-8")


def test_load_rejects_incomplete_and_duplicate(tmp_path: Path):
    base = dict(
        id="demo",
        prompt_version="demo.v1",
        description="d",
        system_template="s",
        user_template="u {x}",
    )
    _write(tmp_path, "a.json", **base)
    registry = load_prompts(tmp_path)
    assert isinstance(registry["demo"], PromptTemplate)

    dup_dir = tmp_path / "dup"
    dup_dir.mkdir()
    _write(dup_dir, "a.json", **base)
    _write(dup_dir, "b.json", **base)
    with pytest.raises(ValueError, match="defined twice"):
        load_prompts(dup_dir)

    bad_dir = tmp_path / "bad"
    bad_dir.mkdir()
    _write(bad_dir, "a.json", **{**base, "user_template": ""})
    with pytest.raises(ValueError, match="user_template"):
        load_prompts(bad_dir)


def test_empty_directory_is_an_error(tmp_path: Path):
    with pytest.raises(RuntimeError):
        load_prompts(tmp_path)
