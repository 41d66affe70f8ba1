from __future__ import annotations

import json

import pytest

from research_copilot.services import prompt_store
from research_copilot.services.prompt_store import clear_prompt_cache, render_prompt


def test_render_prompt_substitutes_template_values():
    message = render_prompt(
        "messages.research_started",
        objective="Map the EV charger market",
        timebox_minutes="20",
        run_id="run_7",
    )
    assert "**Objective:** Map the EV charger market" in message
    assert "**Estimated Time:** 20 minutes" in message
    assert message.endswith("*Task ID: run_7*")


def test_multiline_prompt_is_joined_with_newlines():
    prompt = render_prompt("brief.planning_prompt")
    assert "- objective: string (clear research goal)" in prompt.splitlines()
    assert prompt.rstrip().endswith("Return ONLY valid JSON, no other text.")


def test_render_prompt_raises_for_unknown_key():
    with pytest.raises(KeyError):
        render_prompt("missing.prompt.key")


def test_render_prompt_reports_missing_values():
    with pytest.raises(KeyError, match="run_id"):
        render_prompt("messages.research_footer")


@pytest.fixture
def custom_catalog(tmp_path, monkeypatch):
    path = tmp_path / "prompts.json"
    monkeypatch.setattr(prompt_store, "PROMPTS_PATH", path)
    clear_prompt_cache()
    yield path
    clear_prompt_cache()


def test_cleared_cache_reloads_catalog(custom_catalog):
    custom_catalog.write_text(json.dumps({"greeting": "Hello $name"}), encoding="utf-8")
    assert render_prompt("greeting", name="Ada") == "Hello Ada"

    custom_catalog.write_text(json.dumps({"greeting": "Welcome back, $name"}), encoding="utf-8")
    clear_prompt_cache()

    assert render_prompt("greeting", name="Ada") == "Welcome back, Ada"


def test_catalog_entries_must_be_text(custom_catalog):
    custom_catalog.write_text(json.dumps({"limits": {"max": 3}}), encoding="utf-8")

    with pytest.raises(TypeError):
        render_prompt("limits.max")
