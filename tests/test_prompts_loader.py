from pathlib import Path

import pytest

from codraw.prompts import loader


def test_list_prompts_domain():
    names = loader.list_prompts(domain="canvas")
    assert "canvas_artist" in names
    assert "canvas_classifier" in names
    assert loader.list_prompts(domain="missing") == []


def test_classifier_includes_shared_system_prompt_and_layers():
    rendered = loader.render_prompt(
        "canvas_classifier",
        user_input="add a moon to the sky",
        layer_names=["Layer 1", "Sky"],
    )
    assert "single JSON object" in rendered
    assert "Existing layers, back to front: Layer 1, Sky." in rendered
    assert 'USER INPUT: "add a moon to the sky"' in rendered


def test_artist_prompt_without_instruction_asks_for_continuation():
    rendered = loader.render_prompt("canvas_artist", user_input="")
    assert "USER INPUT" not in rendered
    assert "continue or complete" in rendered


def test_workspace_prompt_uses_focus():
    assert "Focus on: the equation" in loader.render_prompt("workspace_user_prompt", focus="the equation")
    assert "Focus on" not in loader.render_prompt("workspace_user_prompt", focus="")


def test_validate_reports_missing_variables():
    with pytest.raises(ValueError, match="user_input"):
        loader.render_prompt("canvas_classifier", validate=True, layer_names=[])


def test_unknown_prompt_raises_key_error():
    with pytest.raises(KeyError):
        loader.get_prompt("does_not_exist")
    with pytest.raises(KeyError):
        loader.get_prompt("canvas_classifier_missing")


def test_invalid_template_raises_and_is_not_silently_ignored():
    target_dir = Path(loader.__file__).resolve().parent / "v1" / "shared"
    bad_file = target_dir / "bad_template_for_test.yaml"
    bad_file.write_text("bad_prompt: '{% if foo %} missing endif'\n")

    try:
        loader.clear_cache()
        with pytest.raises(ValueError):
            loader._load_prompts()
    finally:
        bad_file.unlink()
        loader.clear_cache()
