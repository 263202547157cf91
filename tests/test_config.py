import pytest
from pydantic import ValidationError

from config import DEFAULT_SYSTEM_PROMPT, OperatorConfig


def test_defaults():
    config = OperatorConfig()
    assert config.dispatch.max_tool_rounds == 4
    assert config.dispatch.min_query_chars == 3
    assert "i am" in config.dispatch.filler_queries
    assert config.system_prompt == DEFAULT_SYSTEM_PROMPT
    assert "end-call" in config.system_prompt


def test_default_fillers_reach_denylist():
    dispatch = OperatorConfig().dispatch
    # shorter phrases are already rejected by the length check
    assert all(len(f) >= dispatch.min_query_chars for f in dispatch.filler_queries)


def test_merge_patch_is_nested_and_partial():
    config = OperatorConfig()
    updated = config.merge_patch({"dispatch": {"max_tool_rounds": 2}, "speech": {"voice": "hannah"}})

    assert updated.dispatch.max_tool_rounds == 2
    assert updated.dispatch.min_query_chars == 3
    assert updated.speech.voice == "hannah"
    assert updated.speech.model == config.speech.model
    # original untouched
    assert config.dispatch.max_tool_rounds == 4


def test_merge_patch_validates():
    with pytest.raises(ValidationError):
        OperatorConfig().merge_patch({"dispatch": {"max_tool_rounds": 0}})


def test_save_and_load(tmp_path):
    path = tmp_path / "operator_config.json"
    OperatorConfig().merge_patch({"groq": {"temperature": 0.3}}).save(path)

    loaded = OperatorConfig.load(path)
    assert loaded.groq.temperature == 0.3


def test_load_missing_or_broken_file_gives_defaults(tmp_path):
    assert OperatorConfig.load(tmp_path / "missing.json") == OperatorConfig()

    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    assert OperatorConfig.load(broken) == OperatorConfig()
