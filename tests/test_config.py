import pytest
from pydantic import ValidationError

from book_author.config import BackendConfig, Config, GenerationConfig

def test_default_config():
    config = Config()
    assert config.generation.context_window_size == 128000
    assert config.generation.revision_threshold == 70
    assert config.generation.max_revisions == 2
    assert config.generation.approval_threshold == 60
    assert config.generation.narrative_chapter_window == 5
    assert config.backend.temperature == 0.7
    assert config.log_level == "INFO"

def test_config_from_yaml(tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("""
backend:
  model: local-model
  base_url: http://localhost:8000/v1
generation:
  context_window_size: 32000
  max_revisions: 1
  content:
    content_rating: R
    avoid_topics: [gore]
""")

    config = Config.from_yaml(config_file)
    assert config.backend.model == "local-model"
    assert config.generation.context_window_size == 32000
    assert config.generation.max_revisions == 1
    assert config.generation.content.avoid_topics == ["gore"]

def test_empty_yaml_gives_defaults(tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("")
    assert Config.from_yaml(config_file) == Config()

def test_config_validation():
    with pytest.raises(ValidationError):
        GenerationConfig(context_window_size=0)
    with pytest.raises(ValidationError):
        GenerationConfig(revision_threshold=120)

def test_config_to_yaml(tmp_path):
    config = Config(generation=GenerationConfig(context_window_size=64000))
    output_file = tmp_path / "output.yaml"

    config.to_yaml(output_file)

    assert output_file.exists()
    loaded_config = Config.from_yaml(output_file)
    assert loaded_config.generation.context_window_size == 64000

def test_api_key_falls_back_to_environment(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-from-env")
    assert BackendConfig().api_key == "sk-from-env"
    assert BackendConfig(api_key="explicit").api_key == "explicit"
