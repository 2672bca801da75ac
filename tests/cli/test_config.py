"""Tests for config loading, validation and engine construction."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from cli.config import build_capability, build_pipeline, get_resolver, load_config, load_config_model
from cli.config_models import EngineConfig
from memory.capability import LLMCapability


def _write(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return path


class TestLoadConfig:
    def test_defaults(self, tmp_path):
        config = load_config_model(_write(tmp_path, ""))
        assert config.llm.provider == "auto"
        assert config.jobs.max_depth == 3
        assert config.jobs.max_step_failures == 3
        assert config.logging.level == "WARNING"
        assert config.paths.data_dir == Path("~/.mpack/data").expanduser()

    def test_overrides(self, tmp_path):
        path = _write(
            tmp_path,
            "llm:\n  provider: openai\n  model: gpt-4o-mini\n"
            "paths:\n  data_dir: ~/packs\n  log_file: ~/logs/mpack.log\n"
            "jobs:\n  max_depth: 5\n  merge_batch_size: 10\n"
            "logging:\n  level: debug\n",
        )
        config = load_config_model(path)
        assert config.llm.provider == "openai"
        assert config.paths.data_dir == Path.home() / "packs"
        assert config.paths.log_file == Path.home() / "logs" / "mpack.log"
        assert config.jobs.max_depth == 5
        assert config.jobs.merge_batch_size == 10
        assert config.logging.level == "DEBUG"

    def test_load_config_returns_dict(self, tmp_path):
        data = load_config(_write(tmp_path, "retry:\n  max_attempts: 5\n"))
        assert data["retry"]["max_attempts"] == 5
        assert data["consolidation"]["decay_rate"] == 0.99

    def test_env_var_api_key(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MPACK_TEST_KEY", "sk-from-env")
        config = load_config_model(_write(tmp_path, "llm:\n  api_key: ${MPACK_TEST_KEY}\n"))
        assert config.llm.api_key == "sk-from-env"

    @pytest.mark.parametrize(
        "text",
        [
            "llm:\n  provider: llama\n",
            "jobs:\n  max_step_failures: 0\n",
            "consolidation:\n  decay_rate: 1.5\n",
            "logging:\n  level: LOUD\n",
        ],
    )
    def test_invalid_values(self, tmp_path, text):
        with pytest.raises(ValueError, match="Config validation failed"):
            load_config_model(_write(tmp_path, text))

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_config_model(_write(tmp_path, "jobs: [unclosed\n"))


class TestBuilders:
    def test_resolver_uses_data_dir(self, tmp_path):
        config = EngineConfig.from_dict({"paths": {"data_dir": str(tmp_path)}})
        assert get_resolver(config).base_dir == tmp_path

    def test_capability_options(self):
        config = EngineConfig.from_dict(
            {"llm": {"provider": "claude", "api_key": "sk-ant-x"}, "jobs": {"max_tokens": 1234}}
        )
        capability = build_capability(config)
        assert isinstance(capability, LLMCapability)
        assert capability.max_tokens == 1234
        assert capability._provider_options == {"provider": "claude", "api_key": "sk-ant-x"}

    def test_pipeline_settings(self, tmp_path):
        config = EngineConfig.from_dict(
            {
                "paths": {"data_dir": str(tmp_path)},
                "jobs": {"max_depth": 2, "max_step_failures": 5, "analyze_after_extract": False},
            }
        )
        capability = MagicMock()
        pipeline = build_pipeline(config, capability=capability)
        assert pipeline.capability is capability
        assert pipeline.max_depth == 2
        assert pipeline.max_step_failures == 5
        assert pipeline.analyze_after_extract is False
