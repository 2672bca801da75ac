"""Configuration loading and engine construction."""

from pathlib import Path
from typing import Optional

import yaml

from llm import LLMRateLimitError
from memory.capability import LLMCapability
from memory.locator import FileResolver
from memory.pipeline import JobPipeline

from .config_models import EngineConfig
from .retry import retry_from_config

# Default config dict (backwards compat)
DEFAULT_CONFIG = EngineConfig().to_dict()


def find_config() -> Optional[Path]:
    """Find config file in standard locations."""
    locations = [
        Path.cwd() / "mpack.yaml",
        Path.home() / ".mpack" / "config.yaml",
    ]
    for loc in locations:
        if loc.exists():
            return loc
    return None


def load_config(config_path: Optional[Path] = None) -> dict:
    """Load configuration from file or defaults.

    Returns dict. Use load_config_model() for typed access.
    """
    model = load_config_model(config_path)
    return model.to_dict()


def load_config_model(config_path: Optional[Path] = None) -> EngineConfig:
    """Load configuration as Pydantic model with validation."""
    base_config = {}

    path = config_path or find_config()
    if path and path.exists():
        try:
            with open(path) as f:
                base_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in config file: {e}")

    try:
        return EngineConfig.from_dict(base_config)
    except Exception as e:
        raise ValueError(f"Config validation failed: {e}")


def get_resolver(config: EngineConfig) -> FileResolver:
    return FileResolver(config.paths.data_dir)


def build_capability(config: EngineConfig) -> LLMCapability:
    """LLM-backed capability; the provider itself is created on first use."""
    options = {"provider": config.llm.provider}
    if config.llm.model:
        options["model"] = config.llm.model
    if config.llm.api_key:
        options["api_key"] = config.llm.api_key
    return LLMCapability(
        max_tokens=config.jobs.max_tokens,
        retry=retry_from_config(config.to_dict(), "llm", exceptions=(LLMRateLimitError,)),
        provider_options=options,
    )


def build_pipeline(config: EngineConfig, capability=None) -> JobPipeline:
    jobs = config.jobs
    return JobPipeline(
        get_resolver(config),
        capability=capability or build_capability(config),
        max_depth=jobs.max_depth,
        min_split_lines=jobs.min_split_lines,
        max_comparisons=jobs.max_comparisons,
        analyze_after_extract=jobs.analyze_after_extract,
        max_step_failures=jobs.max_step_failures,
        merge_batch_size=jobs.merge_batch_size,
        max_tokens=jobs.max_tokens,
    )
