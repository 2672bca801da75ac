"""Pydantic configuration models for the memory pack engine."""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from llm import PROVIDERS

VALID_LLM_PROVIDERS = {"auto", *PROVIDERS}


class LLMConfig(BaseModel):
    """LLM provider configuration."""

    provider: str = "auto"
    model: Optional[str] = None  # None = llm.factory.JOB_MODELS entry
    api_key: Optional[str] = None

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        if v not in VALID_LLM_PROVIDERS:
            raise ValueError(f"Invalid LLM provider: {v}. Must be one of {VALID_LLM_PROVIDERS}")
        return v


class PathsConfig(BaseModel):
    """File paths configuration."""

    data_dir: Path = Path("~/.mpack/data")
    log_file: Optional[Path] = None

    @model_validator(mode="after")
    def expand_paths(self):
        """Expand ~ in all paths."""
        self.data_dir = self.data_dir.expanduser()
        if self.log_file is not None:
            self.log_file = self.log_file.expanduser()
        return self


class JobsConfig(BaseModel):
    """Job pipeline tuning."""

    max_depth: int = 3
    min_split_lines: int = 30
    max_comparisons: int = 50
    analyze_after_extract: bool = True
    max_step_failures: int = 3
    merge_batch_size: int = 25
    max_tokens: int = 4000

    @field_validator("max_depth", "max_comparisons", "max_step_failures", "merge_batch_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v


class ConsolidationConfig(BaseModel):
    """Defaults for consolidate jobs and the decay/prune commands."""

    decay_rate: float = 0.99
    decay_min_days: int = 7
    prune_threshold: float = 0.1
    prune_min_age_days: int = 30

    @field_validator("decay_rate", "prune_threshold")
    @classmethod
    def validate_fraction(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"must be 0-1, got {v}")
        return v


class RetryConfig(BaseModel):
    """Retry/backoff configuration."""

    max_attempts: int = 3
    min_wait: float = 2.0
    max_wait: float = 10.0
    llm_max_wait: float = 30.0


VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "WARNING"
    json_mode: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v_upper = v.upper()
        if v_upper not in VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log level: {v}. Must be one of {VALID_LOG_LEVELS}")
        return v_upper


class EngineConfig(BaseModel):
    """Main configuration model."""

    llm: LLMConfig = Field(default_factory=LLMConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    jobs: JobsConfig = Field(default_factory=JobsConfig)
    consolidation: ConsolidationConfig = Field(default_factory=ConsolidationConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def expand_env_vars(self):
        """Expand ${VAR} patterns in API keys."""
        if self.llm.api_key:
            key = self.llm.api_key
            if key.startswith("${") and key.endswith("}"):
                env_var = key[2:-1]
                self.llm.api_key = os.getenv(env_var, "")
        return self

    @classmethod
    def from_dict(cls, data: dict) -> "EngineConfig":
        """Create config from a parsed YAML dict."""
        if "paths" in data:
            for key in ["data_dir", "log_file"]:
                if isinstance(data["paths"].get(key), str):
                    data["paths"][key] = Path(data["paths"][key])
        return cls.model_validate(data)

    def to_dict(self) -> dict:
        return self.model_dump(mode="python")
