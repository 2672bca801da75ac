"""Multi-provider LLM abstraction layer."""

from .base import LLMAuthError, LLMError, LLMProvider, LLMRateLimitError
from .factory import PROVIDERS, create_job_provider, resolve_provider_name

__all__ = [
    "LLMProvider",
    "PROVIDERS",
    "create_job_provider",
    "resolve_provider_name",
    "LLMError",
    "LLMRateLimitError",
    "LLMAuthError",
]
