"""Completion capability — the narrow seam between the job pipeline and an LLM."""

from abc import ABC, abstractmethod

import structlog

from cli.retry import llm_retry
from llm import LLMError, LLMRateLimitError

from .errors import ExternalCapabilityError

logger = structlog.get_logger()


class CompletionCapability(ABC):
    """Turns (content, instructions) into raw model output."""

    @abstractmethod
    def propose(self, content: str, instructions: str, max_tokens: int | None = None) -> str:
        """Return the completion text (possibly empty).

        Raises:
            ExternalCapabilityError: the underlying call failed.
        """
        ...


class LLMCapability(CompletionCapability):
    """Adapts an ``llm.LLMProvider``; rate limits are retried before giving up."""

    def __init__(
        self,
        provider=None,
        max_tokens: int = 4000,
        max_attempts: int = 3,
        min_wait: float = 2.0,
        max_wait: float = 30.0,
        retry=None,
        provider_options: dict | None = None,
    ):
        self._provider = provider
        self._provider_options = provider_options or {}
        self.max_tokens = max_tokens
        if retry is None:
            retry = llm_retry(
                max_attempts=max_attempts,
                min_wait=min_wait,
                max_wait=max_wait,
                exceptions=(LLMRateLimitError,),
            )
        self._generate = retry(self._generate_once)

    def _get_provider(self):
        if self._provider:
            return self._provider
        from llm.factory import create_job_provider

        self._provider = create_job_provider(**self._provider_options)
        return self._provider

    def _generate_once(self, content: str, instructions: str, max_tokens: int) -> str:
        return self._get_provider().generate(
            messages=[{"role": "user", "content": content}],
            system=instructions,
            max_tokens=max_tokens,
        )

    def propose(self, content: str, instructions: str, max_tokens: int | None = None) -> str:
        try:
            text = self._generate(content, instructions, max_tokens or self.max_tokens)
        except LLMError as e:
            logger.warning("capability.llm_failed", error=str(e), error_type=type(e).__name__)
            raise ExternalCapabilityError(str(e)) from e
        return text or ""
