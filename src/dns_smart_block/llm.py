"""
Shared LLM helpers.

This module centralizes the OpenAI-compatible chat completion call so every
classifier type uses the same retry behaviour and logging. The same client
talks to OpenAI or to a local Ollama server through its `/v1` endpoint; see
`config.setup_libraries`.
"""

import openai

from .utils import retry

RETRYABLE_OPENAI_EXCEPTIONS = (
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)

# APITimeoutError subclasses APIConnectionError; it is raised without retrying.
NON_RETRYABLE_OPENAI_EXCEPTIONS = (openai.APITimeoutError,)


class OpenAIChatMixin:
    """
    Mixin providing a retried OpenAI-compatible chat completion call.

    The mixin expects ``self.llm_retry_policy`` to hold the `RetryPolicy`
    used by the retry decorator.
    """

    @retry(
        retryable_exceptions=RETRYABLE_OPENAI_EXCEPTIONS,
        policy_attr="llm_retry_policy",
        non_retryable_exceptions=NON_RETRYABLE_OPENAI_EXCEPTIONS,
    )
    def _create_completion(self, **kwargs):
        """Call the OpenAI-compatible chat completion API with retries."""
        return openai.chat.completions.create(**kwargs)
