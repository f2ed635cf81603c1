"""
Domain Classification Module
============================

Classifies a single domain for one classification type:

1. Fetch a bounded amount of the site and extract its metadata.
2. Render the prompt template by substituting the metadata, as JSON, for
   the ``{{INPUT_JSON}}`` placeholder.
3. Ask the LLM for a JSON verdict.
4. Validate the verdict: ``is_matching_site`` must be a boolean and
   ``confidence`` a number between 0 and 1.

Every failure is reported as a `ClassifierError` carrying a
`ClassifierErrorType` and whether trying again later could help. The
orchestrator turns these into ``error`` events.
"""

from __future__ import annotations

import json
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import openai
import structlog

from .config import PROMPT_PLACEHOLDER, ClassifierConfig
from .fetch import DomainResolutionError, SiteFetcher, SiteMetadata
from .llm import OpenAIChatMixin
from .prompt_store import compute_prompt_hash

log = structlog.get_logger(__name__)


class ClassifierErrorType(str, Enum):
    DNS_RESOLUTION_ERROR = "DnsResolutionError"
    LLM_API_CONNECTION_ERROR = "LlmApiConnectionError"
    LLM_API_TIMEOUT_ERROR = "LlmApiTimeoutError"
    LLM_API_ERROR = "LlmApiError"
    LLM_RESPONSE_PARSE_ERROR = "LlmResponseParseError"
    CLASSIFICATION_PARSE_ERROR = "ClassificationParseError"
    DEADLINE_EXCEEDED = "DeadlineExceeded"
    UNEXPECTED_ERROR = "UnexpectedError"


RETRYABLE_ERROR_TYPES = frozenset(
    {
        ClassifierErrorType.LLM_API_CONNECTION_ERROR,
        ClassifierErrorType.LLM_API_ERROR,
    }
)


class ClassifierError(Exception):
    """A classification attempt failed."""

    def __init__(
        self,
        error_type: ClassifierErrorType,
        message: str,
        retryable: bool | None = None,
    ):
        super().__init__(message)
        self.error_type = ClassifierErrorType(error_type)
        self.message = message
        self.retryable = (
            self.error_type in RETRYABLE_ERROR_TYPES if retryable is None else retryable
        )

    def __str__(self) -> str:
        return f"{self.error_type.value}: {self.message}"


@dataclass(frozen=True)
class ClassificationResult:
    is_matching_site: bool
    confidence: float


@dataclass(frozen=True)
class ClassificationOutcome:
    """A validated verdict together with what is needed to audit it."""

    result: ClassificationResult
    model: str
    prompt: str
    prompt_hash: str
    http_status: int
    response_time_ms: int


def _extract_json(text: str) -> dict:
    """Parse JSON from raw model output, trimming surrounding text if needed."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end == -1 or end <= start:
            raise
        return json.loads(text[start : end + 1])


def parse_classification_response(text: str) -> ClassificationResult:
    """
    Parse and validate the model's verdict.

    Raises:
        json.JSONDecodeError: if no JSON object can be found in ``text``.
        ValueError: if the object is missing a field or a field is invalid.
    """
    raw = text.strip()
    if not raw:
        raise ValueError("Classification response is empty.")

    data = _extract_json(raw)
    if not isinstance(data, dict):
        raise ValueError("Classification response is not a JSON object.")

    if "is_matching_site" not in data:
        raise ValueError("Missing field 'is_matching_site'.")
    if "confidence" not in data:
        raise ValueError("Missing field 'confidence'.")

    is_matching_site = data["is_matching_site"]
    if not isinstance(is_matching_site, bool):
        raise ValueError("'is_matching_site' must be a boolean.")

    confidence = data["confidence"]
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise ValueError("'confidence' must be a number.")
    try:
        confidence = float(confidence)
    except OverflowError:
        raise ValueError(
            "'confidence' must be between 0 and 1, got an oversized number."
        ) from None
    if not math.isfinite(confidence) or not 0.0 <= confidence <= 1.0:
        raise ValueError(f"'confidence' must be between 0 and 1, got {confidence}.")

    return ClassificationResult(is_matching_site=is_matching_site, confidence=confidence)


def render_prompt(template: str, metadata: SiteMetadata) -> str:
    """Substitute the site metadata, serialized as JSON, into the template."""
    payload = json.dumps(metadata.to_dict(), ensure_ascii=False, indent=2)
    return template.replace(PROMPT_PLACEHOLDER, payload)


class DomainClassifier(OpenAIChatMixin):
    """
    Classifier for one classification type, configured once at construction.
    """

    def __init__(
        self,
        config: ClassifierConfig,
        fetcher: SiteFetcher | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.llm_retry_policy = config.llm_retry_policy
        self.fetcher = fetcher or SiteFetcher(
            http_timeout=config.http_timeout,
            max_bytes=config.http_max_bytes,
            retry_policy=config.fetch_retry_policy,
        )
        self.clock = clock

    def classify(self, domain: str) -> ClassificationOutcome:
        """
        Classify ``domain``.

        Raises:
            ClassifierError: if no valid verdict could be obtained.
        """
        try:
            metadata = self.fetcher.fetch(domain)
        except DomainResolutionError as e:
            raise ClassifierError(ClassifierErrorType.DNS_RESOLUTION_ERROR, str(e)) from e

        prompt = render_prompt(self.config.prompt_template, metadata)

        started = self.clock()
        content, model = self._ask_model(prompt)
        response_time_ms = int((self.clock() - started) * 1000)

        try:
            result = parse_classification_response(content)
        except json.JSONDecodeError as e:
            log.warning(
                "Classification response is not JSON",
                domain=domain,
                error=str(e),
                response=content[:200],
            )
            raise ClassifierError(
                ClassifierErrorType.LLM_RESPONSE_PARSE_ERROR,
                f"Response is not valid JSON: {e}",
            ) from e
        except ValueError as e:
            log.warning(
                "Classification response invalid",
                domain=domain,
                error=str(e),
                response=content[:200],
            )
            raise ClassifierError(
                ClassifierErrorType.CLASSIFICATION_PARSE_ERROR, str(e)
            ) from e

        log.info(
            "Domain classified",
            domain=domain,
            classification_type=self.config.classification_type,
            is_matching_site=result.is_matching_site,
            confidence=result.confidence,
            model=model,
            response_time_ms=response_time_ms,
        )
        return ClassificationOutcome(
            result=result,
            model=model,
            prompt=prompt,
            prompt_hash=compute_prompt_hash(prompt),
            http_status=metadata.http_status,
            response_time_ms=response_time_ms,
        )

    def _ask_model(self, prompt: str) -> tuple[str, str]:
        """Send the prompt, returning ``(content, model_used)``."""
        params = {
            "model": self.config.llm_model,
            "messages": [{"role": "user", "content": prompt}],
            "response_format": {"type": "json_object"},
            "timeout": self.config.llm_timeout,
        }
        try:
            response = self._create_completion(**params)
        except openai.APITimeoutError as e:
            raise ClassifierError(
                ClassifierErrorType.LLM_API_TIMEOUT_ERROR,
                f"LLM request timed out after {self.config.llm_timeout}s",
            ) from e
        except openai.APIConnectionError as e:
            raise ClassifierError(
                ClassifierErrorType.LLM_API_CONNECTION_ERROR, str(e)
            ) from e
        except (openai.RateLimitError, openai.InternalServerError) as e:
            raise ClassifierError(ClassifierErrorType.LLM_API_ERROR, str(e)) from e
        except openai.APIError as e:
            # 4xx other than rate limiting: the same request will fail again.
            raise ClassifierError(
                ClassifierErrorType.LLM_API_ERROR, str(e), retryable=False
            ) from e

        if not response.choices:
            raise ClassifierError(
                ClassifierErrorType.LLM_RESPONSE_PARSE_ERROR, "Response has no choices"
            )
        content = response.choices[0].message.content or ""
        model = response.model if isinstance(response.model, str) else self.config.llm_model
        return content, model
