"""
Configuration module for the DNS Smart Block services.

This module centralizes the loading and validation of all configuration
parameters from environment variables. It provides a single `Settings`
class that acts as a container for all configurable values, and a frozen
`ClassifierConfig` that is built from it once per orchestrator process and
passed explicitly to the classifier and the orchestrator.

Every value is validated when it is loaded so that a misconfigured process
fails at startup instead of half-way through classifying a domain.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Literal

import openai
from sqlalchemy.engine import make_url

from .utils import RetryPolicy

PROMPT_PLACEHOLDER = "{{INPUT_JSON}}"

# Attempts and backoff used when fetching a domain's content.
FETCH_RETRY_POLICY = RetryPolicy(
    max_attempts=3, base_delay_seconds=0.5, max_backoff_seconds=2.0
)


@dataclass(frozen=True)
class ClassifierConfig:
    """Immutable configuration of a single classifier type."""

    classification_type: str
    prompt_template: str
    prompt_template_source: str
    llm_model: str
    llm_timeout: float
    llm_retry_policy: RetryPolicy
    http_timeout: float
    http_max_bytes: int
    min_confidence: float
    ttl_days: int
    max_consecutive_errors: int
    message_deadline_seconds: float
    fetch_retry_policy: RetryPolicy = FETCH_RETRY_POLICY

    def is_blocking(self, is_matching_site: bool, confidence: float) -> bool:
        """Return True if a verdict should put the domain on the blocklist."""
        return bool(is_matching_site) and confidence >= self.min_confidence


class Settings:
    """
    A container for all configuration settings, loaded from environment variables.

    This class centralizes configuration, providing default values for optional
    settings and raising errors for missing or invalid settings.
    """

    # --- Database ---
    DATABASE_URL: str
    DATABASE_PASSWORD_FILE: str | None
    DB_STATEMENT_TIMEOUT_MS: int

    # --- Message bus ---
    KAFKA_BROKERS: str
    KAFKA_TOPIC: str
    KAFKA_GROUP_PREFIX: str
    BUS_MAX_IN_FLIGHT: int
    BUS_POLL_TIMEOUT_MS: int
    NAK_DELAY_SECONDS: float

    # --- LLM Provider Configuration ---
    LLM_PROVIDER: Literal["openai", "ollama"]
    OLLAMA_BASE_URL: str | None
    OPENAI_API_KEY: str | None
    LLM_MODEL: str
    LLM_TIMEOUT: float
    LLM_MAX_RETRIES: int
    MAX_RETRY_BACKOFF_SECONDS: float

    # --- Classifier ---
    CLASSIFICATION_TYPE: str
    PROMPT_TEMPLATE: str | None
    HTTP_TIMEOUT_SEC: float
    HTTP_MAX_KB: int
    MIN_CONFIDENCE: float
    CLASSIFICATION_TTL_DAYS: int
    MAX_CONSECUTIVE_ERRORS: int
    MESSAGE_DEADLINE_SECONDS: float | None

    # --- Logging ---
    LOG_LEVEL: str
    LOG_FORMAT: Literal["console", "json"]

    # --- Blocklist server ---
    BIND_HOST: str
    BIND_PORT: int
    BLOCKLIST_MIN_CONFIDENCE: float
    BLOCKLIST_THRESHOLDS: dict[str, float]

    def __init__(self):
        """
        Loads settings from environment variables and performs validation.
        """
        # --- Database ---
        self.DATABASE_URL = self._get_required_env("DATABASE_URL")
        self.DATABASE_PASSWORD_FILE = os.getenv("DATABASE_PASSWORD_FILE") or None
        self.DB_STATEMENT_TIMEOUT_MS = self._get_positive_int(
            "DB_STATEMENT_TIMEOUT_MS", 30000
        )

        # --- Message bus ---
        self.KAFKA_BROKERS = os.getenv("KAFKA_BROKERS", "localhost:9092")
        self.KAFKA_TOPIC = os.getenv("KAFKA_TOPIC", "dns.domains")
        self.KAFKA_GROUP_PREFIX = os.getenv("KAFKA_GROUP_PREFIX", "dns-smart-block")
        self.BUS_MAX_IN_FLIGHT = self._get_positive_int("BUS_MAX_IN_FLIGHT", 1)
        self.BUS_POLL_TIMEOUT_MS = self._get_positive_int("BUS_POLL_TIMEOUT_MS", 1000)
        self.NAK_DELAY_SECONDS = float(os.getenv("NAK_DELAY_SECONDS", 5))

        # --- LLM Provider Configuration ---
        self.LLM_PROVIDER = os.getenv("LLM_PROVIDER", "ollama")
        if self.LLM_PROVIDER not in ("openai", "ollama"):
            raise ValueError("LLM_PROVIDER must be 'openai' or 'ollama'")

        if self.LLM_PROVIDER == "ollama":
            self.OLLAMA_BASE_URL = os.getenv(
                "OLLAMA_BASE_URL", "http://localhost:11434/v1/"
            )
            self.OPENAI_API_KEY = None  # Not used for Ollama
            self.LLM_MODEL = os.getenv("LLM_MODEL", "llama3.2")
        else:  # openai
            self.OLLAMA_BASE_URL = None
            self.OPENAI_API_KEY = self._get_required_env("OPENAI_API_KEY")
            self.LLM_MODEL = os.getenv("LLM_MODEL", "gpt-5-mini")

        self.LLM_TIMEOUT = self._get_positive_float("LLM_TIMEOUT", 60)
        self.LLM_MAX_RETRIES = self._get_positive_int("LLM_MAX_RETRIES", 3)
        self.MAX_RETRY_BACKOFF_SECONDS = self._get_positive_float(
            "MAX_RETRY_BACKOFF_SECONDS", 30
        )

        # --- Classifier ---
        self.CLASSIFICATION_TYPE = os.getenv("CLASSIFICATION_TYPE", "gaming").strip()
        if not self.CLASSIFICATION_TYPE:
            raise ValueError("CLASSIFICATION_TYPE must not be empty")
        self.PROMPT_TEMPLATE = os.getenv("PROMPT_TEMPLATE") or None
        self.HTTP_TIMEOUT_SEC = self._get_positive_float("HTTP_TIMEOUT_SEC", 10)
        self.HTTP_MAX_KB = self._get_positive_int("HTTP_MAX_KB", 100)
        self.MIN_CONFIDENCE = self._get_threshold("MIN_CONFIDENCE", 0.8)
        self.CLASSIFICATION_TTL_DAYS = self._get_positive_int(
            "CLASSIFICATION_TTL_DAYS", 10
        )
        self.MAX_CONSECUTIVE_ERRORS = self._get_positive_int(
            "MAX_CONSECUTIVE_ERRORS", 3
        )
        deadline = os.getenv("MESSAGE_DEADLINE_SECONDS")
        self.MESSAGE_DEADLINE_SECONDS = (
            self._get_positive_float("MESSAGE_DEADLINE_SECONDS", 0) if deadline else None
        )

        # --- Logging ---
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_FORMAT = os.getenv("LOG_FORMAT", "console").lower()
        if self.LOG_FORMAT not in ("console", "json"):
            raise ValueError("LOG_FORMAT must be 'console' or 'json'")

        # --- Blocklist server ---
        self.BIND_HOST = os.getenv("BIND_HOST", "0.0.0.0")
        self.BIND_PORT = self._get_positive_int("BIND_PORT", 3000)
        self.BLOCKLIST_MIN_CONFIDENCE = self._get_threshold(
            "BLOCKLIST_MIN_CONFIDENCE", 0.8
        )
        self.BLOCKLIST_THRESHOLDS = parse_thresholds(
            os.getenv("BLOCKLIST_THRESHOLDS", "")
        )

    def _get_required_env(self, var_name: str) -> str:
        """
        Gets a required environment variable, raising an error if it's not set.
        """
        value = os.getenv(var_name)
        if value is None:
            raise ValueError(f"Required environment variable '{var_name}' is not set.")
        return value

    def _get_positive_int(self, var_name: str, default: int) -> int:
        value = int(os.getenv(var_name, default))
        if value <= 0:
            raise ValueError(f"{var_name} must be > 0")
        return value

    def _get_positive_float(self, var_name: str, default: float) -> float:
        value = float(os.getenv(var_name, default))
        if value <= 0:
            raise ValueError(f"{var_name} must be > 0")
        return value

    def _get_threshold(self, var_name: str, default: float) -> float:
        value = float(os.getenv(var_name, default))
        if not 0.0 <= value <= 1.0:
            raise ValueError(f"{var_name} must be between 0.0 and 1.0")
        return value

    @property
    def database_url(self) -> str:
        """The database URL with the password file applied, if configured."""
        return construct_database_url(self.DATABASE_URL, self.DATABASE_PASSWORD_FILE)

    @property
    def consumer_group(self) -> str:
        return f"{self.KAFKA_GROUP_PREFIX}-{self.CLASSIFICATION_TYPE}"

    def blocklist_threshold(self, classification_type: str) -> float:
        """Return the blocking threshold configured for a classification type."""
        return self.BLOCKLIST_THRESHOLDS.get(
            classification_type, self.BLOCKLIST_MIN_CONFIDENCE
        )

    def message_deadline(self) -> float:
        """
        Upper bound, in seconds, for one classifier invocation.

        Unless configured explicitly, this is the sum of the fetch budget
        (every attempt plus backoff) and the LLM budget (every attempt plus
        capped backoff).
        """
        if self.MESSAGE_DEADLINE_SECONDS is not None:
            return self.MESSAGE_DEADLINE_SECONDS
        fetch_attempts = FETCH_RETRY_POLICY.max_attempts
        fetch_budget = self.HTTP_TIMEOUT_SEC * fetch_attempts + sum(
            FETCH_RETRY_POLICY.delay(attempt) for attempt in range(1, fetch_attempts)
        )
        llm_budget = (
            self.LLM_TIMEOUT * self.LLM_MAX_RETRIES
            + self.MAX_RETRY_BACKOFF_SECONDS * (self.LLM_MAX_RETRIES - 1)
        )
        return fetch_budget + llm_budget

    def classifier_config(self) -> ClassifierConfig:
        """
        Build the validated configuration for this process's classifier type.

        Raises ValueError if the prompt template cannot be loaded or does not
        contain the metadata placeholder.
        """
        template, source = load_prompt_template(
            self.PROMPT_TEMPLATE, self.CLASSIFICATION_TYPE
        )
        return ClassifierConfig(
            classification_type=self.CLASSIFICATION_TYPE,
            prompt_template=template,
            prompt_template_source=source,
            llm_model=self.LLM_MODEL,
            llm_timeout=self.LLM_TIMEOUT,
            llm_retry_policy=RetryPolicy(
                max_attempts=self.LLM_MAX_RETRIES,
                base_delay_seconds=1.0,
                max_backoff_seconds=self.MAX_RETRY_BACKOFF_SECONDS,
            ),
            http_timeout=self.HTTP_TIMEOUT_SEC,
            http_max_bytes=self.HTTP_MAX_KB * 1024,
            min_confidence=self.MIN_CONFIDENCE,
            ttl_days=self.CLASSIFICATION_TTL_DAYS,
            max_consecutive_errors=self.MAX_CONSECUTIVE_ERRORS,
            message_deadline_seconds=self.message_deadline(),
        )


def parse_thresholds(raw: str) -> dict[str, float]:
    """
    Parse ``type=threshold`` pairs separated by commas.

    >>> parse_thresholds("gaming=0.8, video-streaming=0.7")
    {'gaming': 0.8, 'video-streaming': 0.7}
    """
    thresholds: dict[str, float] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        name, sep, value = item.partition("=")
        name = name.strip()
        if not sep or not name:
            raise ValueError(f"Invalid BLOCKLIST_THRESHOLDS entry: {item!r}")
        try:
            threshold = float(value)
        except ValueError:
            raise ValueError(f"Invalid BLOCKLIST_THRESHOLDS entry: {item!r}") from None
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"Threshold for {name!r} must be between 0.0 and 1.0")
        thresholds[name] = threshold
    return thresholds


def load_prompt_template(path: str | None, classification_type: str) -> tuple[str, str]:
    """
    Load a prompt template, returning ``(template, source)``.

    Without an explicit path, the bundled ``templates/<type>.txt`` is used.
    """
    if path:
        try:
            template = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise ValueError(f"Cannot read prompt template {path!r}: {e}") from e
        source = path
    else:
        bundled = resources.files("dns_smart_block") / "templates" / f"{classification_type}.txt"
        if not bundled.is_file():
            raise ValueError(
                "PROMPT_TEMPLATE is not set and there is no bundled template "
                f"for classification type {classification_type!r}"
            )
        template = bundled.read_text(encoding="utf-8")
        source = f"bundled:{classification_type}.txt"

    if PROMPT_PLACEHOLDER not in template:
        raise ValueError(f"Prompt template {source!r} must contain {PROMPT_PLACEHOLDER}")
    return template, source


def construct_database_url(base_url: str, password_file: str | None) -> str:
    """Inject the password stored in ``password_file`` into ``base_url``."""
    if not password_file:
        return base_url
    try:
        password = Path(password_file).read_text(encoding="utf-8").strip()
    except OSError as e:
        raise ValueError(f"Cannot read database password file: {e}") from e
    return make_url(base_url).set(password=password).render_as_string(
        hide_password=False
    )


def sanitize_database_url(url: str) -> str:
    """Return ``url`` with its password masked, for logging."""
    try:
        return make_url(url).render_as_string(hide_password=True)
    except Exception:
        return "<unparseable database url>"


def setup_libraries(settings: Settings) -> None:
    """
    Configures third-party libraries based on the application settings.
    """
    # Configure OpenAI SDK
    if settings.LLM_PROVIDER == "ollama":
        openai.base_url = settings.OLLAMA_BASE_URL
        openai.api_key = "dummy"
    else:
        openai.api_key = settings.OPENAI_API_KEY
    # Retries are handled by our own decorator so that they are bounded by the
    # per-message deadline.
    openai.max_retries = 0
