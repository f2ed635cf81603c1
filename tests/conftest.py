"""
Pytest configuration.

Why this exists:

The project uses a ``src/`` layout (package code lives in ``src/dns_smart_block``).
Normally, developers run tests after installing the package (e.g. ``pip install -e .``).

On some macOS/Python 3.13 setups, editable installs in dot-prefixed virtualenv
folders (like ``.venv``) can result in the generated ``.pth`` file being marked
as hidden, and Python's ``site`` module will skip hidden ``.pth`` files. When
that happens, ``import dns_smart_block`` fails even though the source tree is
present.

This file makes tests robust in that scenario by adding ``src/`` to ``sys.path``
only when the package cannot be imported normally.

It also provides an in-memory SQLite database built from the real models, a
controllable clock and a ready-made classifier configuration.
"""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path


def _ensure_src_on_path() -> None:
    try:
        import dns_smart_block  # noqa: F401
        return
    except ModuleNotFoundError:
        pass

    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    sys.path.insert(0, str(src_dir))


_ensure_src_on_path()

import pytest  # noqa: E402

from dns_smart_block.config import ClassifierConfig  # noqa: E402
from dns_smart_block.db import create_db_engine, init_db, make_session_factory  # noqa: E402
from dns_smart_block.utils import RetryPolicy  # noqa: E402

TEMPLATE = "Classify this site.\nInput:\n{{INPUT_JSON}}\nOutput:\n"


class FakeClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 20, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock()


def make_classifier_config(**overrides) -> ClassifierConfig:
    values = {
        "classification_type": "gaming",
        "prompt_template": TEMPLATE,
        "prompt_template_source": "test",
        "llm_model": "test-model",
        "llm_timeout": 5.0,
        "llm_retry_policy": RetryPolicy(max_attempts=2, base_delay_seconds=0.01),
        "http_timeout": 2.0,
        "http_max_bytes": 4096,
        "min_confidence": 0.8,
        "ttl_days": 10,
        "max_consecutive_errors": 3,
        "message_deadline_seconds": 5.0,
        "fetch_retry_policy": RetryPolicy(max_attempts=2, base_delay_seconds=0.01),
    }
    values.update(overrides)
    return ClassifierConfig(**values)


@pytest.fixture
def classifier_config():
    return make_classifier_config()
