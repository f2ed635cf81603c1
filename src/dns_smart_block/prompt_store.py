"""
Content-addressed storage for rendered prompts.

Every classification points at the exact prompt text that produced it.
Prompts are keyed by a digest of their text, so the same rendered prompt is
stored once no matter how many domains or processes produce it.
"""

from __future__ import annotations

import hashlib
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import dialect_insert
from .models import Prompt
from .utils import utcnow

log = structlog.get_logger(__name__)

HASH_PREFIX = "sha256:"


def compute_prompt_hash(content: str) -> str:
    """Return the deterministic ``sha256:<hex>`` digest of a prompt."""
    return HASH_PREFIX + hashlib.sha256(content.encode("utf-8")).hexdigest()


class PromptStore:
    """Insert-or-fetch access to the ``prompts`` table."""

    def __init__(self, session: Session):
        self.session = session

    def ensure_prompt(self, content: str, now: datetime | None = None) -> int:
        """
        Return the id of the prompt with this content, inserting it if needed.

        Concurrent inserts of the same text resolve through the unique hash:
        the losing insert is a no-op and the existing row is returned.
        """
        prompt_hash = compute_prompt_hash(content)
        stmt = (
            dialect_insert(self.session, Prompt.__table__)
            .values(content=content, hash=prompt_hash, created_at=now or utcnow())
            .on_conflict_do_nothing(index_elements=["hash"])
        )
        self.session.execute(stmt)
        prompt_id = self.session.execute(
            select(Prompt.id).where(Prompt.hash == prompt_hash)
        ).scalar_one()
        log.debug("Prompt stored", prompt_id=prompt_id, prompt_hash=prompt_hash)
        return prompt_id

    def get(self, prompt_id: int) -> Prompt | None:
        return self.session.get(Prompt, prompt_id)
