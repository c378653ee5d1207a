from __future__ import annotations

import logging
from typing import Iterable, List

from .errors import PersistenceError
from .repository import NotebookRepository

logger = logging.getLogger(__name__)

MAX_TAG_LENGTH = 100


def normalize_tag_name(raw: str) -> str:
    """`" Work  Notes "` -> `"work notes"`."""
    name = " ".join(str(raw).split()).lower()
    return name[:MAX_TAG_LENGTH].strip()


class TagReconciler:
    """
    Maps free-text tag suggestions onto canonical tag rows.

    Creation is insert-or-ignore followed by a read of the canonical row, so
    concurrent workers suggesting the same tag all end up with one row and
    its id. No locks are taken.
    """

    def __init__(self, repository: NotebookRepository, max_attempts: int = 3):
        self.repo = repository
        self.max_attempts = max(1, max_attempts)

    def resolve(self, raw_name: str) -> str:
        name = normalize_tag_name(raw_name)
        if not name:
            raise ValueError(f"Tag name is blank after normalization: {raw_name!r}")
        for attempt in range(1, self.max_attempts + 1):
            created = self.repo.insert_tag_if_absent(name)
            if created:
                return created.id
            existing = self.repo.get_tag_by_name(name)
            if existing:
                return existing.id
            logger.debug("Tag %r vanished between insert and read (attempt %s)", name, attempt)
        raise PersistenceError(f"Could not resolve tag {name!r} after {self.max_attempts} attempts")

    def reconcile(self, page_id: str, raw_names: Iterable[str]) -> List[str]:
        """Resolve every suggestion and link it to the page. Returns tag ids."""
        tag_ids: List[str] = []
        seen = set()
        for raw in raw_names:
            name = normalize_tag_name(raw)
            if not name or name in seen:
                continue
            seen.add(name)
            tag_id = self.resolve(name)
            self.repo.link_page_tag(page_id, tag_id)
            tag_ids.append(tag_id)
        return tag_ids
