"""
Page lifecycle: uploading -> processing -> {completed | failed}.

`failed -> processing` is the one extra edge, taken only by the page
processor when the queue redelivers a job whose previous attempt failed.
`completed` is terminal.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Set

from .errors import InvalidTransitionError
from .models import PageStatus

TRANSITIONS: Dict[PageStatus, FrozenSet[PageStatus]] = {
    PageStatus.UPLOADING: frozenset({PageStatus.PROCESSING}),
    PageStatus.PROCESSING: frozenset({PageStatus.PROCESSING, PageStatus.COMPLETED, PageStatus.FAILED}),
    PageStatus.FAILED: frozenset({PageStatus.PROCESSING}),
    PageStatus.COMPLETED: frozenset(),
}

TERMINAL_STATES = frozenset({PageStatus.COMPLETED, PageStatus.FAILED})


def can_transition(current: PageStatus, target: PageStatus) -> bool:
    return target in TRANSITIONS.get(PageStatus(current), frozenset())


def ensure_transition(current: PageStatus, target: PageStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(PageStatus(current), PageStatus(target))


def allowed_sources(target: PageStatus) -> Set[PageStatus]:
    """States a page may be in for a compare-and-set move to `target`."""
    return {source for source, targets in TRANSITIONS.items() if target in targets}
