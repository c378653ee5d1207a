import itertools

import pytest

from notebook_digitizer.processing import (
    InvalidTransitionError,
    PageRecord,
    PageStatus,
    can_transition,
    ensure_transition,
)
from notebook_digitizer.processing.state_machine import allowed_sources

LEGAL = {
    (PageStatus.UPLOADING, PageStatus.PROCESSING),
    (PageStatus.PROCESSING, PageStatus.PROCESSING),
    (PageStatus.PROCESSING, PageStatus.COMPLETED),
    (PageStatus.PROCESSING, PageStatus.FAILED),
    (PageStatus.FAILED, PageStatus.PROCESSING),
}


def test_only_lifecycle_edges_are_legal():
    for current, target in itertools.product(PageStatus, repeat=2):
        assert can_transition(current, target) == ((current, target) in LEGAL), (current, target)


def test_completed_is_terminal():
    for target in PageStatus:
        with pytest.raises(InvalidTransitionError):
            ensure_transition(PageStatus.COMPLETED, target)


def test_allowed_sources():
    assert allowed_sources(PageStatus.COMPLETED) == {PageStatus.PROCESSING}
    assert allowed_sources(PageStatus.UPLOADING) == set()


def _page(repo, status=PageStatus.UPLOADING):
    page = PageRecord(id=f"page-{status.value}", image_url="/uploads/a.png", image_ref="a.png", status=status)
    repo.create_page(page)
    return page


def test_repository_refuses_illegal_transitions(repo):
    page = _page(repo)

    assert not repo.transition_page(page.id, PageStatus.FAILED, error_message="nope")
    assert repo.get_page(page.id).status == PageStatus.UPLOADING

    assert repo.transition_page(page.id, PageStatus.PROCESSING)
    assert repo.complete_page(page.id, "raw", "clean", [], [])
    assert not repo.transition_page(page.id, PageStatus.FAILED, error_message="late failure")
    assert repo.begin_processing(page.id) is None

    stored = repo.get_page(page.id)
    assert stored.status == PageStatus.COMPLETED
    assert stored.error_message is None


def test_complete_requires_processing(repo):
    page = _page(repo)

    assert not repo.complete_page(page.id, "raw", "clean", ["x"], [])
    stored = repo.get_page(page.id)
    assert stored.status == PageStatus.UPLOADING
    assert stored.raw_ocr_text is None


def test_failed_page_carries_message(repo):
    page = _page(repo, PageStatus.PROCESSING)

    assert repo.transition_page(page.id, PageStatus.FAILED, error_message="boom")

    stored = repo.get_page(page.id)
    assert stored.status == PageStatus.FAILED
    assert stored.error_message == "boom"


def test_transition_rejects_unrelated_fields(repo):
    page = _page(repo)
    with pytest.raises(ValueError):
        repo.transition_page(page.id, PageStatus.PROCESSING, image_url="/elsewhere.png")


def test_transition_on_missing_page_is_a_noop(repo):
    assert not repo.transition_page("missing", PageStatus.PROCESSING)
    assert repo.begin_processing("missing") is None
