import threading

import pytest

from notebook_digitizer.processing import PageRecord, PageStatus, TagReconciler, normalize_tag_name


def _pages(repo, count):
    ids = []
    for i in range(count):
        page = PageRecord(id=f"page-{i}", image_url=f"/uploads/{i}.png", image_ref=f"{i}.png", status=PageStatus.COMPLETED)
        repo.create_page(page)
        ids.append(page.id)
    return ids


@pytest.mark.parametrize(
    "raw, expected",
    [("Work", "work"), (" work ", "work"), ("WORK", "work"), ("Meeting   Notes", "meeting notes"), ("  ", "")],
)
def test_normalize_tag_name(raw, expected):
    assert normalize_tag_name(raw) == expected


def test_normalize_truncates_long_names():
    assert len(normalize_tag_name("x" * 250)) == 100


def test_variants_resolve_to_one_canonical_tag(repo):
    reconciler = TagReconciler(repo)

    ids = {reconciler.resolve(name) for name in ["Work", " work ", "WORK"]}

    assert len(ids) == 1
    assert [t.name for t in repo.list_tags()] == ["work"]


def test_blank_tag_is_rejected(repo):
    with pytest.raises(ValueError):
        TagReconciler(repo).resolve("   ")


def test_reconcile_links_and_dedupes(repo):
    (page_id,) = _pages(repo, 1)
    reconciler = TagReconciler(repo)

    first = reconciler.reconcile(page_id, ["Work", "work", "", "Personal"])
    again = reconciler.reconcile(page_id, ["personal", "WORK"])

    assert len(first) == 2
    assert sorted(again) == sorted(first)
    assert [t.name for t in repo.list_tags_for_page(page_id)] == ["personal", "work"]


def test_concurrent_resolution_creates_one_tag(repo):
    page_ids = _pages(repo, 8)
    reconciler = TagReconciler(repo)
    barrier = threading.Barrier(len(page_ids), timeout=10)
    resolved = []
    errors = []

    def worker(page_id, raw):
        try:
            barrier.wait()
            resolved.extend(reconciler.reconcile(page_id, [raw]))
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    variants = ["Shared", " shared", "SHARED ", "shared"]
    threads = [
        threading.Thread(target=worker, args=(page_id, variants[i % len(variants)]))
        for i, page_id in enumerate(page_ids)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    tags = repo.list_tags()
    assert [t.name for t in tags] == ["shared"]
    assert set(resolved) == {tags[0].id}
    for page_id in page_ids:
        assert [t.id for t in repo.list_tags_for_page(page_id)] == [tags[0].id]


class VanishingTagRepository:
    """Every insert conflicts, yet the row is never there when read back."""

    def __init__(self):
        self.inserts = 0

    def insert_tag_if_absent(self, name):
        self.inserts += 1
        return None

    def get_tag_by_name(self, name):
        return None


def test_resolve_gives_up_after_bounded_attempts():
    from notebook_digitizer.processing import PersistenceError

    repo = VanishingTagRepository()
    with pytest.raises(PersistenceError):
        TagReconciler(repo, max_attempts=3).resolve("ghost")
    assert repo.inserts == 3
