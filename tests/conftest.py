import threading

import pytest

from notebook_digitizer.processing import (
    ExtractionEngine,
    ExtractionResult,
    InMemoryJobQueue,
    InMemoryNotebookRepository,
    KnowledgeUnitDraft,
    KnowledgeUnitType,
    LocalImageStorage,
    PageProcessor,
    PageSubmitter,
    RetryPolicy,
    SqlAlchemyNotebookRepository,
    StoragePaths,
)


class ScriptedExtractionEngine(ExtractionEngine):
    """
    Returns (or raises) the scripted outcomes in order, repeating the last
    one once the script runs out.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []
        self._lock = threading.Lock()

    def extract(self, image_bytes, mime_type):
        with self._lock:
            self.calls.append((image_bytes, mime_type))
            outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome()
        return outcome


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


def make_result(units=(), tags=(), raw="raw text", clean="clean text"):
    return ExtractionResult(
        raw_ocr_text=raw,
        clean_text=clean,
        knowledge_units=[KnowledgeUnitDraft(type=KnowledgeUnitType(t), content=c) for t, c in units],
        suggested_tags=list(tags),
    )


@pytest.fixture
def storage(tmp_path):
    return LocalImageStorage(StoragePaths(tmp_path / "uploads"))


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        return InMemoryNotebookRepository()
    return SqlAlchemyNotebookRepository(f"sqlite+pysqlite:///{tmp_path / 'notebook.db'}")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(clock):
    return InMemoryJobQueue(policy=RetryPolicy(max_attempts=3, base_delay=30), clock=clock, sleep=clock.sleep)


@pytest.fixture
def submitter(repo, storage, queue):
    return PageSubmitter(repository=repo, storage=storage, queue=queue, max_upload_bytes=1024)


@pytest.fixture
def submit_page(submitter, queue):
    """Submit a page image and return (page, job) for the queued job."""

    def _submit(data=b"\x89PNG fake image", filename="page.png"):
        page = submitter.submit(data, filename=filename, content_type="image/png")
        return page, queue.pending[f"page-{page.id}"].job

    return _submit


@pytest.fixture
def make_processor(repo, storage):
    def _make(engine, reconciler=None):
        return PageProcessor(repository=repo, storage=storage, engine=engine, reconciler=reconciler)

    return _make
