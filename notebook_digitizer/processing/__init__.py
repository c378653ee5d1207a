"""
Page-processing subsystem exports.
"""

from .errors import (
    CapabilityError,
    ExhaustedRetryError,
    InvalidTransitionError,
    MalformedExtractionError,
    NotebookError,
    PersistenceError,
    SubmissionError,
)
from .extraction import (
    ExtractionEngine,
    ExtractionResult,
    GeminiExtractionEngine,
    KnowledgeUnitDraft,
    parse_extraction,
    validate_extraction,
)
from .job_queue import InMemoryJobQueue, JobQueue, RetryPolicy, RQJobQueue, run_page_job
from .models import (
    KnowledgeUnitRecord,
    KnowledgeUnitType,
    PageDetail,
    PageRecord,
    PageStatus,
    PageTagRecord,
    ProcessingJob,
    TagRecord,
)
from .processor import PageProcessor
from .repository import InMemoryNotebookRepository, NotebookRepository, SqlAlchemyNotebookRepository
from .state_machine import can_transition, ensure_transition
from .storage import LocalImageStorage, StoragePaths
from .submission import PageSubmitter
from .tags import TagReconciler, normalize_tag_name

__all__ = [
    "CapabilityError",
    "ExhaustedRetryError",
    "ExtractionEngine",
    "ExtractionResult",
    "GeminiExtractionEngine",
    "InMemoryJobQueue",
    "InMemoryNotebookRepository",
    "InvalidTransitionError",
    "JobQueue",
    "KnowledgeUnitDraft",
    "KnowledgeUnitRecord",
    "KnowledgeUnitType",
    "LocalImageStorage",
    "MalformedExtractionError",
    "NotebookError",
    "NotebookRepository",
    "PageDetail",
    "PageProcessor",
    "PageRecord",
    "PageStatus",
    "PageSubmitter",
    "PageTagRecord",
    "PersistenceError",
    "ProcessingJob",
    "RQJobQueue",
    "RetryPolicy",
    "SqlAlchemyNotebookRepository",
    "StoragePaths",
    "SubmissionError",
    "TagRecord",
    "TagReconciler",
    "can_transition",
    "ensure_transition",
    "normalize_tag_name",
    "parse_extraction",
    "run_page_job",
    "validate_extraction",
]
