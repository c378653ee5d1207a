from __future__ import annotations

import logging
from typing import List, Optional

from .errors import CapabilityError, PersistenceError, describe_error
from .extraction import ExtractionEngine, ExtractionResult, parse_extraction
from .models import KnowledgeUnitRecord, PageStatus, ProcessingJob, new_id
from .repository import NotebookRepository
from .storage import LocalImageStorage, guess_mime_type
from .tags import TagReconciler

logger = logging.getLogger(__name__)


class PageProcessor:
    """
    Drives a processing job through extraction -> text and knowledge units
    -> tag reconciliation.

    The processor is stateless: every step is a compare-and-set or an
    insert-or-ignore against the repository, and the page row records which
    steps already ran. A redelivered job (or two processors racing on the
    same page) therefore resumes where the last durable step stopped instead
    of duplicating work. Errors propagate so the queue can retry.
    """

    def __init__(
        self,
        repository: NotebookRepository,
        storage: LocalImageStorage,
        engine: ExtractionEngine,
        reconciler: Optional[TagReconciler] = None,
    ):
        self.repo = repository
        self.storage = storage
        self.engine = engine
        self.reconciler = reconciler or TagReconciler(repository)

    def __call__(self, job: ProcessingJob) -> None:
        self.process(job)

    def process(self, job: ProcessingJob) -> None:
        page = self.repo.get_page(job.page_id)
        if not page:
            logger.warning("Page %s no longer exists; dropping job", job.page_id)
            return
        if page.status == PageStatus.COMPLETED:
            self._resume_completed(page.id)
            return

        started = self.repo.begin_processing(page.id)
        if not started:
            # Deleted or completed by another attempt between the read and the update.
            self._resume_completed(page.id)
            return
        logger.info("Processing page %s (%s), attempt %s", page.id, job.image_ref, started.processing_attempts)

        result = self._extract(job)
        units = self._map_units(page.id, result)

        try:
            applied = self.repo.complete_page(
                page.id,
                raw_ocr_text=result.raw_ocr_text,
                clean_text=result.clean_text,
                suggested_tags=result.suggested_tags,
                knowledge_units=units,
            )
        except Exception as exc:  # noqa: BLE001
            error = PersistenceError(f"Failed to store extraction result: {describe_error(exc)}")
            self._mark_failed(page.id, error)
            raise error from exc

        if not applied:
            current = self.repo.get_page(page.id)
            if current and current.status != PageStatus.COMPLETED:
                raise PersistenceError(
                    f"Page {page.id} moved to {current.status.value} while it was being processed"
                )
            self._resume_completed(page.id)
            return

        logger.info(
            "Page %s processed: %s units, %s tags",
            page.id,
            len(units),
            len(result.suggested_tags),
        )
        self._reconcile_tags(page.id, result.suggested_tags)

    def _extract(self, job: ProcessingJob) -> ExtractionResult:
        try:
            image_bytes = self.storage.get(job.image_ref)
            result = self.engine.extract(image_bytes, guess_mime_type(job.image_ref))
            if not isinstance(result, ExtractionResult):
                result = parse_extraction(result)
        except CapabilityError as exc:
            self._mark_failed(job.page_id, exc)
            raise
        except Exception as exc:  # noqa: BLE001
            error = CapabilityError(describe_error(exc))
            self._mark_failed(job.page_id, error)
            raise error from exc
        return result

    def _map_units(self, page_id: str, result: ExtractionResult) -> List[KnowledgeUnitRecord]:
        return [
            KnowledgeUnitRecord(
                id=new_id(),
                page_id=page_id,
                type=draft.type,
                content=draft.content,
                metadata=dict(draft.metadata or {}),
            )
            for draft in result.knowledge_units
        ]

    def _resume_completed(self, page_id: str) -> None:
        page = self.repo.get_page(page_id)
        if not page:
            logger.warning("Page %s was deleted while processing; nothing left to do", page_id)
            return
        if page.status != PageStatus.COMPLETED:
            raise PersistenceError(f"Page {page_id} cannot be processed from status {page.status.value}")
        if page.tags_reconciled_at:
            logger.info("Page %s already completed; skipping replayed job", page_id)
            return
        logger.info("Page %s completed earlier; resuming tag reconciliation", page_id)
        self._reconcile_tags(page_id, page.suggested_tags)

    def _reconcile_tags(self, page_id: str, suggested_tags: List[str]) -> None:
        try:
            self.reconciler.reconcile(page_id, suggested_tags)
            self.repo.mark_tags_reconciled(page_id)
        except Exception as exc:  # noqa: BLE001
            error = exc if isinstance(exc, PersistenceError) else PersistenceError(
                f"Tag reconciliation failed: {describe_error(exc)}"
            )
            # The page stays completed; tag_error marks the pending reconciliation.
            try:
                self.repo.record_tag_failure(page_id, describe_error(error))
            except Exception:  # noqa: BLE001
                logger.exception("Could not record tag failure on page %s", page_id)
            logger.error("Tag reconciliation for page %s failed: %s", page_id, error)
            if error is exc:
                raise
            raise error from exc

    def _mark_failed(self, page_id: str, error: Exception) -> None:
        message = describe_error(error)
        logger.error("Page %s failed: %s", page_id, message)
        try:
            if not self.repo.transition_page(page_id, PageStatus.FAILED, error_message=message):
                logger.warning("Page %s was not processing; failure not recorded on it", page_id)
        except Exception:  # noqa: BLE001
            logger.exception("Could not mark page %s as failed", page_id)
