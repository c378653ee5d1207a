from __future__ import annotations

import logging
from typing import Iterable, Optional

from .errors import SubmissionError, describe_error
from .job_queue import JobQueue
from .models import PageRecord, PageStatus, new_id
from .repository import NotebookRepository
from .storage import MIME_TYPES, LocalImageStorage, extension_of

logger = logging.getLogger(__name__)

DEFAULT_MAX_UPLOAD_BYTES = 20 * 1024 * 1024


class PageSubmitter:
    """
    Submission path: store the image, create the page, move it to processing
    and enqueue its job, in that order. A failure at any step is a submission
    failure: whatever was already written is removed again, so a page never
    sits in `uploading` without a job.
    """

    def __init__(
        self,
        repository: NotebookRepository,
        storage: LocalImageStorage,
        queue: JobQueue,
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
        allowed_extensions: Optional[Iterable[str]] = None,
    ):
        self.repo = repository
        self.storage = storage
        self.queue = queue
        self.max_upload_bytes = max_upload_bytes
        self.allowed_extensions = frozenset(allowed_extensions or MIME_TYPES)

    def _extension(self, filename: Optional[str], content_type: Optional[str]) -> str:
        ext = extension_of(filename or "")
        if ext in self.allowed_extensions:
            return ext
        for candidate, mime in MIME_TYPES.items():
            if content_type == mime and candidate in self.allowed_extensions:
                return candidate
        raise SubmissionError(
            f"Unsupported image type: {content_type or 'unknown'} ({filename or 'no filename'})",
            status_code=415,
        )

    def validate(self, data: Optional[bytes], filename: Optional[str], content_type: Optional[str]) -> str:
        if not data:
            raise SubmissionError("No file uploaded" if data is None else "Uploaded file is empty")
        if len(data) > self.max_upload_bytes:
            raise SubmissionError(
                f"Uploaded file is {len(data)} bytes; the limit is {self.max_upload_bytes}",
                status_code=413,
            )
        return self._extension(filename, content_type)

    def submit(self, data: Optional[bytes], filename: Optional[str] = None, content_type: Optional[str] = None) -> PageRecord:
        extension = self.validate(data, filename, content_type)

        try:
            image_ref = self.storage.put(data, extension)
        except Exception as exc:  # noqa: BLE001
            raise SubmissionError(f"Could not store upload: {describe_error(exc)}", status_code=500) from exc

        page = PageRecord(id=new_id(), image_url=self.storage.url_for(image_ref), image_ref=image_ref)
        created = False
        try:
            self.repo.create_page(page)
            created = True
            if not self.repo.transition_page(page.id, PageStatus.PROCESSING):
                raise SubmissionError(f"Page {page.id} could not be moved to processing", status_code=500)
            self.queue.enqueue(page.id, image_ref)
        except Exception as exc:  # noqa: BLE001
            logger.error("Submission of %s failed, rolling back: %s", image_ref, exc)
            self._rollback(page.id if created else None, image_ref)
            if isinstance(exc, SubmissionError):
                raise
            raise SubmissionError(f"Could not queue page for processing: {describe_error(exc)}", status_code=500) from exc

        logger.info("Page %s submitted (%s, %s bytes)", page.id, image_ref, len(data))
        stored = self.repo.get_page(page.id)
        return stored if stored else page

    def delete(self, page_id: str) -> bool:
        """Delete a page, its knowledge units and tag links, then its image."""
        page = self.repo.get_page(page_id)
        if not page:
            return False
        deleted = self.repo.delete_page(page_id)
        if deleted:
            try:
                self.storage.delete(page.image_ref)
            except OSError as exc:
                logger.warning("Page %s deleted but its image %s was not: %s", page_id, page.image_ref, exc)
        return deleted

    def _rollback(self, page_id: Optional[str], image_ref: str) -> None:
        try:
            if page_id:
                self.repo.delete_page(page_id)
            self.storage.delete(image_ref)
        except Exception:  # noqa: BLE001
            logger.exception("Rollback of submission %s incomplete", image_ref)
