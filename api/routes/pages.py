from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile

from api.dependencies import get_repo, get_submitter
from api.routes.serializers import knowledge_unit_to_dict, page_to_dict
from notebook_digitizer.processing import NotebookRepository, PageStatus, PageSubmitter, SubmissionError

router = APIRouter(prefix="/api/pages", tags=["pages"])


UPLOAD_CHUNK_BYTES = 1024 * 1024


async def _read_limited(file: UploadFile, max_bytes: int) -> bytes:
    """Read an upload in chunks, stopping as soon as it passes `max_bytes`."""
    chunks = []
    size = 0
    while True:
        chunk = await file.read(UPLOAD_CHUNK_BYTES)
        if not chunk:
            break
        size += len(chunk)
        if size > max_bytes:
            raise HTTPException(status_code=413, detail=f"Uploaded file exceeds the {max_bytes} byte limit")
        chunks.append(chunk)
    return b"".join(chunks)


@router.post("/upload", status_code=201)
async def upload_page(
    file: Optional[UploadFile] = File(None),
    submitter: PageSubmitter = Depends(get_submitter),
):
    payload = await _read_limited(file, submitter.max_upload_bytes) if file is not None else None
    try:
        page = submitter.submit(
            payload,
            filename=file.filename if file is not None else None,
            content_type=file.content_type if file is not None else None,
        )
    except SubmissionError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc))
    return {
        "id": page.id,
        "status": PageStatus.PROCESSING,
        "imageUrl": page.image_url,
        "message": "Page uploaded and queued for processing",
    }


@router.get("")
def list_pages(
    status: Optional[PageStatus] = None,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    repo: NotebookRepository = Depends(get_repo),
):
    pages = repo.list_pages(status=status, limit=limit, offset=offset)
    return {
        "pages": [page_to_dict(p, repo.list_tags_for_page(p.id)) for p in pages],
        "total": repo.count_pages(status=status),
        "limit": limit,
        "offset": offset,
    }


@router.get("/{page_id}")
def get_page(page_id: str, repo: NotebookRepository = Depends(get_repo)):
    detail = repo.get_page_detail(page_id)
    if not detail:
        raise HTTPException(status_code=404, detail="Page not found")
    body = page_to_dict(detail.page, detail.tags)
    body["knowledgeUnits"] = [knowledge_unit_to_dict(u) for u in detail.knowledge_units]
    return body


@router.get("/{page_id}/status")
def get_page_status(page_id: str, repo: NotebookRepository = Depends(get_repo)):
    page = repo.get_page(page_id)
    if not page:
        raise HTTPException(status_code=404, detail="Page not found")
    return {
        "id": page.id,
        "status": page.status,
        "errorMessage": page.error_message,
        "updatedAt": page.updated_at,
    }


@router.delete("/{page_id}")
def delete_page(page_id: str, submitter: PageSubmitter = Depends(get_submitter)):
    if not submitter.delete(page_id):
        raise HTTPException(status_code=404, detail="Page not found")
    return {"message": "Page deleted", "id": page_id}
