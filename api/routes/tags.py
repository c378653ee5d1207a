from __future__ import annotations

from fastapi import APIRouter, Depends

from api.dependencies import get_repo
from api.routes.serializers import tag_to_dict
from notebook_digitizer.processing import NotebookRepository

router = APIRouter(prefix="/api/tags", tags=["tags"])


@router.get("")
def list_tags(repo: NotebookRepository = Depends(get_repo)):
    return {"tags": [tag_to_dict(t) for t in repo.list_tags()]}
