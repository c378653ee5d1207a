from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_repo
from api.routes.serializers import knowledge_unit_to_dict
from notebook_digitizer.processing import KnowledgeUnitType, NotebookRepository

router = APIRouter(prefix="/api/knowledge-units", tags=["knowledge-units"])


@router.get("")
def list_knowledge_units(
    type: Optional[KnowledgeUnitType] = None,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    repo: NotebookRepository = Depends(get_repo),
):
    units = repo.list_knowledge_units(unit_type=type, limit=limit, offset=offset)
    return {
        "knowledgeUnits": [knowledge_unit_to_dict(u) for u in units],
        "total": repo.count_knowledge_units(unit_type=type),
        "limit": limit,
        "offset": offset,
    }
