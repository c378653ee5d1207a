from __future__ import annotations

from typing import List

from notebook_digitizer.processing import KnowledgeUnitRecord, PageRecord, TagRecord


def tag_to_dict(tag: TagRecord) -> dict:
    return {"id": tag.id, "name": tag.name, "createdAt": tag.created_at}


def knowledge_unit_to_dict(unit: KnowledgeUnitRecord) -> dict:
    return {
        "id": unit.id,
        "pageId": unit.page_id,
        "type": unit.type,
        "content": unit.content,
        "metadata": unit.metadata,
        "createdAt": unit.created_at,
    }


def page_to_dict(page: PageRecord, tags: List[TagRecord]) -> dict:
    return {
        "id": page.id,
        "imageUrl": page.image_url,
        "rawOcrText": page.raw_ocr_text,
        "cleanText": page.clean_text,
        "status": page.status,
        "errorMessage": page.error_message,
        "tagError": page.tag_error,
        "metadata": page.metadata,
        "createdAt": page.created_at,
        "updatedAt": page.updated_at,
        "tags": [tag_to_dict(t) for t in tags],
    }
