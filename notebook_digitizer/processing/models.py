from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class PageStatus(str, Enum):
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class KnowledgeUnitType(str, Enum):
    TASK = "task"
    IDEA = "idea"
    NOTE = "note"
    QUESTION = "question"
    ACTION_ITEM = "action_item"


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.utcnow()


@dataclass
class PageRecord:
    id: str
    image_url: str
    image_ref: str
    status: PageStatus = PageStatus.UPLOADING
    raw_ocr_text: Optional[str] = None
    clean_text: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    # Processing ledger: lets a redelivered job tell which steps already ran.
    processing_attempts: int = 0
    suggested_tags: List[str] = field(default_factory=list)
    tags_reconciled_at: Optional[datetime] = None
    tag_error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class KnowledgeUnitRecord:
    id: str
    page_id: str
    type: KnowledgeUnitType
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TagRecord:
    id: str
    name: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class PageTagRecord:
    page_id: str
    tag_id: str


@dataclass(frozen=True)
class ProcessingJob:
    """
    Queue payload. Everything else about the page lives in the repository, so
    a job can be replayed any number of times.
    """

    page_id: str
    image_ref: str


@dataclass
class PageDetail:
    page: PageRecord
    knowledge_units: List[KnowledgeUnitRecord] = field(default_factory=list)
    tags: List[TagRecord] = field(default_factory=list)
