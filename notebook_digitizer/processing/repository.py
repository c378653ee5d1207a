from __future__ import annotations

import json
import threading
from copy import deepcopy
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    event,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .models import (
    KnowledgeUnitRecord,
    KnowledgeUnitType,
    PageDetail,
    PageRecord,
    PageStatus,
    PageTagRecord,
    TagRecord,
    new_id,
    utcnow,
)
from .state_machine import allowed_sources

Base = declarative_base()

# Fields a status transition may write alongside the new status.
TRANSITION_FIELDS = frozenset({"raw_ocr_text", "clean_text", "error_message"})


class PageModel(Base):
    __tablename__ = "pages"
    id = Column(String(36), primary_key=True)
    image_url = Column(Text, nullable=False)
    image_ref = Column(String, nullable=False)
    raw_ocr_text = Column(Text)
    clean_text = Column(Text)
    status = Column(Enum(PageStatus), nullable=False, index=True)
    error_message = Column(Text)
    metadata_json = Column("metadata", Text)
    processing_attempts = Column(Integer, nullable=False, default=0)
    suggested_tags_json = Column("suggested_tags", Text)
    tags_reconciled_at = Column(DateTime)
    tag_error = Column(Text)
    created_at = Column(DateTime, nullable=False, index=True)
    updated_at = Column(DateTime, nullable=False)


class KnowledgeUnitModel(Base):
    __tablename__ = "knowledge_units"
    id = Column(String(36), primary_key=True)
    page_id = Column(String(36), ForeignKey("pages.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(Enum(KnowledgeUnitType), nullable=False, index=True)
    content = Column(Text, nullable=False)
    metadata_json = Column("metadata", Text)
    created_at = Column(DateTime, nullable=False, index=True)


class TagModel(Base):
    __tablename__ = "tags"
    id = Column(String(36), primary_key=True)
    name = Column(String(100), nullable=False, unique=True)
    created_at = Column(DateTime, nullable=False)


class PageTagModel(Base):
    __tablename__ = "page_tags"
    page_id = Column(String(36), ForeignKey("pages.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(String(36), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)


class NotebookRepository:
    """
    Persistence boundary for pages, knowledge units and tags. Status changes
    are compare-and-set against the page state machine, and tag/page-tag
    creation is insert-or-ignore, so callers never need a lock.
    """

    # Pages
    def create_page(self, page: PageRecord) -> None:
        raise NotImplementedError

    def get_page(self, page_id: str) -> Optional[PageRecord]:
        raise NotImplementedError

    def list_pages(self, status: Optional[PageStatus] = None, limit: int = 50, offset: int = 0) -> List[PageRecord]:
        raise NotImplementedError

    def count_pages(self, status: Optional[PageStatus] = None) -> int:
        raise NotImplementedError

    def transition_page(self, page_id: str, target: PageStatus, **values) -> bool:
        """
        Move a page to `target` if its current status allows it, writing
        `values` in the same statement. Returns False when the page is gone or
        in a state that cannot reach `target`.
        """
        raise NotImplementedError

    def begin_processing(self, page_id: str) -> Optional[PageRecord]:
        """Transition to processing and bump `processing_attempts`."""
        raise NotImplementedError

    def complete_page(
        self,
        page_id: str,
        raw_ocr_text: str,
        clean_text: str,
        suggested_tags: List[str],
        knowledge_units: Iterable[KnowledgeUnitRecord],
    ) -> bool:
        """
        Atomically write the text fields, mark the page completed and insert
        its knowledge units. Nothing is written unless the page is processing.
        """
        raise NotImplementedError

    def record_tag_failure(self, page_id: str, message: str) -> None:
        """Note why tag reconciliation of a completed page is still pending."""
        raise NotImplementedError

    def mark_tags_reconciled(self, page_id: str) -> bool:
        raise NotImplementedError

    def delete_page(self, page_id: str) -> bool:
        """Delete a page together with its knowledge units and tag links."""
        raise NotImplementedError

    # Knowledge units
    def list_knowledge_units(
        self,
        page_id: Optional[str] = None,
        unit_type: Optional[KnowledgeUnitType] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[KnowledgeUnitRecord]:
        raise NotImplementedError

    def count_knowledge_units(self, unit_type: Optional[KnowledgeUnitType] = None) -> int:
        raise NotImplementedError

    # Tags
    def insert_tag_if_absent(self, name: str) -> Optional[TagRecord]:
        """Create a tag; return None instead of failing when the name exists."""
        raise NotImplementedError

    def get_tag_by_name(self, name: str) -> Optional[TagRecord]:
        raise NotImplementedError

    def list_tags(self) -> List[TagRecord]:
        raise NotImplementedError

    def link_page_tag(self, page_id: str, tag_id: str) -> bool:
        """
        Associate a tag with a page. Returns False when the link already
        exists or the page no longer exists.
        """
        raise NotImplementedError

    def list_tags_for_page(self, page_id: str) -> List[TagRecord]:
        raise NotImplementedError

    def get_page_detail(self, page_id: str) -> Optional[PageDetail]:
        page = self.get_page(page_id)
        if not page:
            return None
        return PageDetail(
            page=page,
            knowledge_units=self.list_knowledge_units(page_id=page_id),
            tags=self.list_tags_for_page(page_id),
        )


class InMemoryNotebookRepository(NotebookRepository):
    """
    In-memory store for local runs and tests. It mirrors the DB shape, keeps
    copies of dataclasses to avoid cross-mutation between calls and holds a
    lock so that each method behaves like a single transaction.
    """

    def __init__(self):
        self.pages: Dict[str, PageRecord] = {}
        self.knowledge_units: Dict[str, KnowledgeUnitRecord] = {}
        self.tags: Dict[str, TagRecord] = {}
        self.page_tags: Dict[Tuple[str, str], PageTagRecord] = {}
        self._lock = threading.RLock()

    def _clone(self, obj):
        return deepcopy(obj)

    def create_page(self, page: PageRecord) -> None:
        with self._lock:
            self.pages[page.id] = self._clone(page)

    def get_page(self, page_id: str) -> Optional[PageRecord]:
        with self._lock:
            page = self.pages.get(page_id)
            return self._clone(page) if page else None

    def _filtered_pages(self, status: Optional[PageStatus]) -> List[PageRecord]:
        pages = [p for p in self.pages.values() if status is None or p.status == status]
        return sorted(pages, key=lambda p: p.created_at, reverse=True)

    def list_pages(self, status: Optional[PageStatus] = None, limit: int = 50, offset: int = 0) -> List[PageRecord]:
        with self._lock:
            return [self._clone(p) for p in self._filtered_pages(status)[offset : offset + limit]]

    def count_pages(self, status: Optional[PageStatus] = None) -> int:
        with self._lock:
            return len(self._filtered_pages(status))

    def transition_page(self, page_id: str, target: PageStatus, **values) -> bool:
        unknown = set(values) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Cannot write {sorted(unknown)} during a status transition")
        with self._lock:
            page = self.pages.get(page_id)
            if not page or page.status not in allowed_sources(target):
                return False
            page.status = target
            for key, value in values.items():
                setattr(page, key, value)
            page.updated_at = utcnow()
            return True

    def begin_processing(self, page_id: str) -> Optional[PageRecord]:
        with self._lock:
            if not self.transition_page(page_id, PageStatus.PROCESSING):
                return None
            page = self.pages[page_id]
            page.processing_attempts += 1
            return self._clone(page)

    def complete_page(
        self,
        page_id: str,
        raw_ocr_text: str,
        clean_text: str,
        suggested_tags: List[str],
        knowledge_units: Iterable[KnowledgeUnitRecord],
    ) -> bool:
        units = list(knowledge_units)
        with self._lock:
            page = self.pages.get(page_id)
            if not page or page.status != PageStatus.PROCESSING:
                return False
            page.raw_ocr_text = raw_ocr_text
            page.clean_text = clean_text
            page.suggested_tags = list(suggested_tags)
            page.error_message = None
            page.status = PageStatus.COMPLETED
            page.updated_at = utcnow()
            for unit in units:
                self.knowledge_units[unit.id] = self._clone(unit)
            return True

    def record_tag_failure(self, page_id: str, message: str) -> None:
        with self._lock:
            page = self.pages.get(page_id)
            if not page:
                return
            page.tag_error = message
            page.updated_at = utcnow()

    def mark_tags_reconciled(self, page_id: str) -> bool:
        with self._lock:
            page = self.pages.get(page_id)
            if not page or page.status != PageStatus.COMPLETED:
                return False
            page.tags_reconciled_at = utcnow()
            page.tag_error = None
            page.updated_at = page.tags_reconciled_at
            return True

    def delete_page(self, page_id: str) -> bool:
        with self._lock:
            if page_id not in self.pages:
                return False
            del self.pages[page_id]
            for unit_id in [u.id for u in self.knowledge_units.values() if u.page_id == page_id]:
                del self.knowledge_units[unit_id]
            for key in [k for k in self.page_tags if k[0] == page_id]:
                del self.page_tags[key]
            return True

    def list_knowledge_units(
        self,
        page_id: Optional[str] = None,
        unit_type: Optional[KnowledgeUnitType] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[KnowledgeUnitRecord]:
        with self._lock:
            units = [
                u
                for u in self.knowledge_units.values()
                if (page_id is None or u.page_id == page_id) and (unit_type is None or u.type == unit_type)
            ]
            units.sort(key=lambda u: u.created_at, reverse=True)
            end = None if limit is None else offset + limit
            return [self._clone(u) for u in units[offset:end]]

    def count_knowledge_units(self, unit_type: Optional[KnowledgeUnitType] = None) -> int:
        with self._lock:
            return sum(1 for u in self.knowledge_units.values() if unit_type is None or u.type == unit_type)

    def insert_tag_if_absent(self, name: str) -> Optional[TagRecord]:
        with self._lock:
            if any(t.name == name for t in self.tags.values()):
                return None
            tag = TagRecord(id=new_id(), name=name)
            self.tags[tag.id] = tag
            return self._clone(tag)

    def get_tag_by_name(self, name: str) -> Optional[TagRecord]:
        with self._lock:
            for tag in self.tags.values():
                if tag.name == name:
                    return self._clone(tag)
            return None

    def list_tags(self) -> List[TagRecord]:
        with self._lock:
            return [self._clone(t) for t in sorted(self.tags.values(), key=lambda t: t.created_at, reverse=True)]

    def link_page_tag(self, page_id: str, tag_id: str) -> bool:
        with self._lock:
            key = (page_id, tag_id)
            if page_id not in self.pages or tag_id not in self.tags or key in self.page_tags:
                return False
            self.page_tags[key] = PageTagRecord(page_id=page_id, tag_id=tag_id)
            return True

    def list_tags_for_page(self, page_id: str) -> List[TagRecord]:
        with self._lock:
            tags = [self.tags[tag_id] for (pid, tag_id) in self.page_tags if pid == page_id]
            return [self._clone(t) for t in sorted(tags, key=lambda t: t.name)]


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class SqlAlchemyNotebookRepository(NotebookRepository):
    """
    SQL-backed repository using SQLAlchemy. Works with SQLite/Postgres URLs.
    """

    def __init__(self, database_url: str):
        connect_args = {}
        if database_url.startswith("sqlite"):
            # Worker threads share the pool; writers wait on SQLite's lock instead of failing.
            connect_args = {"check_same_thread": False, "timeout": 30}
        self.engine = create_engine(database_url, future=True, connect_args=connect_args)
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)

    def _session(self) -> Session:
        return self.SessionLocal()

    # region mapping
    def _to_page(self, model: PageModel) -> PageRecord:
        return PageRecord(
            id=model.id,
            image_url=model.image_url,
            image_ref=model.image_ref,
            status=model.status,
            raw_ocr_text=model.raw_ocr_text,
            clean_text=model.clean_text,
            error_message=model.error_message,
            metadata=json.loads(model.metadata_json or "{}"),
            processing_attempts=int(model.processing_attempts or 0),
            suggested_tags=json.loads(model.suggested_tags_json or "[]"),
            tags_reconciled_at=model.tags_reconciled_at,
            tag_error=model.tag_error,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_unit(self, model: KnowledgeUnitModel) -> KnowledgeUnitRecord:
        return KnowledgeUnitRecord(
            id=model.id,
            page_id=model.page_id,
            type=model.type,
            content=model.content,
            metadata=json.loads(model.metadata_json or "{}"),
            created_at=model.created_at,
        )

    def _to_tag(self, model: TagModel) -> TagRecord:
        return TagRecord(id=model.id, name=model.name, created_at=model.created_at)

    # endregion

    # region Page operations
    def create_page(self, page: PageRecord) -> None:
        with self._session() as session:
            session.add(
                PageModel(
                    id=page.id,
                    image_url=page.image_url,
                    image_ref=page.image_ref,
                    raw_ocr_text=page.raw_ocr_text,
                    clean_text=page.clean_text,
                    status=page.status,
                    error_message=page.error_message,
                    metadata_json=json.dumps(page.metadata or {}),
                    processing_attempts=page.processing_attempts,
                    suggested_tags_json=json.dumps(page.suggested_tags or []),
                    tags_reconciled_at=page.tags_reconciled_at,
                    tag_error=page.tag_error,
                    created_at=page.created_at,
                    updated_at=page.updated_at,
                )
            )
            session.commit()

    def get_page(self, page_id: str) -> Optional[PageRecord]:
        with self._session() as session:
            model = session.get(PageModel, page_id)
            if not model:
                return None
            return self._to_page(model)

    def list_pages(self, status: Optional[PageStatus] = None, limit: int = 50, offset: int = 0) -> List[PageRecord]:
        with self._session() as session:
            stmt = select(PageModel).order_by(PageModel.created_at.desc()).limit(limit).offset(offset)
            if status is not None:
                stmt = stmt.where(PageModel.status == status)
            return [self._to_page(m) for m in session.execute(stmt).scalars().all()]

    def count_pages(self, status: Optional[PageStatus] = None) -> int:
        with self._session() as session:
            stmt = select(func.count()).select_from(PageModel)
            if status is not None:
                stmt = stmt.where(PageModel.status == status)
            return int(session.execute(stmt).scalar_one())

    def transition_page(self, page_id: str, target: PageStatus, **values) -> bool:
        unknown = set(values) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Cannot write {sorted(unknown)} during a status transition")
        with self._session() as session:
            stmt = (
                update(PageModel)
                .where(PageModel.id == page_id, PageModel.status.in_(sorted(allowed_sources(target))))
                .values(status=target, updated_at=utcnow(), **values)
            )
            result = session.execute(stmt)
            session.commit()
            return result.rowcount > 0

    def begin_processing(self, page_id: str) -> Optional[PageRecord]:
        with self._session() as session:
            stmt = (
                update(PageModel)
                .where(PageModel.id == page_id, PageModel.status.in_(sorted(allowed_sources(PageStatus.PROCESSING))))
                .values(
                    status=PageStatus.PROCESSING,
                    processing_attempts=PageModel.processing_attempts + 1,
                    updated_at=utcnow(),
                )
            )
            result = session.execute(stmt)
            if result.rowcount == 0:
                session.rollback()
                return None
            session.commit()
            model = session.get(PageModel, page_id, populate_existing=True)
            return self._to_page(model) if model else None

    def complete_page(
        self,
        page_id: str,
        raw_ocr_text: str,
        clean_text: str,
        suggested_tags: List[str],
        knowledge_units: Iterable[KnowledgeUnitRecord],
    ) -> bool:
        with self._session() as session:
            stmt = (
                update(PageModel)
                .where(PageModel.id == page_id, PageModel.status == PageStatus.PROCESSING)
                .values(
                    raw_ocr_text=raw_ocr_text,
                    clean_text=clean_text,
                    suggested_tags_json=json.dumps(list(suggested_tags)),
                    error_message=None,
                    status=PageStatus.COMPLETED,
                    updated_at=utcnow(),
                )
            )
            result = session.execute(stmt)
            if result.rowcount == 0:
                session.rollback()
                return False
            session.add_all(
                KnowledgeUnitModel(
                    id=unit.id,
                    page_id=page_id,
                    type=unit.type,
                    content=unit.content,
                    metadata_json=json.dumps(unit.metadata or {}),
                    created_at=unit.created_at,
                )
                for unit in knowledge_units
            )
            session.commit()
            return True

    def record_tag_failure(self, page_id: str, message: str) -> None:
        with self._session() as session:
            session.execute(
                update(PageModel).where(PageModel.id == page_id).values(tag_error=message, updated_at=utcnow())
            )
            session.commit()

    def mark_tags_reconciled(self, page_id: str) -> bool:
        now = utcnow()
        with self._session() as session:
            result = session.execute(
                update(PageModel)
                .where(PageModel.id == page_id, PageModel.status == PageStatus.COMPLETED)
                .values(tags_reconciled_at=now, tag_error=None, updated_at=now)
            )
            session.commit()
            return result.rowcount > 0

    def delete_page(self, page_id: str) -> bool:
        with self._session() as session:
            session.execute(delete(PageTagModel).where(PageTagModel.page_id == page_id))
            session.execute(delete(KnowledgeUnitModel).where(KnowledgeUnitModel.page_id == page_id))
            result = session.execute(delete(PageModel).where(PageModel.id == page_id))
            session.commit()
            return result.rowcount > 0

    # endregion

    # region Knowledge units
    def list_knowledge_units(
        self,
        page_id: Optional[str] = None,
        unit_type: Optional[KnowledgeUnitType] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[KnowledgeUnitRecord]:
        with self._session() as session:
            stmt = select(KnowledgeUnitModel).order_by(KnowledgeUnitModel.created_at.desc())
            if page_id is not None:
                stmt = stmt.where(KnowledgeUnitModel.page_id == page_id)
            if unit_type is not None:
                stmt = stmt.where(KnowledgeUnitModel.type == unit_type)
            if limit is not None:
                stmt = stmt.limit(limit)
            if offset:
                stmt = stmt.offset(offset)
            return [self._to_unit(m) for m in session.execute(stmt).scalars().all()]

    def count_knowledge_units(self, unit_type: Optional[KnowledgeUnitType] = None) -> int:
        with self._session() as session:
            stmt = select(func.count()).select_from(KnowledgeUnitModel)
            if unit_type is not None:
                stmt = stmt.where(KnowledgeUnitModel.type == unit_type)
            return int(session.execute(stmt).scalar_one())

    # endregion

    # region Tags
    def insert_tag_if_absent(self, name: str) -> Optional[TagRecord]:
        tag = TagRecord(id=new_id(), name=name)
        with self._session() as session:
            session.add(TagModel(id=tag.id, name=tag.name, created_at=tag.created_at))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return None
        return tag

    def get_tag_by_name(self, name: str) -> Optional[TagRecord]:
        with self._session() as session:
            model = session.execute(select(TagModel).where(TagModel.name == name)).scalar_one_or_none()
            return self._to_tag(model) if model else None

    def list_tags(self) -> List[TagRecord]:
        with self._session() as session:
            models = session.execute(select(TagModel).order_by(TagModel.created_at.desc())).scalars().all()
            return [self._to_tag(m) for m in models]

    def link_page_tag(self, page_id: str, tag_id: str) -> bool:
        with self._session() as session:
            if session.get(PageModel, page_id) is None:
                return False
            if session.get(PageTagModel, (page_id, tag_id)) is not None:
                return False
            session.add(PageTagModel(page_id=page_id, tag_id=tag_id))
            try:
                session.commit()
            except IntegrityError:
                # Linked concurrently, or the page was deleted under us.
                session.rollback()
                return False
            return True

    def list_tags_for_page(self, page_id: str) -> List[TagRecord]:
        with self._session() as session:
            stmt = (
                select(TagModel)
                .join(PageTagModel, PageTagModel.tag_id == TagModel.id)
                .where(PageTagModel.page_id == page_id)
                .order_by(TagModel.name)
            )
            return [self._to_tag(m) for m in session.execute(stmt).scalars().all()]

    # endregion
