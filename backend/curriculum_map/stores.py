from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional, Protocol, Sequence

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import DisconnectionError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from .app_logger import get_logger
from .db import ClassMaster, MaterialCategory, MaterialItem, MaterialItemClass, MaterialType
from .errors import InvariantViolation, NotFoundError, RetryableError, ValidationError
from .schemas import CategoryRecord, ItemRecord, MappingPage, MappingRow, MappingTarget, TypeRecord

log = get_logger(__name__)


class TaxonomyStore(Protocol):
    def list_categories(self) -> list[CategoryRecord]: ...

    def list_types(self, category_id: Optional[str] = None) -> list[TypeRecord]: ...

    def list_items(self, type_id: Optional[str] = None) -> list[ItemRecord]: ...

    def get_category(self, category_id: str) -> Optional[CategoryRecord]: ...

    def get_type(self, type_id: str) -> Optional[TypeRecord]: ...

    def get_item(self, item_id: str) -> Optional[ItemRecord]: ...


class MappingStore(Protocol):
    """Persistence for (item, class, semester) rows.

    ``list_mappings`` is a cursor: callers keep passing ``next_page_token`` back until it is ``None``.
    ``replace_mappings`` and ``add_mappings`` must apply the whole batch in one transaction.
    """

    def list_mappings(self, item_ids: Sequence[str], page_token: Optional[str] = None) -> MappingPage: ...

    def replace_mappings(self, item_ids: Sequence[str], targets: Sequence[MappingTarget]) -> None: ...

    def add_mappings(self, item_ids: Sequence[str], targets: Sequence[MappingTarget]) -> None: ...

    def delete_mapping(self, item_id: str, class_id: str, semester: Optional[int] = None, all_semesters: bool = False) -> int: ...


@contextmanager
def translate_store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except (OperationalError, DisconnectionError, PoolTimeoutError) as exc:
        log.warning("%s failed with a transient store error: %s", action, exc)
        raise RetryableError(f"{action} failed: {exc}") from exc
    except IntegrityError as exc:
        raise InvariantViolation(f"{action} rejected by store: {exc}") from exc


def mapping_row(row: MaterialItemClass) -> MappingRow:
    try:
        return MappingRow(item_id=row.material_item_id, class_id=row.class_master_id, semester=row.semester)
    except PydanticValidationError as exc:
        raise InvariantViolation(f"mapping row {row.id} holds an invalid semester: {row.semester!r}") from exc


def category_record(row: MaterialCategory) -> CategoryRecord:
    return CategoryRecord(id=row.id, name=row.name, display_order=row.display_order or 0)


def type_record(row: MaterialType) -> TypeRecord:
    return TypeRecord(id=row.id, category_id=row.category_id, name=row.name, display_order=row.display_order or 0)


def item_record(row: MaterialItem) -> ItemRecord:
    return ItemRecord(
        id=row.id,
        type_id=row.material_type_id,
        name=row.name,
        display_order=row.display_order or 0,
        content=row.content,
    )


class SqlTaxonomyStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def list_categories(self) -> list[CategoryRecord]:
        with translate_store_errors("list_categories"), self._session_factory() as db:
            rows = db.scalars(select(MaterialCategory).order_by(MaterialCategory.display_order, MaterialCategory.name)).all()
            return [category_record(r) for r in rows]

    def list_types(self, category_id: Optional[str] = None) -> list[TypeRecord]:
        stmt = select(MaterialType).order_by(MaterialType.display_order, MaterialType.name)
        if category_id is not None:
            stmt = stmt.where(MaterialType.category_id == category_id)
        with translate_store_errors("list_types"), self._session_factory() as db:
            return [type_record(r) for r in db.scalars(stmt).all()]

    def list_items(self, type_id: Optional[str] = None) -> list[ItemRecord]:
        stmt = select(MaterialItem).order_by(MaterialItem.display_order, MaterialItem.name)
        if type_id is not None:
            stmt = stmt.where(MaterialItem.material_type_id == type_id)
        with translate_store_errors("list_items"), self._session_factory() as db:
            return [item_record(r) for r in db.scalars(stmt).all()]

    def get_category(self, category_id: str) -> Optional[CategoryRecord]:
        with translate_store_errors("get_category"), self._session_factory() as db:
            row = db.get(MaterialCategory, category_id)
            return category_record(row) if row else None

    def get_type(self, type_id: str) -> Optional[TypeRecord]:
        with translate_store_errors("get_type"), self._session_factory() as db:
            row = db.get(MaterialType, type_id)
            return type_record(row) if row else None

    def get_item(self, item_id: str) -> Optional[ItemRecord]:
        with translate_store_errors("get_item"), self._session_factory() as db:
            row = db.get(MaterialItem, item_id)
            return item_record(row) if row else None


class SqlMappingStore:
    def __init__(self, session_factory: sessionmaker, page_size: int = 1000):
        if page_size < 1:
            raise ValidationError("page_size must be >= 1")
        self._session_factory = session_factory
        self.page_size = page_size

    @staticmethod
    def _decode_token(page_token: Optional[str]) -> int:
        if page_token is None:
            return 0
        try:
            return int(page_token)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"invalid page token: {page_token!r}") from exc

    def list_mappings(self, item_ids: Sequence[str], page_token: Optional[str] = None) -> MappingPage:
        ids = list(dict.fromkeys(item_ids))
        if not ids:
            return MappingPage()
        after = self._decode_token(page_token)
        stmt = (
            select(MaterialItemClass)
            .where(MaterialItemClass.material_item_id.in_(ids), MaterialItemClass.id > after)
            .order_by(MaterialItemClass.id)
            .limit(self.page_size + 1)
        )
        with translate_store_errors("list_mappings"), self._session_factory() as db:
            rows = db.scalars(stmt).all()
        has_more = len(rows) > self.page_size
        rows = rows[: self.page_size]
        return MappingPage(
            rows=[mapping_row(r) for r in rows],
            next_page_token=str(rows[-1].id) if has_more else None,
        )

    def _lock_items(self, db: Session, item_ids: list[str]) -> None:
        # FOR UPDATE is dropped by dialects that lack it (SQLite serializes writers anyway)
        found = set(
            db.scalars(select(MaterialItem.id).where(MaterialItem.id.in_(item_ids)).order_by(MaterialItem.id).with_for_update()).all()
        )
        missing = [i for i in item_ids if i not in found]
        if missing:
            raise NotFoundError("material item", missing[0])

    def _require_classes(self, db: Session, targets: Sequence[MappingTarget]) -> None:
        class_ids = sorted({t.class_id for t in targets})
        if not class_ids:
            return
        found = set(db.scalars(select(ClassMaster.id).where(ClassMaster.id.in_(class_ids))).all())
        missing = [c for c in class_ids if c not in found]
        if missing:
            raise NotFoundError("class master", missing[0])

    def replace_mappings(self, item_ids: Sequence[str], targets: Sequence[MappingTarget]) -> None:
        ids = sorted(set(item_ids))
        if not ids:
            return
        targets = list(dict.fromkeys(targets))
        with translate_store_errors("replace_mappings"), self._session_factory.begin() as db:
            self._lock_items(db, ids)
            self._require_classes(db, targets)
            db.execute(delete(MaterialItemClass).where(MaterialItemClass.material_item_id.in_(ids)))
            db.add_all(
                MaterialItemClass(material_item_id=item_id, class_master_id=t.class_id, semester=t.semester)
                for item_id in ids
                for t in targets
            )

    def add_mappings(self, item_ids: Sequence[str], targets: Sequence[MappingTarget]) -> None:
        ids = sorted(set(item_ids))
        if not ids or not targets:
            return
        class_ids = {t.class_id for t in targets}
        with translate_store_errors("add_mappings"), self._session_factory.begin() as db:
            self._lock_items(db, ids)
            self._require_classes(db, targets)
            existing = {
                (r.material_item_id, r.class_master_id, r.semester)
                for r in db.scalars(
                    select(MaterialItemClass).where(
                        MaterialItemClass.material_item_id.in_(ids), MaterialItemClass.class_master_id.in_(class_ids)
                    )
                ).all()
            }
            for item_id in ids:
                for t in targets:
                    key = (item_id, t.class_id, t.semester)
                    if key in existing:
                        continue
                    existing.add(key)
                    db.add(MaterialItemClass(material_item_id=item_id, class_master_id=t.class_id, semester=t.semester))

    def delete_mapping(self, item_id: str, class_id: str, semester: Optional[int] = None, all_semesters: bool = False) -> int:
        stmt = delete(MaterialItemClass).where(
            MaterialItemClass.material_item_id == item_id, MaterialItemClass.class_master_id == class_id
        )
        if not all_semesters:
            stmt = stmt.where(MaterialItemClass.semester.is_(None) if semester is None else MaterialItemClass.semester == semester)
        with translate_store_errors("delete_mapping"), self._session_factory.begin() as db:
            self._lock_items(db, [item_id])
            return db.execute(stmt).rowcount or 0
