from __future__ import annotations

import logging
import os
import sys
import threading
import time
from typing import Optional, Sequence

import pytest

from curriculum_map.db import ClassMaster, MaterialCategory, MaterialItem, MaterialType, init_db, make_engine, make_session_factory
from curriculum_map.engine import MappingEngine
from curriculum_map.schemas import CategoryRecord, ItemRecord, MappingPage, MappingRow, MappingTarget, TypeRecord
from curriculum_map.settings import Settings
from curriculum_map.stores import SqlMappingStore, SqlTaxonomyStore


@pytest.fixture(scope="session", autouse=True)
def _tests_log_to_stdout():
    root = logging.getLogger()
    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stdout for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        root.addHandler(handler)
    root.setLevel(os.getenv("TEST_LOG_LEVEL", "INFO").upper())


def make_settings(**overrides) -> Settings:
    values = {"database_url": "sqlite://", "presentation_path": None}
    values.update(overrides)
    return Settings(_env_file=None, **values)


# ==============================================================
# SQLite-backed stores
# ==============================================================


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def seeded(session_factory):
    """Hafalan -> Doa (D1, D2), Hadits (H1); Akhlaq -> Adab (A1); classes A, B, C."""
    # No relationship() on the models, so parents are flushed before children by hand
    with session_factory.begin() as db:
        db.add_all(
            [
                MaterialCategory(id="hafalan", name="Hafalan", display_order=1),
                MaterialCategory(id="akhlaq", name="Akhlaq", display_order=2),
            ]
        )
        db.flush()
        db.add_all(
            [
                MaterialType(id="doa", category_id="hafalan", name="Doa", display_order=1),
                MaterialType(id="hadits", category_id="hafalan", name="Hadits", display_order=2),
                MaterialType(id="adab", category_id="akhlaq", name="Adab", display_order=1),
            ]
        )
        db.flush()
        db.add_all(
            [
                MaterialItem(id="D1", material_type_id="doa", name="Doa Sebelum Makan", display_order=1),
                MaterialItem(id="D2", material_type_id="doa", name="Doa Sesudah Makan", display_order=2),
                MaterialItem(id="H1", material_type_id="hadits", name="Hadits Kebersihan", display_order=1),
                MaterialItem(id="A1", material_type_id="adab", name="Adab Makan", display_order=1),
                ClassMaster(id="ClassA", name="Kelas A"),
                ClassMaster(id="ClassB", name="Kelas B"),
                ClassMaster(id="ClassC", name="Kelas C"),
            ]
        )
    return session_factory


@pytest.fixture
def taxonomy(seeded):
    return SqlTaxonomyStore(seeded)


@pytest.fixture
def mapping_store(seeded):
    # Small pages so every multi-row read crosses page boundaries
    return SqlMappingStore(seeded, page_size=2)


@pytest.fixture
def engine(taxonomy, mapping_store, seeded):
    return MappingEngine(taxonomy, mapping_store, settings=make_settings(id_batch_size=2), session_factory=seeded)


def targets_of(engine: MappingEngine, item_id: str) -> set[tuple]:
    return {(t.class_id, t.semester) for t in engine.item_mappings(item_id)}


# ==============================================================
# In-memory fakes for failure injection
# ==============================================================


class FakeTaxonomyStore:
    def __init__(self, categories=(), types=(), items=()):
        self.categories = {c.id: c for c in categories}
        self.types = {t.id: t for t in types}
        self.items = {i.id: i for i in items}

    def list_categories(self) -> list[CategoryRecord]:
        return list(self.categories.values())

    def list_types(self, category_id: Optional[str] = None) -> list[TypeRecord]:
        return [t for t in self.types.values() if category_id is None or t.category_id == category_id]

    def list_items(self, type_id: Optional[str] = None) -> list[ItemRecord]:
        return [i for i in self.items.values() if type_id is None or i.type_id == type_id]

    def get_category(self, category_id: str) -> Optional[CategoryRecord]:
        return self.categories.get(category_id)

    def get_type(self, type_id: str) -> Optional[TypeRecord]:
        return self.types.get(type_id)

    def get_item(self, item_id: str) -> Optional[ItemRecord]:
        return self.items.get(item_id)


class FakeMappingStore:
    """List-backed store with configurable page size and injectable failures."""

    def __init__(self, rows: Sequence[MappingRow] = (), page_size: int = 1000):
        self.rows = list(rows)
        self.page_size = page_size
        self.calls: list[tuple] = []
        self.fail_on_call: Optional[int] = None
        self.failure: Exception = ConnectionError("connection reset")
        self.extra_rows: list[MappingRow] = []
        self.repeat_token = False
        self.write_delay = 0.0
        self.active: set[str] = set()
        self.overlaps = 0
        self._guard = threading.Lock()

    def list_mappings(self, item_ids, page_token=None) -> MappingPage:
        self.calls.append((tuple(item_ids), page_token))
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise self.failure
        wanted = set(item_ids)
        matching = [r for r in self.rows if r.item_id in wanted] + self.extra_rows
        start = int(page_token or 0)
        page = matching[start : start + self.page_size]
        end = start + self.page_size
        if self.repeat_token and page_token is not None:
            return MappingPage(rows=page, next_page_token=page_token)
        return MappingPage(rows=page, next_page_token=str(end) if end < len(matching) else None)

    def _enter(self, item_ids) -> None:
        with self._guard:
            if self.active & set(item_ids):
                self.overlaps += 1
            self.active |= set(item_ids)
        time.sleep(self.write_delay)

    def _exit(self, item_ids) -> None:
        with self._guard:
            self.active -= set(item_ids)

    def replace_mappings(self, item_ids, targets) -> None:
        self._enter(item_ids)
        try:
            kept = [r for r in self.rows if r.item_id not in set(item_ids)]
            kept.extend(MappingRow(item_id=i, class_id=t.class_id, semester=t.semester) for i in item_ids for t in targets)
            self.rows = kept
        finally:
            self._exit(item_ids)

    def add_mappings(self, item_ids, targets) -> None:
        self._enter(item_ids)
        try:
            for i in item_ids:
                for t in targets:
                    row = MappingRow(item_id=i, class_id=t.class_id, semester=t.semester)
                    if row not in self.rows:
                        self.rows.append(row)
        finally:
            self._exit(item_ids)

    def delete_mapping(self, item_id, class_id, semester=None, all_semesters=False) -> int:
        before = len(self.rows)
        self.rows = [
            r
            for r in self.rows
            if not (r.item_id == item_id and r.class_id == class_id and (all_semesters or r.semester == semester))
        ]
        return before - len(self.rows)


def row(item_id: str, class_id: str, semester=None) -> MappingRow:
    return MappingRow(item_id=item_id, class_id=class_id, semester=semester)


def target(class_id: str, semester=None) -> MappingTarget:
    return MappingTarget(class_id=class_id, semester=semester)


@pytest.fixture
def fake_taxonomy():
    return FakeTaxonomyStore(
        categories=[CategoryRecord(id="hafalan", name="Hafalan", display_order=1)],
        types=[TypeRecord(id="doa", category_id="hafalan", name="Doa", display_order=1)],
        items=[ItemRecord(id=f"I{n}", type_id="doa", name=f"Item {n}", display_order=n) for n in range(1, 6)],
    )
