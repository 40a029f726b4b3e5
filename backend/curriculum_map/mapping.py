from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Optional, Sequence

from .accumulator import MergeAccumulator
from .app_logger import get_logger
from .errors import NotFoundError, RetryableError, ValidationError
from .schemas import BulkMode, ItemRecord, MappingTarget, coerce_semester, coerce_targets
from .stores import MappingStore, TaxonomyStore

log = get_logger(__name__)


class ItemLockRegistry:
    """Per-item mutexes shared by every mutator handed the same registry.

    Locks are always taken in sorted id order so overlapping batches cannot deadlock, and an entry is
    dropped once nobody holds or waits on it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, list] = {}

    def _checkout(self, item_ids: list[str]) -> list[threading.Lock]:
        with self._guard:
            locks = []
            for item_id in item_ids:
                entry = self._entries.setdefault(item_id, [threading.Lock(), 0])
                entry[1] += 1
                locks.append(entry[0])
            return locks

    def _checkin(self, item_ids: list[str]) -> None:
        with self._guard:
            for item_id in item_ids:
                entry = self._entries[item_id]
                entry[1] -= 1
                if entry[1] == 0:
                    del self._entries[item_id]

    def active_count(self) -> int:
        with self._guard:
            return len(self._entries)

    @contextmanager
    def hold(self, item_ids: Iterable[str], timeout: Optional[float] = None) -> Iterator[None]:
        ids = sorted(set(item_ids))
        locks = self._checkout(ids)
        acquired: list[threading.Lock] = []
        try:
            for item_id, lock in zip(ids, locks):
                if not lock.acquire(timeout=-1 if timeout is None else timeout):
                    raise RetryableError(f"timed out waiting for the mapping lock on item {item_id}")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            self._checkin(ids)


def require_item(taxonomy: TaxonomyStore, item_id: str) -> ItemRecord:
    if not isinstance(item_id, str) or not item_id:
        raise ValidationError(f"item id must be a non-empty string, got {item_id!r}")
    item = taxonomy.get_item(item_id)
    if item is None:
        raise NotFoundError("material item", item_id)
    return item


class BulkMappingMutator:
    def __init__(
        self,
        taxonomy: TaxonomyStore,
        store: MappingStore,
        locks: Optional[ItemLockRegistry] = None,
        lock_timeout: Optional[float] = None,
    ):
        self.taxonomy = taxonomy
        self.store = store
        self.locks = locks or ItemLockRegistry()
        self.lock_timeout = lock_timeout

    def apply(self, item_ids: Sequence[str], targets: Sequence[Any], mode: Any = BulkMode.REPLACE) -> None:
        """Broadcast one target set to every item in the batch.

        ``replace`` drops every existing row of each item first; ``add`` only inserts missing triples.
        The store runs the batch as a single transaction, and overlapping batches are serialized per item.
        """
        try:
            mode = BulkMode(mode)
        except ValueError as exc:
            raise ValidationError(f"mode must be 'replace' or 'add', got {mode!r}") from exc
        if isinstance(item_ids, str):
            raise ValidationError("item_ids must be a list of ids, not a single string")
        ids = list(dict.fromkeys(item_ids))
        resolved = coerce_targets(targets)
        if not ids:
            log.debug("bulk %s mapping skipped: no items selected", mode.value)
            return
        for item_id in ids:
            require_item(self.taxonomy, item_id)

        with self.locks.hold(ids, self.lock_timeout):
            try:
                if mode is BulkMode.REPLACE:
                    self.store.replace_mappings(ids, resolved)
                else:
                    self.store.add_mappings(ids, resolved)
            except OSError as exc:
                raise RetryableError(f"bulk {mode.value} mapping failed: {exc}") from exc
        log.info("bulk %s mapping: %d targets applied to %d items", mode.value, len(resolved), len(ids))


class MappingResolver:
    def __init__(
        self,
        taxonomy: TaxonomyStore,
        accumulator: MergeAccumulator,
        mutator: BulkMappingMutator,
        uncategorized_visible: bool = False,
    ):
        self.taxonomy = taxonomy
        self.accumulator = accumulator
        self.mutator = mutator
        self.uncategorized_visible = uncategorized_visible

    def matches(self, targets: Iterable[MappingTarget], class_id: str, semester: Optional[int]) -> bool:
        for target in targets:
            if target.class_id != class_id:
                continue
            if target.semester == semester:
                return True
            if self.uncategorized_visible and target.semester is None and semester is not None:
                return True
        return False

    def get_mappings(self, item_id: str) -> list[MappingTarget]:
        require_item(self.taxonomy, item_id)
        return self.accumulator.load_mappings([item_id])[item_id]

    def is_visible(self, item_id: str, class_id: str, semester: Optional[int]) -> bool:
        semester = coerce_semester(semester)
        return self.matches(self.get_mappings(item_id), class_id, semester)

    def visible_item_ids(self, item_ids: Iterable[str], class_id: str, semester: Optional[int]) -> set[str]:
        semester = coerce_semester(semester)
        merged = self.accumulator.load_mappings(item_ids)
        return {item_id for item_id, targets in merged.items() if self.matches(targets, class_id, semester)}

    def assign(self, item_id: str, class_id: str, semester: Optional[int] = None) -> None:
        self.mutator.apply([item_id], [{"class_id": class_id, "semester": semester}], BulkMode.ADD)

    def set_mappings(self, item_id: str, targets: Sequence[Any]) -> None:
        self.mutator.apply([item_id], targets, BulkMode.REPLACE)

    def unassign(self, item_id: str, class_id: str, semester: Optional[int] = None, all_semesters: bool = False) -> int:
        semester = coerce_semester(semester)
        require_item(self.taxonomy, item_id)
        with self.mutator.locks.hold([item_id], self.mutator.lock_timeout):
            try:
                removed = self.mutator.store.delete_mapping(item_id, class_id, semester, all_semesters=all_semesters)
            except OSError as exc:
                raise RetryableError(f"delete mapping failed: {exc}") from exc
        log.info("removed %d mapping rows for item %s in class %s", removed, item_id, class_id)
        return removed
