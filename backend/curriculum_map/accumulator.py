from __future__ import annotations

from typing import Iterable, Iterator

from .app_logger import get_logger
from .errors import InvariantViolation, RetryableError, ValidationError
from .schemas import MappingPage, MappingRow, MappingTarget
from .stores import MappingStore

log = get_logger(__name__)


def chunked(values: list[str], size: int) -> Iterator[list[str]]:
    for i in range(0, len(values), size):
        yield values[i : i + size]


class MergeAccumulator:
    """Drains every mapping page for a set of items before anything is resolved against them.

    Item ids go to the store in chunks of ``id_batch_size``; each chunk is read until the store stops
    returning a page token. Any failed page fails the whole load, so callers never see a truncated set.
    """

    def __init__(self, store: MappingStore, id_batch_size: int = 200):
        if id_batch_size < 1:
            raise ValidationError("id_batch_size must be >= 1")
        self.store = store
        self.id_batch_size = id_batch_size

    def _fetch(self, chunk: list[str], token) -> MappingPage:
        try:
            return self.store.list_mappings(chunk, token)
        except OSError as exc:
            raise RetryableError(f"mapping page fetch failed: {exc}") from exc

    def iter_pages(self, item_ids: Iterable[str]) -> Iterator[MappingPage]:
        requested = list(dict.fromkeys(item_ids))
        for chunk in chunked(requested, self.id_batch_size):
            token = None
            seen_tokens: set[str] = set()
            while True:
                page = self._fetch(chunk, token)
                yield page
                token = page.next_page_token
                if token is None:
                    break
                if token in seen_tokens:
                    raise InvariantViolation(f"mapping store repeated page token {token!r}")
                seen_tokens.add(token)

    def iter_rows(self, item_ids: Iterable[str]) -> Iterator[MappingRow]:
        for page in self.iter_pages(item_ids):
            yield from page.rows

    def load_mappings(self, item_ids: Iterable[str]) -> dict[str, list[MappingTarget]]:
        requested = list(dict.fromkeys(item_ids))
        merged: dict[str, list[MappingTarget]] = {item_id: [] for item_id in requested}
        if not requested:
            return merged
        seen: set[tuple] = set()
        pages = rows = duplicates = 0
        for page in self.iter_pages(requested):
            pages += 1
            for row in page.rows:
                rows += 1
                bucket = merged.get(row.item_id)
                if bucket is None:
                    raise InvariantViolation(f"mapping store returned a row for unrequested item {row.item_id}")
                key = (row.item_id, row.class_id, row.semester)
                if key in seen:
                    duplicates += 1
                    continue
                seen.add(key)
                bucket.append(row.target())
        log.debug("drained %d mapping rows in %d pages for %d items (%d duplicates merged)", rows, pages, len(requested), duplicates)
        return merged
