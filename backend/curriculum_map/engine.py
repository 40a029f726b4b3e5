from __future__ import annotations

from typing import Any, Optional, Sequence

from sqlalchemy.orm import sessionmaker

from .accumulator import MergeAccumulator
from .app_logger import get_logger, setup_logging
from .db import init_db, make_engine, make_session_factory
from .mapping import BulkMappingMutator, ItemLockRegistry, MappingResolver
from .schemas import BulkMode, ItemRecord, MappingTarget, ResolvedEntry
from .sections import PresentationTable, SectionResolver
from .settings import Settings, get_settings
from .stores import MappingStore, SqlMappingStore, SqlTaxonomyStore, TaxonomyStore

log = get_logger(__name__)

# Engines opened through open_sql_engine serialize their writers against each other
PROCESS_LOCKS = ItemLockRegistry()


class MappingEngine:
    """Entry point for report generation: section resolution, visibility checks and bulk mapping edits."""

    def __init__(
        self,
        taxonomy: TaxonomyStore,
        store: MappingStore,
        settings: Optional[Settings] = None,
        presentation: Optional[PresentationTable] = None,
        locks: Optional[ItemLockRegistry] = None,
        lock_timeout: Optional[float] = None,
        session_factory: Optional[sessionmaker] = None,
    ):
        settings = settings or get_settings()
        if presentation is None and settings.presentation_path:
            presentation = PresentationTable.from_json_path(settings.presentation_path)
        self.settings = settings
        self.session_factory = session_factory
        self.accumulator = MergeAccumulator(store, settings.id_batch_size)
        self.mutator = BulkMappingMutator(taxonomy, store, locks, lock_timeout)
        self.mapping = MappingResolver(taxonomy, self.accumulator, self.mutator, settings.uncategorized_visible)
        self.sections = SectionResolver(taxonomy, self.mapping, presentation, settings.emit_empty_single)

    def resolve_section(self, section: Any, context: Any) -> list[ResolvedEntry]:
        return self.sections.resolve(section, context)

    def resolve_sections(self, sections: Sequence[Any], context: Any) -> list[list[ResolvedEntry]]:
        return self.sections.resolve_all(sections, context)

    def is_item_visible(self, item_id: str, class_id: str, semester: Optional[int]) -> bool:
        return self.mapping.is_visible(item_id, class_id, semester)

    def item_mappings(self, item_id: str) -> list[MappingTarget]:
        return self.mapping.get_mappings(item_id)

    def apply_bulk_mapping(self, item_ids: Sequence[str], targets: Sequence[Any], mode: Any = BulkMode.REPLACE) -> None:
        self.mutator.apply(item_ids, targets, mode)

    def visible_items(self, class_id: str, semester: Optional[int], category_id: Optional[str] = None) -> list[ItemRecord]:
        return self.sections.visible_items(class_id, semester, category_id)


def open_sql_engine(settings: Optional[Settings] = None, presentation: Optional[PresentationTable] = None) -> MappingEngine:
    settings = settings or get_settings()
    setup_logging(settings.log_level)
    engine = make_engine(settings.database_url, settings.db_echo)
    init_db(engine)
    session_factory = make_session_factory(engine)
    log.info("mapping engine ready on %s (page size %d)", engine.url.render_as_string(hide_password=True), settings.mapping_page_size)
    return MappingEngine(
        SqlTaxonomyStore(session_factory),
        SqlMappingStore(session_factory, settings.mapping_page_size),
        settings=settings,
        presentation=presentation,
        locks=PROCESS_LOCKS,
        session_factory=session_factory,
    )
