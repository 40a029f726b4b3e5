from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from .app_logger import get_logger
from .errors import InvariantViolation, ValidationError
from .mapping import MappingResolver
from .schemas import (
    CategoryRecord,
    GradingMode,
    ItemRecord,
    MaterialLevel,
    Presentation,
    ReportSection,
    ResolutionContext,
    ResolvedEntry,
    TypeRecord,
    coerce,
    coerce_semester,
)
from .stores import TaxonomyStore

log = get_logger(__name__)


class PresentationTable:
    """Icon/label per category id, supplied by whoever renders the report."""

    def __init__(self, entries: Optional[Mapping[str, Union[Presentation, dict]]] = None):
        self._entries = {str(k): coerce(Presentation, v) for k, v in (entries or {}).items()}

    @classmethod
    def from_json_path(cls, path: Union[str, Path]) -> "PresentationTable":
        path = Path(path)
        if not path.exists():
            raise ValidationError(f"presentation file not found: {path}")
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValidationError(f"presentation file is not valid JSON: {path}") from exc
        if not isinstance(payload, dict):
            raise ValidationError("presentation file must hold an object keyed by category id")
        return cls(payload)

    def for_category(self, category_id: str) -> Optional[Presentation]:
        return self._entries.get(category_id)

    def __len__(self) -> int:
        return len(self._entries)


def item_sort_key(type_rec: TypeRecord, item: ItemRecord) -> tuple:
    return (
        type_rec.display_order,
        type_rec.name.casefold(),
        type_rec.id,
        item.display_order,
        item.name.casefold(),
        item.id,
    )


class SectionResolver:
    def __init__(
        self,
        taxonomy: TaxonomyStore,
        mapping: MappingResolver,
        presentation: Optional[PresentationTable] = None,
        emit_empty_single: bool = True,
    ):
        self.taxonomy = taxonomy
        self.mapping = mapping
        self.presentation = presentation or PresentationTable()
        self.emit_empty_single = emit_empty_single

    def _presentation(self, category: CategoryRecord) -> dict:
        found = self.presentation.for_category(category.id)
        if found is None:
            return {}
        return {"icon": found.icon, "category_label": found.label}

    def _category_of(self, type_rec: TypeRecord) -> CategoryRecord:
        category = self.taxonomy.get_category(type_rec.category_id)
        if category is None:
            raise InvariantViolation(f"material type {type_rec.id} points at missing category {type_rec.category_id}")
        return category

    def _type_of(self, item: ItemRecord) -> TypeRecord:
        type_rec = self.taxonomy.get_type(item.type_id)
        if type_rec is None:
            raise InvariantViolation(f"material item {item.id} points at missing type {item.type_id}")
        return type_rec

    def _items_of(self, type_rec: TypeRecord) -> list[ItemRecord]:
        items = self.taxonomy.list_items(type_rec.id)
        for item in items:
            if item.type_id != type_rec.id:
                raise InvariantViolation(f"store listed item {item.id} under type {type_rec.id} but it belongs to {item.type_id}")
        return items

    def _types_of(self, category: CategoryRecord) -> list[TypeRecord]:
        types = self.taxonomy.list_types(category.id)
        for type_rec in types:
            if type_rec.category_id != category.id:
                raise InvariantViolation(
                    f"store listed type {type_rec.id} under category {category.id} but it belongs to {type_rec.category_id}"
                )
        return types

    def _scope(self, section: ReportSection) -> tuple[str, CategoryRecord, list[tuple[TypeRecord, ItemRecord]]]:
        if section.level is MaterialLevel.TYPE:
            type_rec = self.taxonomy.get_type(section.target_id)
            if type_rec is None:
                raise ValidationError(f"material type not found: {section.target_id}")
            category = self._category_of(type_rec)
            return type_rec.name, category, [(type_rec, item) for item in self._items_of(type_rec)]
        category = self.taxonomy.get_category(section.target_id)
        if category is None:
            raise ValidationError(f"material category not found: {section.target_id}")
        pairs = [(type_rec, item) for type_rec in self._types_of(category) for item in self._items_of(type_rec)]
        return category.name, category, pairs

    def _survivors(self, pairs: list[tuple[TypeRecord, ItemRecord]], context: ResolutionContext) -> list[tuple[TypeRecord, ItemRecord]]:
        visible = self.mapping.visible_item_ids([item.id for _, item in pairs], context.class_id, context.semester)
        kept = [(type_rec, item) for type_rec, item in pairs if item.id in visible]
        kept.sort(key=lambda pair: item_sort_key(*pair))
        return kept

    def _resolve_item(self, section: ReportSection, context: ResolutionContext) -> list[ResolvedEntry]:
        item = self.taxonomy.get_item(section.target_id)
        if item is None:
            raise ValidationError(f"material item not found: {section.target_id}")
        type_rec = self._type_of(item)
        category = self._category_of(type_rec)
        if item.id not in self.mapping.visible_item_ids([item.id], context.class_id, context.semester):
            return []
        return [
            ResolvedEntry(
                id=item.id,
                display_name=section.custom_name or item.name,
                level=MaterialLevel.ITEM,
                source_item_ids=(item.id,),
                section_id=section.id,
                type_name=type_rec.name,
                category_name=category.name,
                is_required=section.is_required,
                **self._presentation(category),
            )
        ]

    def resolve(self, section: Any, context: Any) -> list[ResolvedEntry]:
        section = coerce(ReportSection, section)
        context = coerce(ResolutionContext, context)
        if section.level is MaterialLevel.ITEM:
            return self._resolve_item(section, context)

        target_name, category, pairs = self._scope(section)
        survivors = self._survivors(pairs, context)
        presentation = self._presentation(category)
        log.debug(
            "section %s:%s for class %s semester %s: %d of %d items visible",
            section.level.value,
            section.target_id,
            context.class_id,
            context.semester,
            len(survivors),
            len(pairs),
        )

        if section.grading_mode is GradingMode.SINGLE:
            if not survivors and not self.emit_empty_single:
                log.warning(
                    "empty resolved data: single %s %s has no items for class %s semester %s, aggregate omitted",
                    section.level.value,
                    section.target_id,
                    context.class_id,
                    context.semester,
                )
                return []
            return [
                ResolvedEntry(
                    id=section.target_id,
                    display_name=section.custom_name or target_name,
                    level=section.level,
                    source_item_ids=tuple(item.id for _, item in survivors),
                    section_id=section.id,
                    type_name=target_name,
                    category_name=category.name,
                    is_required=section.is_required,
                    **presentation,
                )
            ]

        return [
            ResolvedEntry(
                id=item.id,
                display_name=item.name,
                level=MaterialLevel.ITEM,
                source_item_ids=(item.id,),
                section_id=section.id,
                type_name=type_rec.name,
                category_name=category.name,
                is_required=section.is_required,
                **presentation,
            )
            for type_rec, item in survivors
        ]

    def resolve_all(self, sections: Sequence[Any], context: Any) -> list[list[ResolvedEntry]]:
        parsed = [coerce(ReportSection, s) for s in sections]
        context = coerce(ResolutionContext, context)
        return [self.resolve(section, context) for section in parsed]

    def visible_items(self, class_id: str, semester: Optional[int], category_id: Optional[str] = None) -> list[ItemRecord]:
        semester = coerce_semester(semester)
        if category_id is not None:
            category = self.taxonomy.get_category(category_id)
            if category is None:
                raise ValidationError(f"material category not found: {category_id}")
            categories: Iterable[CategoryRecord] = [category]
        else:
            categories = sorted(self.taxonomy.list_categories(), key=lambda c: (c.display_order, c.name.casefold(), c.id))
        grouped = [[(type_rec, item) for type_rec in self._types_of(cat) for item in self._items_of(type_rec)] for cat in categories]
        visible = self.mapping.visible_item_ids([item.id for pairs in grouped for _, item in pairs], class_id, semester)
        out: list[ItemRecord] = []
        for pairs in grouped:
            kept = sorted((pair for pair in pairs if pair[1].id in visible), key=lambda pair: item_sort_key(*pair))
            out.extend(item for _, item in kept)
        return out
