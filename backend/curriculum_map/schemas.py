from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

Semester = Optional[Literal[1, 2]]


class MaterialLevel(str, Enum):
    CATEGORY = "category"
    TYPE = "type"
    ITEM = "item"


class GradingMode(str, Enum):
    EXPAND = "expand"
    SINGLE = "single"


class BulkMode(str, Enum):
    REPLACE = "replace"
    ADD = "add"


class CategoryRecord(BaseModel):
    model_config = ConfigDict(frozen=True)
    id: str
    name: str
    display_order: int = 0


class TypeRecord(BaseModel):
    model_config = ConfigDict(frozen=True)
    id: str
    category_id: str
    name: str
    display_order: int = 0


class ItemRecord(BaseModel):
    model_config = ConfigDict(frozen=True)
    id: str
    type_id: str
    name: str
    display_order: int = 0
    content: Optional[str] = None


class MappingTarget(BaseModel):
    model_config = ConfigDict(frozen=True)
    class_id: str = Field(min_length=1)
    semester: Semester = None


class MappingRow(BaseModel):
    model_config = ConfigDict(frozen=True)
    item_id: str
    class_id: str
    semester: Semester = None

    def target(self) -> MappingTarget:
        return MappingTarget(class_id=self.class_id, semester=self.semester)


class MappingPage(BaseModel):
    rows: list[MappingRow] = Field(default_factory=list)
    next_page_token: Optional[str] = None


class ReportSection(BaseModel):
    """One line of a report template: a level-tagged taxonomy target plus how to grade it."""

    model_config = ConfigDict(frozen=True)
    id: Optional[str] = None
    level: MaterialLevel
    target_id: str = Field(min_length=1)
    grading_mode: GradingMode = GradingMode.EXPAND
    custom_name: Optional[str] = None
    is_required: bool = True


class ResolutionContext(BaseModel):
    model_config = ConfigDict(frozen=True)
    class_id: str = Field(min_length=1)
    semester: Semester = None


class ResolvedEntry(BaseModel):
    model_config = ConfigDict(frozen=True)
    id: str
    display_name: str
    level: MaterialLevel
    source_item_ids: tuple[str, ...] = ()
    section_id: Optional[str] = None
    type_name: Optional[str] = None
    category_name: Optional[str] = None
    is_required: bool = True
    icon: Optional[str] = None
    category_label: Optional[str] = None


class Presentation(BaseModel):
    model_config = ConfigDict(frozen=True)
    icon: Optional[str] = None
    label: Optional[str] = None


M = TypeVar("M", bound=BaseModel)


def coerce(model: type[M], value: Any) -> M:
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid {model.__name__}: {exc.errors(include_url=False)}") from exc


def coerce_targets(targets: Any) -> list[MappingTarget]:
    if targets is None:
        raise ValidationError("targets must be a list (use [] to unassign everything)")
    out: list[MappingTarget] = []
    seen: set[MappingTarget] = set()
    for raw in targets:
        target = coerce(MappingTarget, raw)
        if target in seen:
            continue
        seen.add(target)
        out.append(target)
    return out


def coerce_semester(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or value not in (1, 2):
        raise ValidationError(f"semester must be 1, 2 or None, got {value!r}")
    return int(value)
