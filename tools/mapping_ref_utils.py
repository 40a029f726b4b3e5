from __future__ import annotations

import re
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from curriculum_map.db import ClassMaster, MaterialItem


def norm_name(raw: str) -> str:
    return re.sub(r"\s+", " ", str(raw or "").strip()).casefold()


def parse_semester(raw: str) -> Optional[int]:
    s = str(raw or "").strip().lower()
    if s in {"", "-", "none", "null", "uncategorized"}:
        return None
    if s not in {"1", "2"}:
        raise ValueError(f"semester must be 1, 2 or blank, got {raw!r}")
    return int(s)


def build_name_map(rows: Iterable[tuple[str, str]]) -> dict[str, str]:
    out: dict[str, str] = {}
    dupes: set[str] = set()
    for row_id, name in rows:
        key = norm_name(name)
        if key in out and out[key] != row_id:
            dupes.add(key)
        out[key] = row_id
    # A name shared by two rows cannot be used as a reference
    for key in dupes:
        del out[key]
    return out


def resolve_ref(ids: set[str], by_name: dict[str, str], raw: str) -> Optional[str]:
    s = str(raw or "").strip()
    if s in ids:
        return s
    return by_name.get(norm_name(s))


def resolve_refs_strict(ids: set[str], by_name: dict[str, str], refs: list[str], label: str = "refs") -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    missing: list[str] = []
    for raw in refs:
        rid = resolve_ref(ids, by_name, raw)
        if not rid:
            missing.append(raw)
            continue
        if rid in seen:
            continue
        seen.add(rid)
        out.append(rid)
    if missing:
        raise RuntimeError(f"Unresolved {label}: {missing}")
    return out


def load_item_refs(db: Session) -> tuple[set[str], dict[str, str]]:
    rows = db.execute(select(MaterialItem.id, MaterialItem.name)).all()
    return {r[0] for r in rows}, build_name_map(rows)


def load_class_refs(db: Session) -> tuple[set[str], dict[str, str]]:
    rows = db.execute(select(ClassMaster.id, ClassMaster.name)).all()
    return {r[0] for r in rows}, build_name_map(rows)
