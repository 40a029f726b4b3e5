from __future__ import annotations

import argparse
import csv
import json
import sys
from pathlib import Path

from sqlalchemy.orm import Session

ROOT = Path(__file__).resolve().parents[1]
BACKEND = ROOT / "backend"
if str(BACKEND) not in sys.path:
    sys.path.insert(0, str(BACKEND))

from curriculum_map.engine import open_sql_engine  # noqa: E402
from curriculum_map.schemas import ResolvedEntry  # noqa: E402
from mapping_ref_utils import load_class_refs, parse_semester, resolve_refs_strict  # noqa: E402

FIELDNAMES = [
    "section_id",
    "entry_id",
    "display_name",
    "level",
    "source_item_ids",
    "type_name",
    "category_name",
    "is_required",
    "icon",
    "category_label",
]


def entry_row(entry: ResolvedEntry) -> dict[str, str]:
    return {
        "section_id": entry.section_id or "",
        "entry_id": entry.id,
        "display_name": entry.display_name,
        "level": entry.level.value,
        "source_item_ids": ";".join(entry.source_item_ids),
        "type_name": entry.type_name or "",
        "category_name": entry.category_name or "",
        "is_required": "Y" if entry.is_required else "N",
        "icon": entry.icon or "",
        "category_label": entry.category_label or "",
    }


def resolve_context(db: Session, class_ref: str, semester: str) -> dict:
    class_ids, class_by_name = load_class_refs(db)
    (class_id,) = resolve_refs_strict(class_ids, class_by_name, [class_ref], label="class")
    return {"class_id": class_id, "semester": parse_semester(semester)}


def main() -> None:
    parser = argparse.ArgumentParser(description="Resolve report sections for one class/semester and write the entries as CSV")
    parser.add_argument("sections_json", help="JSON list of {level, target_id, grading_mode, ...}")
    parser.add_argument("--class", dest="class_ref", required=True, help="class master id or name")
    parser.add_argument("--semester", default="")
    parser.add_argument("--out", default=str(ROOT / "docs" / "resolved_sections.csv"))
    args = parser.parse_args()

    sections = json.loads(Path(args.sections_json).read_text(encoding="utf-8"))
    if not isinstance(sections, list):
        raise SystemExit("sections file must hold a JSON list")

    engine = open_sql_engine()
    with engine.session_factory() as db:
        context = resolve_context(db, args.class_ref, args.semester)

    resolved = engine.resolve_sections(sections, context)
    rows = [entry_row(entry) for entries in resolved for entry in entries]

    out_file = Path(args.out)
    out_file.parent.mkdir(parents=True, exist_ok=True)
    with out_file.open("w", newline="", encoding="utf-8") as f:
        w = csv.DictWriter(f, fieldnames=FIELDNAMES)
        w.writeheader()
        w.writerows(rows)

    empty = sum(1 for entries in resolved if not entries)
    print(f"Wrote {len(rows)} entries for {len(sections)} sections to {out_file} ({empty} sections resolved empty)")


if __name__ == "__main__":
    main()
