from __future__ import annotations

import csv
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
BACKEND = ROOT / "backend"
if str(BACKEND) not in sys.path:
    sys.path.insert(0, str(BACKEND))

from curriculum_map.engine import open_sql_engine  # noqa: E402
from curriculum_map.schemas import ItemRecord, MappingTarget  # noqa: E402


def classify(targets: list[MappingTarget]) -> str:
    if not targets:
        return "UNMAPPED"
    if all(t.semester is None for t in targets):
        return "UNCATEGORIZED_ONLY"
    if any(t.semester is None for t in targets):
        return "PARTLY_UNCATEGORIZED"
    return "OK"


def qc_rows(items: list[ItemRecord], mappings: dict[str, list[MappingTarget]]) -> list[dict[str, str]]:
    out_rows: list[dict[str, str]] = []
    for item in items:
        targets = mappings.get(item.id, [])
        status = classify(targets)
        if status == "OK":
            continue
        out_rows.append(
            {
                "item_id": item.id,
                "item_name": item.name,
                "type_id": item.type_id,
                "status": status,
                "uncategorized_classes": " | ".join(sorted({t.class_id for t in targets if t.semester is None})),
            }
        )
    return out_rows


def main() -> None:
    out_file = Path(sys.argv[1]) if len(sys.argv) > 1 else ROOT / "docs" / "unmapped_items.csv"
    engine = open_sql_engine()
    items = engine.mapping.taxonomy.list_items()
    mappings = engine.accumulator.load_mappings(item.id for item in items)
    out_rows = qc_rows(items, mappings)

    out_file.parent.mkdir(parents=True, exist_ok=True)
    with out_file.open("w", newline="", encoding="utf-8") as f:
        w = csv.DictWriter(f, fieldnames=["item_id", "item_name", "type_id", "status", "uncategorized_classes"])
        w.writeheader()
        w.writerows(out_rows)

    print(f"Wrote {len(out_rows)} items needing mapping attention (of {len(items)}) to {out_file}")


if __name__ == "__main__":
    main()
