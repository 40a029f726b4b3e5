from __future__ import annotations

import argparse
import csv
import sys
from pathlib import Path
from typing import Iterable

ROOT = Path(__file__).resolve().parents[1]
BACKEND = ROOT / "backend"
if str(BACKEND) not in sys.path:
    sys.path.insert(0, str(BACKEND))

from curriculum_map.engine import open_sql_engine  # noqa: E402
from curriculum_map.schemas import MappingTarget  # noqa: E402
from mapping_ref_utils import load_class_refs, load_item_refs, parse_semester, resolve_ref  # noqa: E402


def group_by_target_set(targets_by_item: dict[str, set[MappingTarget]]) -> list[tuple[list[str], list[MappingTarget]]]:
    groups: dict[frozenset, list[str]] = {}
    for item_id, targets in targets_by_item.items():
        groups.setdefault(frozenset(targets), []).append(item_id)
    out = []
    for targets, item_ids in groups.items():
        ordered = sorted(targets, key=lambda t: (t.class_id, t.semester is None, t.semester or 0))
        out.append((sorted(item_ids), ordered))
    out.sort(key=lambda g: g[0][0])
    return out


def collect_targets(
    rows: Iterable[dict], item_refs: tuple[set[str], dict[str, str]], class_refs: tuple[set[str], dict[str, str]]
) -> tuple[dict[str, set[MappingTarget]], list[str]]:
    targets_by_item: dict[str, set[MappingTarget]] = {}
    skipped: list[str] = []
    for line_no, row in enumerate(rows, start=2):
        item_id = resolve_ref(*item_refs, row.get("item") or "")
        class_id = resolve_ref(*class_refs, row.get("class") or "")
        if not item_id or not class_id:
            skipped.append(f"line {line_no}: item={row.get('item')!r} class={row.get('class')!r}")
            continue
        try:
            semester = parse_semester(row.get("semester") or "")
        except ValueError as exc:
            skipped.append(f"line {line_no}: {exc}")
            continue
        targets_by_item.setdefault(item_id, set()).add(MappingTarget(class_id=class_id, semester=semester))
    return targets_by_item, skipped


def main() -> None:
    parser = argparse.ArgumentParser(description="Apply item -> class/semester mappings from a CSV (columns: item, class, semester)")
    parser.add_argument("csv_path")
    parser.add_argument("--mode", choices=["replace", "add"], default="add")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    input_csv = Path(args.csv_path)
    if not input_csv.is_absolute():
        input_csv = ROOT / input_csv
    if not input_csv.exists():
        raise SystemExit(f"Missing input CSV: {input_csv}")

    engine = open_sql_engine()
    with engine.session_factory() as db:
        item_refs = load_item_refs(db)
        class_refs = load_class_refs(db)

    with input_csv.open("r", encoding="utf-8-sig", newline="") as f:
        targets_by_item, skipped = collect_targets(csv.DictReader(f), item_refs, class_refs)

    groups = group_by_target_set(targets_by_item)
    for ids, targets in groups:
        label = ", ".join(f"{t.class_id}/{t.semester if t.semester is not None else '-'}" for t in targets)
        print(f"{args.mode}: {len(ids)} items -> {label}")
        if not args.dry_run:
            engine.apply_bulk_mapping(ids, targets, args.mode)

    for msg in skipped:
        print(f"SKIPPED {msg}")
    print(f"Applied {len(groups)} batches covering {len(targets_by_item)} items ({len(skipped)} rows skipped)")


if __name__ == "__main__":
    main()
