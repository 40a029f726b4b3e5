from __future__ import annotations

import pytest

from conftest import FakeMappingStore, row, target
from curriculum_map.accumulator import MergeAccumulator, chunked
from curriculum_map.errors import InvariantViolation, RetryableError, ValidationError


def _rows(n_items: int = 7) -> list:
    out = []
    for n in range(1, n_items + 1):
        out.append(row(f"I{n}", "ClassA", 1))
        out.append(row(f"I{n}", "ClassA", 2))
        out.append(row(f"I{n}", "ClassB", None))
    return out


def test_chunked_splits_in_order():
    assert list(chunked(["a", "b", "c", "d", "e"], 2)) == [["a", "b"], ["c", "d"], ["e"]]


def test_paginated_drain_matches_single_fetch():
    ids = [f"I{n}" for n in range(1, 8)]
    paged = MergeAccumulator(FakeMappingStore(_rows(), page_size=3)).load_mappings(ids)
    whole = MergeAccumulator(FakeMappingStore(_rows(), page_size=1000)).load_mappings(ids)
    assert paged == whole
    assert paged["I4"] == [target("ClassA", 1), target("ClassA", 2), target("ClassB", None)]


def test_drain_reads_every_page_before_returning():
    store = FakeMappingStore(_rows(4), page_size=5)
    merged = MergeAccumulator(store).load_mappings(["I1", "I2", "I3", "I4"])
    assert sum(len(v) for v in merged.values()) == 12
    assert [token for _, token in store.calls] == [None, "5", "10"]


def test_id_batches_are_drained_one_after_the_other():
    store = FakeMappingStore(_rows(5), page_size=2)
    merged = MergeAccumulator(store, id_batch_size=2).load_mappings(["I1", "I2", "I3", "I4", "I5"])
    assert {ids for ids, _ in store.calls} == {("I1", "I2"), ("I3", "I4"), ("I5",)}
    assert all(len(v) == 3 for v in merged.values())


def test_exact_duplicates_merged_but_semester_variants_kept():
    store = FakeMappingStore(
        [row("I1", "ClassA", 1), row("I1", "ClassA", 1), row("I1", "ClassA", 2), row("I1", "ClassA", None)],
        page_size=1,
    )
    merged = MergeAccumulator(store).load_mappings(["I1"])
    assert merged["I1"] == [target("ClassA", 1), target("ClassA", 2), target("ClassA", None)]


def test_duplicate_ids_in_request_fetch_once():
    store = FakeMappingStore([row("I1", "ClassA", 1)])
    merged = MergeAccumulator(store).load_mappings(["I1", "I1", "I1"])
    assert merged == {"I1": [target("ClassA", 1)]}
    assert store.calls == [(("I1",), None)]


def test_unmapped_items_present_with_empty_list():
    merged = MergeAccumulator(FakeMappingStore([row("I1", "ClassA", 1)])).load_mappings(["I1", "I9"])
    assert merged["I9"] == []


def test_empty_request_does_not_touch_store():
    store = FakeMappingStore(_rows())
    assert MergeAccumulator(store).load_mappings([]) == {}
    assert store.calls == []


def test_page_failure_fails_whole_load():
    store = FakeMappingStore(_rows(), page_size=2)
    store.fail_on_call = 3
    with pytest.raises(RetryableError):
        MergeAccumulator(store).load_mappings([f"I{n}" for n in range(1, 8)])


def test_engine_errors_from_store_pass_through_unwrapped():
    store = FakeMappingStore(_rows(), page_size=2)
    store.fail_on_call = 2
    store.failure = RetryableError("statement timeout")
    with pytest.raises(RetryableError, match="statement timeout"):
        MergeAccumulator(store).load_mappings(["I1", "I2"])


def test_repeated_page_token_is_a_contract_violation():
    store = FakeMappingStore(_rows(), page_size=2)
    store.repeat_token = True
    with pytest.raises(InvariantViolation):
        MergeAccumulator(store).load_mappings(["I1", "I2"])


def test_rows_for_unrequested_items_rejected():
    store = FakeMappingStore([row("I1", "ClassA", 1)])
    store.extra_rows = [row("I99", "ClassA", 1)]
    with pytest.raises(InvariantViolation):
        MergeAccumulator(store).load_mappings(["I1"])


def test_iter_rows_yields_raw_rows_in_page_order():
    store = FakeMappingStore([row("I1", "ClassA", 1), row("I1", "ClassA", 1), row("I2", "ClassB", 2)], page_size=1)
    assert list(MergeAccumulator(store).iter_rows(["I1", "I2"])) == [
        row("I1", "ClassA", 1),
        row("I1", "ClassA", 1),
        row("I2", "ClassB", 2),
    ]


def test_batch_size_must_be_positive():
    with pytest.raises(ValidationError):
        MergeAccumulator(FakeMappingStore(), id_batch_size=0)
