from __future__ import annotations

import json

import allure
import pytest

from stageflow.engine.context_store import (
    CONTEXT_STATE_VERSION,
    MIN_PER_ENTRY_MAX_BYTES,
    SNAPSHOT_OVERHEAD_BYTES,
    ContextStore,
)
from stageflow.engine.errors import ContextConflictError

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Context Store"),
]


def _payload(store: ContextStore, stage_name: str, task_type_id: str):
    for stage in store.export_state()["stages"]:
        if stage["name"] != stage_name:
            continue
        for entry in stage["entries"]:
            if entry["task_type_id"] == task_type_id:
                return entry["payload"]
    raise KeyError((stage_name, task_type_id))


def test_record_is_write_once() -> None:
    store = ContextStore()
    store.record("research", "market", {"size": 3})

    with pytest.raises(ContextConflictError, match="already recorded"):
        store.record("research", "market", {"size": 4})
    assert _payload(store, "research", "market") == {"size": 3}


def test_same_task_type_in_different_stages_is_allowed() -> None:
    store = ContextStore()
    store.record("research", "summary", "first")
    store.record("synthesis", "summary", "second")

    assert store.stage_names() == ["research", "synthesis"]
    assert store.has_stage("synthesis")
    assert not store.has_stage("analysis")


def test_oversized_entry_is_truncated_within_cap() -> None:
    store = ContextStore(per_entry_max_bytes=200, aggregate_max_bytes=1_000)
    entry = store.record("research", "market", "x" * 500)

    assert entry.truncated is True
    assert entry.original_bytes == 500
    assert entry.size_bytes == 200
    assert entry.text.startswith("x" * 100)
    assert entry.text.endswith(
        "\n\n[Truncated: 500 bytes -> 200 bytes to stay within context budget]",
    )
    # The stored payload itself is untouched.
    assert _payload(store, "research", "market") == "x" * 500


@pytest.mark.parametrize("cap", [MIN_PER_ENTRY_MAX_BYTES, 1_000, 5_000])
@pytest.mark.parametrize("size", [10_000, 1_000_000])
def test_truncated_entry_never_exceeds_cap(cap: int, size: int) -> None:
    store = ContextStore(per_entry_max_bytes=cap, aggregate_max_bytes=cap + SNAPSHOT_OVERHEAD_BYTES)

    entry = store.record("research", "market", {"blob": "y" * size})

    assert entry.truncated is True
    assert entry.size_bytes <= cap


def test_truncation_never_splits_multibyte_characters() -> None:
    store = ContextStore(per_entry_max_bytes=MIN_PER_ENTRY_MAX_BYTES, aggregate_max_bytes=1_000)
    entry = store.record("research", "market", "é" * 100)

    head = entry.text.split("\n\n")[0]
    assert head == "é" * len(head)
    assert entry.size_bytes <= MIN_PER_ENTRY_MAX_BYTES
    assert entry.original_bytes == 200


def test_snapshot_replaces_overflow_with_single_marker() -> None:
    store = ContextStore(per_entry_max_bytes=128, aggregate_max_bytes=640)
    store.record("research", "a", "a" * 120)
    store.record("research", "b", "b" * 120)
    store.record("analysis", "c", "c" * 120)
    store.record("analysis", "d", "d" * 120)
    store.record("analysis", "e", "e" * 120)

    snapshot = store.snapshot()

    assert [entry.task_type_id for entry in snapshot.entries] == ["a", "b", "c"]
    assert snapshot.omitted_entries == 2
    assert snapshot.marker == (
        "[Further stages truncated to stay within context budget: 2 entries omitted]"
    )
    rendered = snapshot.render()
    assert snapshot.total_bytes == len(rendered.encode("utf-8"))
    assert snapshot.total_bytes <= 640
    assert rendered.startswith("# Previous Stage Outputs")
    assert "## research / a" in rendered
    assert "## analysis / d" not in rendered
    assert rendered.count("Further stages truncated") == 1


def test_smallest_aggregate_always_fits_one_capped_entry() -> None:
    aggregate = MIN_PER_ENTRY_MAX_BYTES + SNAPSHOT_OVERHEAD_BYTES
    store = ContextStore(per_entry_max_bytes=MIN_PER_ENTRY_MAX_BYTES, aggregate_max_bytes=aggregate)
    for index in range(10):
        store.record("research", f"task_{index}", "z" * 10_000)

    snapshot = store.snapshot()

    assert 1 <= len(snapshot.entries) < 10
    assert snapshot.marker is not None
    assert snapshot.total_bytes <= aggregate
    assert all(entry.size_bytes <= MIN_PER_ENTRY_MAX_BYTES for entry in snapshot.entries)


def test_snapshot_within_budget_has_no_marker() -> None:
    store = ContextStore()
    store.record("research", "market", {"size": 3})

    snapshot = store.snapshot()

    assert snapshot.marker is None
    assert snapshot.omitted_entries == 0
    assert snapshot.as_dict() == {"research": {"market": '{\n  "size": 3\n}'}}


def test_empty_snapshot_renders_nothing() -> None:
    snapshot = ContextStore().snapshot()
    assert snapshot.is_empty
    assert snapshot.render() == ""
    assert snapshot.total_bytes == 0


def test_recorded_payloads_are_isolated_from_callers() -> None:
    store = ContextStore()
    payload = {"verdict": "keep", "items": [1, 2]}
    store.record("research", "market", payload)

    payload["verdict"] = "changed"
    payload["items"].append(3)
    exported = store.export_state()
    exported["stages"][0]["entries"][0]["payload"]["verdict"] = "edited"

    assert _payload(store, "research", "market") == {"verdict": "keep", "items": [1, 2]}
    entry = store.snapshot().entries[0]
    assert not hasattr(entry, "payload")


def test_record_stage_skips_failed_tasks(make_task_result, make_stage_result) -> None:
    store = ContextStore()
    stage = make_stage_result(
        "research",
        [
            make_task_result("market", payload={"size": 1}),
            make_task_result("pricing", succeeded=False),
        ],
    )

    assert store.record_stage(stage) == 1
    assert _payload(store, "research", "market") == {"size": 1}
    with pytest.raises(KeyError):
        _payload(store, "research", "pricing")


def test_export_import_restores_store() -> None:
    store = ContextStore()
    store.record("research", "market", {"segments": ["smb", "enterprise"]})
    store.record("analysis", "summary", "short")

    state = store.export_state()
    restored = ContextStore()
    restored.import_state(json.loads(json.dumps(state)))

    assert state["version"] == CONTEXT_STATE_VERSION
    assert restored.stage_names() == ["research", "analysis"]
    assert _payload(restored, "research", "market") == {"segments": ["smb", "enterprise"]}
    assert restored.snapshot() == store.snapshot()


def test_import_replaces_existing_contents() -> None:
    store = ContextStore()
    store.record("old", "task", 1)

    store.import_state({"version": CONTEXT_STATE_VERSION, "stages": []})

    assert store.stage_names() == []


@pytest.mark.parametrize(
    "state",
    [
        {"version": 99, "stages": []},
        {"version": CONTEXT_STATE_VERSION},
        {"version": CONTEXT_STATE_VERSION, "stages": [{"entries": []}]},
        {
            "version": CONTEXT_STATE_VERSION,
            "stages": [{"name": "a", "entries": []}, {"name": "a", "entries": []}],
        },
        {
            "version": CONTEXT_STATE_VERSION,
            "stages": [{"name": "a", "entries": [{"payload": 1}]}],
        },
    ],
)
def test_import_rejects_invalid_state(state) -> None:
    with pytest.raises(ValueError):
        ContextStore().import_state(state)


def test_save_and_load_checkpoint(tmp_path) -> None:
    path = tmp_path / "nested" / "context.json"
    store = ContextStore()
    store.record("research", "market", {"size": 3})
    store.save(path)

    loaded = ContextStore()
    loaded.load(path)

    assert _payload(loaded, "research", "market") == {"size": 3}


@pytest.mark.parametrize(
    ("per_entry", "aggregate"),
    [
        (MIN_PER_ENTRY_MAX_BYTES - 1, 10_000),
        (1_000, 1_000),
        (1_000, 1_000 + SNAPSHOT_OVERHEAD_BYTES - 1),
    ],
)
def test_caps_leave_room_for_markers(per_entry: int, aggregate: int) -> None:
    with pytest.raises(ValueError):
        ContextStore(per_entry_max_bytes=per_entry, aggregate_max_bytes=aggregate)
