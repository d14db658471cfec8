"""Size-bounded, write-once store of prior stages' task payloads."""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from stageflow.engine.errors import ContextConflictError
from stageflow.engine.models import StageResult

logger = logging.getLogger(__name__)

CONTEXT_STATE_VERSION = 1
DEFAULT_PER_ENTRY_MAX_BYTES = 5_000
DEFAULT_AGGREGATE_MAX_BYTES = 20_000
MIN_PER_ENTRY_MAX_BYTES = 128
# Room for the snapshot header, one section heading and the omission marker.
SNAPSHOT_OVERHEAD_BYTES = 512
SNAPSHOT_HEADER = "# Previous Stage Outputs"
_SEPARATOR = "\n\n"


@dataclass(frozen=True, slots=True)
class ContextEntry:
    """One recorded payload in its capped serialized form."""

    stage_name: str
    task_type_id: str
    text: str
    original_bytes: int
    truncated: bool

    @property
    def size_bytes(self) -> int:
        return len(self.text.encode("utf-8"))

    def section(self) -> str:
        return f"## {self.stage_name} / {self.task_type_id}{_SEPARATOR}{self.text}"


@dataclass(frozen=True, slots=True)
class ContextSnapshot:
    """Read-only view of prior outputs handed to the next stage's tasks.

    Holds serialized text only; ``render()`` never exceeds the aggregate
    byte cap of the store that produced it.
    """

    entries: tuple[ContextEntry, ...] = ()
    omitted_entries: int = 0
    marker: str | None = None

    @property
    def total_bytes(self) -> int:
        return len(self.render().encode("utf-8"))

    @property
    def is_empty(self) -> bool:
        return not self.entries and self.marker is None

    def as_dict(self) -> dict[str, dict[str, str]]:
        """Nested ``stage -> task type -> serialized payload`` mapping."""

        view: dict[str, dict[str, str]] = {}
        for entry in self.entries:
            view.setdefault(entry.stage_name, {})[entry.task_type_id] = entry.text
        return view

    def render(self) -> str:
        """Prompt-ready text block; empty string when nothing was recorded."""

        if self.is_empty:
            return ""
        sections = [entry.section() for entry in self.entries]
        if self.marker is not None:
            sections.append(f"## {self.marker}")
        return SNAPSHOT_HEADER + _SEPARATOR + _SEPARATOR.join(sections)


@dataclass(slots=True)
class ContextSummary:
    stages: int
    entries: int
    stored_bytes: int
    truncated_entries: int


@dataclass(frozen=True, slots=True)
class _Record:
    payload: Any
    entry: ContextEntry


class ContextStore:
    """Insertion-ordered ``stage -> task type -> payload`` record.

    Entries are write-once. Payloads are copied on record and never leave
    the store except through ``export_state``. Each one is serialized once
    and capped at ``per_entry_max_bytes`` including its truncation marker;
    snapshots are capped at ``aggregate_max_bytes`` of rendered text by
    dropping the latest entries first.
    """

    def __init__(
        self,
        *,
        per_entry_max_bytes: int = DEFAULT_PER_ENTRY_MAX_BYTES,
        aggregate_max_bytes: int = DEFAULT_AGGREGATE_MAX_BYTES,
    ) -> None:
        if per_entry_max_bytes < MIN_PER_ENTRY_MAX_BYTES:
            raise ValueError(f"per_entry_max_bytes must be >= {MIN_PER_ENTRY_MAX_BYTES}")
        if aggregate_max_bytes < per_entry_max_bytes + SNAPSHOT_OVERHEAD_BYTES:
            raise ValueError(
                "aggregate_max_bytes must be >= per_entry_max_bytes + "
                f"{SNAPSHOT_OVERHEAD_BYTES}",
            )
        self.per_entry_max_bytes = per_entry_max_bytes
        self.aggregate_max_bytes = aggregate_max_bytes
        self._stages: dict[str, dict[str, _Record]] = {}

    def record(self, stage_name: str, task_type_id: str, payload: Any) -> ContextEntry:
        outputs = self._stages.get(stage_name, {})
        if task_type_id in outputs:
            raise ContextConflictError(
                f"Context entry already recorded: stage={stage_name!r} task_type={task_type_id!r}",
            )
        stored = copy.deepcopy(payload)
        entry = self._build_entry(stage_name, task_type_id, stored)
        self._stages.setdefault(stage_name, {})[task_type_id] = _Record(stored, entry)
        if entry.truncated:
            logger.warning(
                "Context entry %s/%s truncated: %d bytes -> %d bytes",
                stage_name,
                task_type_id,
                entry.original_bytes,
                entry.size_bytes,
            )
        return entry

    def record_stage(self, stage_result: StageResult) -> int:
        """Record every completed task payload of a stage; returns the count."""

        recorded = 0
        for result in stage_result.task_results:
            if not result.succeeded:
                continue
            self.record(stage_result.stage_name, result.task_type_id, result.payload)
            recorded += 1
        return recorded

    def has_stage(self, stage_name: str) -> bool:
        return stage_name in self._stages

    def stage_names(self) -> list[str]:
        return list(self._stages)

    def snapshot(self) -> ContextSnapshot:
        entries = self._entries()
        full = ContextSnapshot(entries=tuple(entries))
        if full.total_bytes <= self.aggregate_max_bytes:
            return full

        # Reserve the widest marker this snapshot could need.
        reserve = len(f"{_SEPARATOR}## {_omission_marker(len(entries))}".encode())
        used = len(f"{SNAPSHOT_HEADER}{_SEPARATOR}".encode())
        included: list[ContextEntry] = []
        for entry in entries:
            cost = len(entry.section().encode("utf-8"))
            if included:
                cost += len(_SEPARATOR)
            if used + cost + reserve > self.aggregate_max_bytes:
                break
            included.append(entry)
            used += cost
        omitted = len(entries) - len(included)
        logger.info(
            "Context snapshot over %d bytes: %d of %d entries omitted",
            self.aggregate_max_bytes,
            omitted,
            len(entries),
        )
        return ContextSnapshot(
            entries=tuple(included),
            omitted_entries=omitted,
            marker=_omission_marker(omitted),
        )

    def summary(self) -> ContextSummary:
        entries = self._entries()
        return ContextSummary(
            stages=len(self._stages),
            entries=len(entries),
            stored_bytes=sum(entry.size_bytes for entry in entries),
            truncated_entries=sum(1 for entry in entries if entry.truncated),
        )

    def export_state(self) -> dict[str, Any]:
        """Serialize the whole store; only consistent between stages."""

        return {
            "version": CONTEXT_STATE_VERSION,
            "stages": [
                {
                    "name": stage_name,
                    "entries": [
                        {"task_type_id": task_type_id, "payload": copy.deepcopy(record.payload)}
                        for task_type_id, record in outputs.items()
                    ],
                }
                for stage_name, outputs in self._stages.items()
            ],
        }

    def import_state(self, state: dict[str, Any]) -> None:
        """Replace the current contents with a previously exported state."""

        version = state.get("version")
        if version != CONTEXT_STATE_VERSION:
            raise ValueError(f"Unsupported context state version: {version!r}")
        raw_stages = state.get("stages")
        if not isinstance(raw_stages, list):
            raise ValueError("Context state must contain a 'stages' list.")

        restored: dict[str, dict[str, _Record]] = {}
        for raw_stage in raw_stages:
            if not isinstance(raw_stage, dict) or not isinstance(raw_stage.get("name"), str):
                raise ValueError(f"Invalid context stage record: {raw_stage!r}")
            stage_name = raw_stage["name"]
            if stage_name in restored:
                raise ValueError(f"Duplicate stage in context state: {stage_name!r}")
            outputs: dict[str, _Record] = {}
            for raw_entry in raw_stage.get("entries", []):
                if not isinstance(raw_entry, dict):
                    raise ValueError(f"Invalid context entry in {stage_name!r}: {raw_entry!r}")
                task_type_id = raw_entry.get("task_type_id")
                if not isinstance(task_type_id, str) or task_type_id in outputs:
                    raise ValueError(
                        f"Invalid context entry in stage {stage_name!r}: {raw_entry!r}",
                    )
                payload = copy.deepcopy(raw_entry.get("payload"))
                outputs[task_type_id] = _Record(
                    payload,
                    self._build_entry(stage_name, task_type_id, payload),
                )
            restored[stage_name] = outputs
        self._stages = restored

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            json.dumps(self.export_state(), ensure_ascii=False, indent=2, default=str),
            "utf-8",
        )

    def load(self, path: Path) -> None:
        payload = json.loads(path.read_text("utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"Context checkpoint must be a JSON object: {path}")
        self.import_state(payload)

    def _entries(self) -> list[ContextEntry]:
        return [record.entry for outputs in self._stages.values() for record in outputs.values()]

    def _build_entry(self, stage_name: str, task_type_id: str, payload: Any) -> ContextEntry:
        serialized = _serialize_payload(payload)
        encoded = serialized.encode("utf-8")
        if len(encoded) <= self.per_entry_max_bytes:
            return ContextEntry(
                stage_name=stage_name,
                task_type_id=task_type_id,
                text=serialized,
                original_bytes=len(encoded),
                truncated=False,
            )
        suffix = (
            f"{_SEPARATOR}[Truncated: {len(encoded)} bytes -> {self.per_entry_max_bytes} bytes "
            "to stay within context budget]"
        )
        room = self.per_entry_max_bytes - len(suffix.encode("utf-8"))
        head = encoded[:room].decode("utf-8", errors="ignore")
        return ContextEntry(
            stage_name=stage_name,
            task_type_id=task_type_id,
            text=head + suffix,
            original_bytes=len(encoded),
            truncated=True,
        )


def _omission_marker(omitted: int) -> str:
    return (
        "[Further stages truncated to stay within context budget: "
        f"{omitted} entries omitted]"
    )


def _serialize_payload(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=False, default=str)
