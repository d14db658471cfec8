"""In-memory TTL cache for completed task results."""

from __future__ import annotations

import hashlib
import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from stageflow.engine.models import TaskInput, TaskResult


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def compute_input_hash(task_input: TaskInput) -> str:
    """Fingerprint a task input by type, stage params and rendered context."""

    payload: dict[str, Any] = {
        "type": task_input.task_type_id,
        "params": dict(task_input.params),
        "context": task_input.context.render() if task_input.context is not None else None,
    }
    data = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return sha256_bytes(data)


@dataclass(slots=True)
class CacheEntry:
    result: TaskResult
    stored_at: float
    input_hash: str


@dataclass(slots=True)
class CacheStats:
    size: int
    hits: int
    misses: int
    oldest_age_seconds: float | None


class TaskResultCache:
    """Completed results keyed by input fingerprint; stale entries expire lazily."""

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0

    def get(self, task_input: TaskInput) -> TaskResult | None:
        key = compute_input_hash(task_input)
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        if self._clock() - entry.stored_at > self.ttl_seconds:
            del self._entries[key]
            self._misses += 1
            return None
        self._hits += 1
        return entry.result

    def put(self, task_input: TaskInput, result: TaskResult) -> None:
        if not result.succeeded:
            return
        key = compute_input_hash(task_input)
        self._entries[key] = CacheEntry(result=result, stored_at=self._clock(), input_hash=key)

    def cleanup(self) -> int:
        """Drop expired entries and return how many were removed."""

        now = self._clock()
        expired = [
            key
            for key, entry in self._entries.items()
            if now - entry.stored_at > self.ttl_seconds
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def stats(self) -> CacheStats:
        now = self._clock()
        oldest = min((entry.stored_at for entry in self._entries.values()), default=None)
        return CacheStats(
            size=len(self._entries),
            hits=self._hits,
            misses=self._misses,
            oldest_age_seconds=None if oldest is None else now - oldest,
        )
