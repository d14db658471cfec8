"""Running cost accounting with a hard cap."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_WARNING_RATIO = 0.8


@dataclass(slots=True)
class BudgetSnapshot:
    """Budget state reported alongside a pipeline run."""

    used_units: float
    cap_units: float
    percent_used: float
    remaining_units: float
    over_cap: bool


class BudgetTracker:
    """Accumulates cost units; exposes state, never aborts anything itself."""

    def __init__(self, cap_units: float, *, warning_ratio: float = DEFAULT_WARNING_RATIO) -> None:
        if cap_units <= 0:
            raise ValueError("cap_units must be positive")
        if not 0 < warning_ratio <= 1:
            raise ValueError("warning_ratio must be in (0, 1]")
        self.cap_units = cap_units
        self.warning_ratio = warning_ratio
        self._used = 0.0
        self._warned = False

    @property
    def used_units(self) -> float:
        return self._used

    def add(self, cost_units: float) -> None:
        if cost_units < 0:
            raise ValueError(f"cost_units must be >= 0, got {cost_units!r}")
        self._used += cost_units

    def is_over_cap(self) -> bool:
        return self._used > self.cap_units

    def percent_used(self) -> float:
        return self._used / self.cap_units * 100

    def remaining(self) -> float:
        return max(self.cap_units - self._used, 0.0)

    def crossed_warning(self) -> bool:
        """True exactly once: the first time usage reaches the warning ratio."""

        if self._warned or self._used < self.cap_units * self.warning_ratio:
            return False
        self._warned = True
        return True

    def snapshot(self) -> BudgetSnapshot:
        return BudgetSnapshot(
            used_units=self._used,
            cap_units=self.cap_units,
            percent_used=self.percent_used(),
            remaining_units=self.remaining(),
            over_cap=self.is_over_cap(),
        )
