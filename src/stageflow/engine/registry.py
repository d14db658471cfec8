"""Task type dispatch table: type id -> execution strategy."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from stageflow.engine.errors import UnknownTaskTypeError, ValidationError
from stageflow.engine.models import InputValidator, TaskInput, TaskSpec, WorkFn


@dataclass(frozen=True, slots=True)
class TaskStrategy:
    """Everything the engine needs to run one task type."""

    spec: TaskSpec
    work_fn: WorkFn
    validate: InputValidator | None = None
    required_params: tuple[str, ...] = ()

    @property
    def type_id(self) -> str:
        return self.spec.type_id

    def validate_input(self, task_input: TaskInput) -> None:
        """Raise ``ValidationError`` when the input cannot be executed."""

        if task_input.task_type_id != self.spec.type_id:
            raise ValidationError(
                f"Input addressed to {task_input.task_type_id!r}, "
                f"strategy handles {self.spec.type_id!r}",
            )
        missing = [name for name in self.required_params if name not in task_input.params]
        if missing:
            raise ValidationError(
                f"Missing required params for {self.spec.type_id}: {', '.join(missing)}",
            )
        if self.validate is not None:
            self.validate(task_input)


class TaskRegistry:
    """Maps task type ids to strategies; one entry per type."""

    def __init__(self, strategies: Iterable[TaskStrategy] = ()) -> None:
        self._strategies: dict[str, TaskStrategy] = {}
        for strategy in strategies:
            self.register(strategy)

    def register(self, strategy: TaskStrategy) -> None:
        if strategy.type_id in self._strategies:
            raise ValueError(f"Task type already registered: {strategy.type_id!r}")
        self._strategies[strategy.type_id] = strategy

    def resolve(self, type_id: str) -> TaskStrategy:
        strategy = self._strategies.get(type_id)
        if strategy is None:
            raise UnknownTaskTypeError(type_id)
        return strategy

    def resolve_many(self, type_ids: Iterable[str]) -> list[TaskStrategy]:
        return [self.resolve(type_id) for type_id in type_ids]

    def __contains__(self, type_id: object) -> bool:
        return type_id in self._strategies

    def __iter__(self) -> Iterator[TaskStrategy]:
        return iter(self._strategies.values())

    def __len__(self) -> int:
        return len(self._strategies)
