from __future__ import annotations

import allure
import pytest

from stageflow.engine.errors import UnknownTaskTypeError, ValidationError
from stageflow.engine.models import TaskInput, TaskSpec, WorkOutput
from stageflow.engine.registry import TaskRegistry, TaskStrategy

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Task Registry"),
]


async def _work(task_input: TaskInput) -> WorkOutput:
    return WorkOutput(payload=task_input.task_type_id)


def _strategy(type_id: str, **kwargs) -> TaskStrategy:
    return TaskStrategy(spec=TaskSpec(type_id), work_fn=_work, **kwargs)


def test_resolve_returns_registered_strategy() -> None:
    registry = TaskRegistry([_strategy("audit"), _strategy("pricing")])

    assert registry.resolve("audit").type_id == "audit"
    assert [strategy.type_id for strategy in registry.resolve_many(["pricing", "audit"])] == [
        "pricing",
        "audit",
    ]
    assert "audit" in registry
    assert len(registry) == 2


def test_unknown_type_raises() -> None:
    registry = TaskRegistry([_strategy("audit")])
    with pytest.raises(UnknownTaskTypeError) as excinfo:
        registry.resolve_many(["audit", "ghost"])
    assert excinfo.value.task_type_id == "ghost"
    assert str(excinfo.value) == "Unknown task type: 'ghost'"


def test_duplicate_registration_is_rejected() -> None:
    registry = TaskRegistry([_strategy("audit")])
    with pytest.raises(ValueError, match="already registered"):
        registry.register(_strategy("audit"))


def test_validate_input_runs_custom_validator_after_required_params() -> None:
    seen: list[str] = []

    def validator(task_input: TaskInput) -> None:
        seen.append(task_input.task_type_id)
        if task_input.params["brand"] == "":
            raise ValidationError("brand must not be empty")

    strategy = _strategy("audit", validate=validator, required_params=("brand",))

    with pytest.raises(ValidationError, match="Missing required params"):
        strategy.validate_input(TaskInput(task_type_id="audit", stage_name="s"))
    assert seen == []
    with pytest.raises(ValidationError, match="must not be empty"):
        strategy.validate_input(
            TaskInput(task_type_id="audit", stage_name="s", params={"brand": ""}),
        )
    strategy.validate_input(
        TaskInput(task_type_id="audit", stage_name="s", params={"brand": "Acme"}),
    )
    assert seen == ["audit", "audit"]


def test_validate_input_rejects_foreign_type() -> None:
    with pytest.raises(ValidationError, match="addressed to"):
        _strategy("audit").validate_input(TaskInput(task_type_id="pricing", stage_name="s"))


@pytest.mark.parametrize(
    "kwargs",
    [{"type_id": " "}, {"type_id": "a", "max_retries": -1}, {"type_id": "a", "timeout_ms": 0}],
)
def test_task_spec_validation(kwargs) -> None:
    with pytest.raises(ValueError):
        TaskSpec(**kwargs)
